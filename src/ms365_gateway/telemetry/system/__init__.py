"""System operational logging.

Provides the system logger for operational events: startup, auth flow
outcomes, security rejections, upstream failures.
"""

from ms365_gateway.telemetry.system.system_logger import (
    ConsoleFormatter,
    configure_system_logger_file,
    get_system_logger,
    set_console_level,
)

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "set_console_level",
]
