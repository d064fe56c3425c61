"""System logger for operational events.

This module provides a singleton system logger for operational events
(startup, auth flow outcomes, security rejections, upstream failures).
Component loggers under the same "ms365-gateway." namespace propagate to it.

Logging strategy:
- Console (stderr): INFO and above (DEBUG in development mode)
- File (system.jsonl): Only issues (WARNING, ERROR, CRITICAL)

The file handler is configured separately via configure_system_logger_file() once
the log_dir from config is available.
"""

from __future__ import annotations

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "set_console_level",
]

import logging
import sys
from pathlib import Path

from ms365_gateway.constants import APP_NAME
from ms365_gateway.utils.logging.iso_formatter import ISO8601Formatter


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output.

    Extracts 'message' or 'event' field from dict messages for cleaner stderr output.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human-readable console output.

        Args:
            record: The log record to format.

        Returns:
            str: Formatted log message with level and component prefix.
        """
        component = record.name.removeprefix(f"{APP_NAME}.")
        if isinstance(record.msg, dict):
            msg = record.msg.get("message") or record.msg.get("event", "")
        else:
            msg = record.getMessage()
        if component and component not in (APP_NAME, "system"):
            return f"{record.levelname}: [{component}] {msg}"
        return f"{record.levelname}: {msg}"


# Module-level singleton logger
_system_logger: logging.Logger | None = None
_stderr_handler: logging.Handler | None = None
_file_handler_configured: bool = False


def get_system_logger() -> logging.Logger:
    """Get the singleton system logger instance.

    The handlers are attached to the "ms365-gateway" namespace logger so that
    component loggers (logging.getLogger(f"{APP_NAME}.auth")) share them.
    The returned logger is "ms365-gateway.system".

    Returns:
        logging.Logger: Configured system logger instance.

    Example:
        >>> logger = get_system_logger()
        >>> logger.warning({"event": "refresh_failed", "message": "..."})
    """
    global _system_logger, _stderr_handler

    if _system_logger is not None:
        return _system_logger

    root = logging.getLogger(APP_NAME)
    root.setLevel(logging.DEBUG)
    root.propagate = False

    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    _stderr_handler = logging.StreamHandler(sys.stderr)
    _stderr_handler.setLevel(logging.INFO)
    _stderr_handler.setFormatter(ConsoleFormatter())
    root.addHandler(_stderr_handler)

    _system_logger = logging.getLogger(f"{APP_NAME}.system")
    return _system_logger


def set_console_level(level: str | int) -> None:
    """Change the stderr threshold (e.g. "DEBUG" in development mode).

    Args:
        level: Level name or number.
    """
    get_system_logger()
    if _stderr_handler is not None:
        _stderr_handler.setLevel(level)


def configure_system_logger_file(log_path: Path) -> None:
    """Configure the system logger's file handler.

    Should be called once after config is loaded. The file handler logs
    WARNING, ERROR, CRITICAL only, as JSONL.

    Args:
        log_path: Path to the system log file.
    """
    global _file_handler_configured

    if _file_handler_configured:
        return

    get_system_logger()

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if sys.platform != "win32":
            try:
                log_path.parent.chmod(0o700)
            except OSError:
                pass
    except OSError:
        pass  # stderr still works

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(ISO8601Formatter())
    logging.getLogger(APP_NAME).addHandler(file_handler)

    _file_handler_configured = True
