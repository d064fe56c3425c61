"""Logging utilities and helpers.

This package provides logging infrastructure for ms365-gateway:
- iso_formatter: ISO 8601 timestamp formatting for JSONL logs
- logging_helpers: Redaction and hashing of sensitive values

Import directly from submodules to avoid circular imports:
    from ms365_gateway.utils.logging.logging_helpers import redact_token
"""

__all__: list[str] = []  # Direct submodule imports required (see docstring)
