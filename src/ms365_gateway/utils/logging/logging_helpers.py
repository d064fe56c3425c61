"""Logging helper utilities.

Values that must never reach a log record in clear (bearer tokens, refresh
tokens, device codes, user ids in persistent logs) go through these helpers.
"""

__all__ = [
    "hash_sensitive_id",
    "redact_token",
    "sanitize_for_logging",
]

import hashlib
import re

# Characters kept from the start of a redacted token.
REDACTED_PREFIX_LENGTH = 8

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def redact_token(token: str | None) -> str:
    """Redact a credential for logging.

    Args:
        token: Bearer, refresh token or code. May carry a "Bearer " prefix.

    Returns:
        First eight characters followed by "...[REDACTED]", or a placeholder
        for empty input.

    Example:
        >>> redact_token("eyJ0eXAiOiJKV1QiLCJhbGciOi")
        'eyJ0eXAi...[REDACTED]'
    """
    if not token:
        return "[EMPTY]"
    if token[:7].lower() == "bearer ":
        token = token[7:]
    return f"{token[:REDACTED_PREFIX_LENGTH]}...[REDACTED]"


def hash_sensitive_id(value: str, prefix_length: int = 8) -> str:
    """Hash a sensitive ID for logging while preserving some identifiability.

    Creates a shortened hash that allows log correlation without exposing
    the full identifier. The hash is deterministic.

    Args:
        value: The sensitive ID to hash (e.g., canonical user id, session id).
        prefix_length: Number of hex characters to keep.

    Returns:
        str: Hashed value in format "sha256:<prefix>".

    Example:
        >>> hash_sensitive_id("ms365:ann@contoso.com")
        'sha256:3f1c9a0e'
    """
    if not value:
        return "sha256:empty"

    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"sha256:{digest[:prefix_length]}"


def sanitize_for_logging(value: str, max_length: int = 200) -> str:
    """Strip control characters and truncate untrusted input before logging.

    Args:
        value: Untrusted string (path, header, user-supplied name).
        max_length: Maximum length kept.

    Returns:
        Single-line string safe to embed in a log record.
    """
    cleaned = _CONTROL_CHARS.sub("?", value)
    if len(cleaned) > max_length:
        return cleaned[:max_length] + "..."
    return cleaned
