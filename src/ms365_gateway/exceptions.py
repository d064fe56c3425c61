"""Custom exceptions for ms365-gateway.

Every failure that crosses a component boundary is one of these types.
Components raise them; only the HTTP and JSON-RPC envelope layers turn
them into wire responses (see api/errors.py and api/mcp/protocol.py).

Each error carries:
    category: ErrorCategory used to pick the HTTP status.
    code: Stable upper-snake code that is part of the external contract.
    message: Human-readable description (becomes error_description).
    details: Optional structured context (list or dict).

Usage:
    from ms365_gateway.exceptions import NoValidTokenError

    raise NoValidTokenError("No upstream token stored for this user")
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "ErrorCategory",
    "GatewayError",
    "InvalidRequestError",
    "NoValidTokenError",
    "RateLimitError",
    "ReauthRequiredError",
    "StorageError",
    "ToolMethodNotFoundError",
    "UnknownToolError",
    "UpstreamError",
    "UpstreamTimeoutError",
]

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error taxonomy shared by every component."""

    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    UPSTREAM = "UPSTREAM"
    INTERNAL = "INTERNAL"
    RATE_LIMIT = "RATE_LIMIT"


# =============================================================================
# Base
# =============================================================================


class GatewayError(Exception):
    """Base class for typed gateway errors.

    Subclasses set class-level defaults for category and code; callers may
    override the code per instance when a flow needs a more specific one
    (for example INVALID_USER_INFO raised as an AuthenticationError).

    Attributes:
        category: ErrorCategory of this failure.
        code: Stable wire code.
        message: Human-readable description.
        details: Optional structured context.
    """

    category: ErrorCategory = ErrorCategory.INTERNAL
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: list[Any] | dict[str, Any] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable description.
            code: Override for the stable wire code.
            details: Optional structured context.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# Client Errors
# =============================================================================


class InvalidRequestError(GatewayError):
    """Client sent malformed or inconsistent input."""

    category = ErrorCategory.VALIDATION
    default_code = "INVALID_REQUEST"


class AuthenticationError(GatewayError):
    """Missing, invalid, or expired credentials."""

    category = ErrorCategory.AUTHENTICATION
    default_code = "UNAUTHENTICATED"


class NoValidTokenError(AuthenticationError):
    """No usable upstream token exists for the caller and none can be refreshed."""

    default_code = "NO_VALID_TOKEN"


class ReauthRequiredError(AuthenticationError):
    """A stored refresh token was rejected; the user must sign in again."""

    default_code = "REAUTH_REQUIRED"


class AuthorizationError(GatewayError):
    """Valid identity, insufficient rights for the operation."""

    category = ErrorCategory.AUTHORIZATION
    default_code = "FORBIDDEN"


class RateLimitError(GatewayError):
    """Caller exceeded the request budget for the current window.

    Attributes:
        retry_after: Seconds until the window admits another request.
    """

    category = ErrorCategory.RATE_LIMIT
    default_code = "TOO_MANY_REQUESTS"

    def __init__(self, message: str, *, retry_after: int, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.retry_after = retry_after


# =============================================================================
# Tool Resolution
# =============================================================================


class UnknownToolError(GatewayError):
    """Tool name matches neither a module.method pair nor an alias."""

    category = ErrorCategory.VALIDATION
    default_code = "UNKNOWN_TOOL"


class ToolMethodNotFoundError(GatewayError):
    """Module exists but exposes no handler with the requested method name."""

    category = ErrorCategory.VALIDATION
    default_code = "METHOD_NOT_FOUND"


# =============================================================================
# Upstream Errors
# =============================================================================


class UpstreamError(GatewayError):
    """Upstream API rejected a request or could not be reached.

    Attributes:
        status_code: Upstream HTTP status, None for transport failures.
    """

    category = ErrorCategory.UPSTREAM
    default_code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: list[Any] | dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    """Upstream call exceeded the per-request timeout."""

    default_code = "UPSTREAM_TIMEOUT"


# =============================================================================
# Internal Errors
# =============================================================================


class StorageError(GatewayError):
    """Secret store could not be read or written."""

    category = ErrorCategory.INTERNAL
    default_code = "STORAGE_ERROR"


class ConfigurationError(GatewayError):
    """Configuration is invalid or incomplete.

    Raised when:
    - Required upstream client id is missing
    - Signing secret is missing in production mode
    - A config file contains invalid JSON or fails validation

    The CLI exits with code 16 on this error.
    """

    category = ErrorCategory.INTERNAL
    default_code = "CONFIGURATION_ERROR"
    exit_code: int = 16
