"""Structured API error handling.

This module provides:
- ErrorCode enum with the stable wire codes
- APIError exception class for structured error responses
- Exception handlers that turn typed gateway errors into HTTP responses

Usage:
    from ms365_gateway.api.errors import APIError, ErrorCode

    raise APIError(
        status_code=401,
        code=ErrorCode.INVALID_TOKEN,
        message="Token has expired",
    )

Response format:
    {
        "error": "INVALID_TOKEN",
        "error_description": "Token has expired",
        "details": [...]            # optional
    }

Rate-limit responses also carry "retryAfter" (seconds) and a Retry-After header.
"""

from __future__ import annotations

__all__ = [
    "APIError",
    "ErrorCode",
    "api_error_handler",
    "error_body",
    "gateway_error_handler",
    "http_exception_handler",
    "register_exception_handlers",
    "status_for_error",
    "unhandled_exception_handler",
    "validation_error_handler",
]

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import (
    ErrorCategory,
    GatewayError,
    RateLimitError,
    UpstreamError,
    UpstreamTimeoutError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

_logger = logging.getLogger(f"{APP_NAME}.api")


class ErrorCode(str, Enum):
    """Stable error codes. Part of the external contract.

    Codes are grouped by the status they are normally sent with; typed
    GatewayErrors may carry further codes of their own.
    """

    # Validation (400)
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_AUTH_METHOD = "INVALID_AUTH_METHOD"
    NO_CODE_VERIFIER = "NO_CODE_VERIFIER"
    INVALID_USER_CODE = "INVALID_USER_CODE"
    NO_EXTERNAL_TOKEN = "NO_EXTERNAL_TOKEN"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"

    # Authentication (401)
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_VERIFICATION_FAILED = "TOKEN_VERIFICATION_FAILED"
    INVALID_USER_INFO = "INVALID_USER_INFO"
    NO_VALID_TOKEN = "NO_VALID_TOKEN"
    REAUTH_REQUIRED = "REAUTH_REQUIRED"
    EXTERNAL_TOKEN_INVALID = "EXTERNAL_TOKEN_INVALID"
    LOGIN_FAILED = "LOGIN_FAILED"

    # Authorization (403)
    FORBIDDEN = "FORBIDDEN"
    CORS_ORIGIN_NOT_ALLOWED = "CORS_ORIGIN_NOT_ALLOWED"

    # Resources (404, 405)
    NOT_FOUND = "NOT_FOUND"
    NO_STORED_TOKEN = "NO_STORED_TOKEN"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    # Rate limiting (429)
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"

    # Upstream and internal (500, 502, 503, 504)
    EXCHANGE_FAILED = "EXCHANGE_FAILED"
    DEBUG_GRAPH_TOKEN_FAILED = "DEBUG_GRAPH_TOKEN_FAILED"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    AUTH_FLOW_TIMEOUT = "AUTH_FLOW_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


_CATEGORY_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.UPSTREAM: 502,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.INTERNAL: 500,
}


def error_body(code: str | ErrorCode, message: str, details: Any = None) -> dict[str, Any]:
    """Build the standard {error, error_description, details?} body."""
    body: dict[str, Any] = {
        "error": code.value if isinstance(code, ErrorCode) else code,
        "error_description": message,
    }
    if details:
        body["details"] = details
    return body


class APIError(HTTPException):
    """Structured API error with a stable code.

    Extends HTTPException so routes and dependencies can raise it directly.

    Attributes:
        status_code: HTTP status code.
        code: Stable error code.
        error_message: Human-readable description.
        error_details: Optional structured context.
        retry_after: Seconds until retry is sensible (429 only).
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode | str,
        message: str,
        details: Any = None,
        *,
        retry_after: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize structured API error.

        Args:
            status_code: HTTP status code.
            code: ErrorCode or a code string carried by a typed error.
            message: Human-readable message.
            details: Optional contextual details (list or dict).
            retry_after: Seconds to wait; adds retryAfter and Retry-After.
            headers: Extra response headers.
        """
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.error_message = message
        self.error_details = details
        self.retry_after = retry_after

        response_headers = dict(headers or {})
        if retry_after is not None:
            response_headers.setdefault("Retry-After", str(retry_after))

        detail = error_body(self.code, message, details)
        if retry_after is not None:
            detail["retryAfter"] = retry_after

        super().__init__(status_code=status_code, detail=detail, headers=response_headers or None)

    @classmethod
    def from_gateway_error(cls, exc: GatewayError) -> "APIError":
        """Map a typed component error to its HTTP form."""
        retry_after = exc.retry_after if isinstance(exc, RateLimitError) else None
        return cls(
            status_code=status_for_error(exc),
            code=exc.code,
            message=exc.message,
            details=exc.details,
            retry_after=retry_after,
        )


def status_for_error(exc: GatewayError) -> int:
    """HTTP status for a typed gateway error.

    Category decides, with two refinements: upstream timeouts are 504 and an
    upstream 404 is passed through as 404.
    """
    if isinstance(exc, UpstreamTimeoutError):
        return 504
    if isinstance(exc, UpstreamError) and exc.status_code == 404:
        return 404
    return _CATEGORY_STATUS.get(exc.category, 500)


# =============================================================================
# Exception Handlers
# =============================================================================


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions with structured response."""
    return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Handle typed errors that escaped a route without translation."""
    api_error = APIError.from_gateway_error(exc)
    if api_error.status_code >= 500:
        _logger.error(
            {
                "event": "gateway_error",
                "message": f"{exc.code}: {exc.message}",
                "path": request.url.path,
                "category": exc.category.value,
            }
        )
    return await api_error_handler(request, api_error)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors as 400 INVALID_REQUEST.

    Each error becomes a {field, message} entry in details; the location
    prefix (body, query, path) is dropped from the field name.
    """
    errors = exc.errors()
    details = []
    for error in errors:
        field_parts = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(field_parts) or None, "message": error.get("msg", "Invalid value")})

    if len(details) == 1:
        first = details[0]
        message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    else:
        message = f"{len(details)} validation errors"

    return JSONResponse(status_code=400, content=error_body(ErrorCode.INVALID_REQUEST, message, details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle plain HTTPExceptions (404 routes, 405 methods, 503 deps).

    Passes through already-structured details from APIError.
    """
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)

    code = _status_to_error_code(exc.status_code)
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return JSONResponse(status_code=exc.status_code, content=error_body(code, message), headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: anything untyped becomes 500 INTERNAL_ERROR."""
    _logger.error(
        {
            "event": "unhandled_exception",
            "message": f"{type(exc).__name__}: {exc}",
            "path": request.url.path,
        },
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred"),
    )


def _status_to_error_code(status_code: int) -> ErrorCode:
    """Map HTTP status code to default error code."""
    mapping = {
        400: ErrorCode.INVALID_REQUEST,
        401: ErrorCode.UNAUTHENTICATED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        405: ErrorCode.METHOD_NOT_ALLOWED,
        413: ErrorCode.REQUEST_TOO_LARGE,
        429: ErrorCode.TOO_MANY_REQUESTS,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.UPSTREAM_ERROR,
        503: ErrorCode.SERVICE_UNAVAILABLE,
        504: ErrorCode.UPSTREAM_TIMEOUT,
    }
    return mapping.get(status_code, ErrorCode.INTERNAL_ERROR)


def register_exception_handlers(app: "FastAPI") -> None:
    app.add_exception_handler(APIError, api_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(GatewayError, gateway_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
