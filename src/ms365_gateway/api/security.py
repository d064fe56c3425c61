"""HTTP security middleware.

Controls applied to every request, before routing:
1. Request size limit (413)
2. Query-parameter tokens only on streaming endpoints (400 INVALID_AUTH_METHOD)
3. CORS preflight from an origin outside the allowlist (403 CORS_ORIGIN_NOT_ALLOWED)
4. Security response headers

Callers without an Origin header (curl, agents, server-to-server) are never
gated on origin. Listed origins get their CORS headers from Starlette's
CORSMiddleware, which sits inside this middleware.
"""

from __future__ import annotations

__all__ = [
    "SecurityMiddleware",
    "build_cors_options",
]

import logging
from typing import TYPE_CHECKING, Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from ms365_gateway.api.errors import ErrorCode, error_body
from ms365_gateway.api.identity import is_sse_path
from ms365_gateway.constants import APP_NAME, MAX_REQUEST_SIZE

if TYPE_CHECKING:
    from ms365_gateway.config import AppConfig

logger = logging.getLogger(f"{APP_NAME}.security")

CORS_ALLOWED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Requested-With"]
CORS_EXPOSED_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"]


def build_cors_options(config: "AppConfig") -> dict[str, Any]:
    """Keyword arguments for CORSMiddleware.

    Development with no allowlist admits every origin (without credentials,
    which browsers refuse for a wildcard).
    """
    if config.allow_all_origins:
        return {
            "allow_origins": ["*"],
            "allow_credentials": False,
            "allow_methods": CORS_ALLOWED_METHODS,
            "allow_headers": CORS_ALLOWED_HEADERS,
            "expose_headers": CORS_EXPOSED_HEADERS,
            "max_age": 3600,
        }
    return {
        "allow_origins": list(config.cors.allowed_origins),
        "allow_credentials": True,
        "allow_methods": CORS_ALLOWED_METHODS,
        "allow_headers": CORS_ALLOWED_HEADERS,
        "expose_headers": CORS_EXPOSED_HEADERS,
        "max_age": 3600,
    }


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class SecurityMiddleware(BaseHTTPMiddleware):
    """Request-level security checks for the gateway.

    Args:
        app: ASGI application.
        allowed_origins: CORS allowlist.
        allow_all_origins: Skip origin checks (development without allowlist).
        max_request_size: Body size cap in bytes.
    """

    def __init__(
        self,
        app: ASGIApp,
        allowed_origins: list[str] | tuple[str, ...] = (),
        allow_all_origins: bool = False,
        max_request_size: int = MAX_REQUEST_SIZE,
    ) -> None:
        super().__init__(app)
        self.allowed_origins = frozenset(allowed_origins)
        self.allow_all_origins = allow_all_origins
        self.max_request_size = max_request_size

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # 1. Request size limit
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.max_request_size
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content=error_body(ErrorCode.INVALID_REQUEST, "Invalid content-length header"),
                )
            if too_large:
                return JSONResponse(
                    status_code=413,
                    content=error_body(
                        ErrorCode.REQUEST_TOO_LARGE,
                        f"Request body exceeds {self.max_request_size} bytes",
                    ),
                )

        # 2. Query-parameter tokens are only accepted on streaming endpoints
        if "token" in request.query_params and not is_sse_path(path):
            logger.warning(
                {
                    "event": "query_token_rejected",
                    "message": f"Rejected query-parameter token on non-streaming path {path}",
                    "path": path,
                    "ip": _client_ip(request),
                }
            )
            return JSONResponse(
                status_code=400,
                content=error_body(
                    ErrorCode.INVALID_AUTH_METHOD,
                    "Tokens in query parameters are only accepted on streaming (/sse) endpoints. "
                    "Use the Authorization header.",
                ),
            )

        # 3. CORS preflight from an unlisted origin
        origin = request.headers.get("origin")
        if (
            request.method == "OPTIONS"
            and origin
            and not self.allow_all_origins
            and origin not in self.allowed_origins
        ):
            logger.warning(
                {
                    "event": "cors_origin_rejected",
                    "message": f"Rejected CORS preflight from origin {origin}",
                    "path": path,
                    "ip": _client_ip(request),
                    "origin": origin,
                }
            )
            return JSONResponse(
                status_code=403,
                content=error_body(ErrorCode.CORS_ORIGIN_NOT_ALLOWED, f"Origin {origin} is not allowed"),
            )

        request.state.rate_limit_headers = {}
        response = await call_next(request)
        for name, value in request.state.rate_limit_headers.items():
            if name not in response.headers:
                response.headers[name] = value
        self._add_security_headers(response, streaming=is_sse_path(path))
        return response

    def _add_security_headers(self, response: Response, *, streaming: bool) -> None:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "same-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        if not streaming:
            response.headers.setdefault("Cache-Control", "no-store")
