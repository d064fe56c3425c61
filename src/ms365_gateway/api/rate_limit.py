"""Rate-limit dependencies for routers.

Usage:
    router = APIRouter(dependencies=[Depends(auth_rate_limit)])

Every limited response carries X-RateLimit-Limit, X-RateLimit-Remaining
and X-RateLimit-Reset. A rejected request gets 429 TOO_MANY_REQUESTS with
Retry-After and a retryAfter body field.
"""

from __future__ import annotations

__all__ = [
    "api_rate_limit",
    "auth_rate_limit",
    "enforce_rate_limit",
]

import logging

from fastapi import Request, Response

from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.constants import APP_NAME
from ms365_gateway.security.rate_limiter import API_BUCKET, AUTH_BUCKET, SlidingWindowRateLimiter

logger = logging.getLogger(f"{APP_NAME}.security")


def enforce_rate_limit(request: Request, response: Response, bucket: str) -> None:
    """Count the request against `bucket` for the client IP.

    Raises:
        APIError: 429 when the window is exhausted.
    """
    limiter: SlidingWindowRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return

    client = request.client.host if request.client else "unknown"
    decision = limiter.check(bucket, client)
    # SecurityMiddleware copies these onto responses the route builds itself
    request.state.rate_limit_headers = decision.headers()
    if decision.allowed:
        response.headers.update(decision.headers())
        return

    logger.warning(
        {
            "event": "rate_limit_exceeded",
            "message": f"Rate limit exceeded on {bucket} bucket",
            "path": request.url.path,
            "ip": client,
            "limit": decision.limit,
            "retry_after": decision.retry_after,
        }
    )
    raise APIError(
        status_code=429,
        code=ErrorCode.TOO_MANY_REQUESTS,
        message="Rate limit exceeded. Please try again later.",
        retry_after=decision.retry_after,
        headers=decision.headers(),
    )


def api_rate_limit(request: Request, response: Response) -> None:
    """General API budget."""
    enforce_rate_limit(request, response, API_BUCKET)


def auth_rate_limit(request: Request, response: Response) -> None:
    """Smaller budget for authentication endpoints."""
    enforce_rate_limit(request, response, AUTH_BUCKET)
