"""Sliding-window rate limiting per client IP.

Requests are counted per (bucket, client IP). Buckets let authentication
endpoints run under a smaller ceiling than general API traffic:

    api   /v1, /api/v1, /mcp, /api/mcp, /permissions
    auth  login, callback, device grant, token exchange

Usage:
    limiter = SlidingWindowRateLimiter(window_seconds=900, limits={"api": 100, "auth": 20})

    decision = limiter.check("auth", client_ip)
    if not decision.allowed:
        # 429 with Retry-After: decision.retry_after
        ...
"""

from __future__ import annotations

__all__ = [
    "API_BUCKET",
    "AUTH_BUCKET",
    "RateLimitDecision",
    "SlidingWindowRateLimiter",
    "create_rate_limiter",
]

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from time import monotonic, time
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from ms365_gateway.config import RateLimitSettings

API_BUCKET = "api"
AUTH_BUCKET = "auth"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of one rate-limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Maximum requests per window for the bucket.
        remaining: Requests left in the current window after this one.
        reset_at: Epoch seconds at which the oldest counted request leaves the window.
        retry_after: Seconds to wait before retrying; 0 when allowed.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers, plus Retry-After on rejection."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass(slots=True)
class SlidingWindowRateLimiter:
    """Track request rates per (bucket, client) using a sliding window.

    Each window is a deque of monotonic timestamps. Entries older than the
    window are pruned on every check, so a counter effectively resets once
    the window has elapsed since the oldest counted request.

    Checks hold a lock because FastAPI runs sync dependencies in a thread pool.

    Attributes:
        window_seconds: Duration of the sliding window.
        limits: Maximum requests per window, per bucket.
        clock: Monotonic clock, injectable for tests.
    """

    window_seconds: float
    limits: dict[str, int]
    clock: Callable[[], float] = monotonic

    # {bucket: {client: deque[timestamp]}}
    _windows: dict[str, dict[str, deque[float]]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def limit_for(self, bucket: str) -> int:
        return self.limits[bucket]

    def check(self, bucket: str, client: str) -> RateLimitDecision:
        """Count a request and decide whether it is within the limit.

        Rejected requests are not recorded, so a client hammering the
        endpoint does not extend its own penalty.

        Args:
            bucket: Bucket name (API_BUCKET or AUTH_BUCKET).
            client: Client key, normally the remote IP.

        Returns:
            RateLimitDecision.

        Raises:
            KeyError: If the bucket has no configured limit.
        """
        limit = self.limits[bucket]
        now = self.clock()
        cutoff = now - self.window_seconds

        with self._lock:
            window = self._windows.setdefault(bucket, {}).setdefault(client, deque())

            # Prune entries outside the window
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= limit:
                wait = window[0] + self.window_seconds - now
                retry_after = max(1, math.ceil(wait))
                return RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=int(time() + wait),
                    retry_after=retry_after,
                )

            window.append(now)
            oldest = window[0]
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit - len(window),
                reset_at=int(time() + (oldest + self.window_seconds - now)),
            )

    def get_count(self, bucket: str, client: str) -> int:
        """Requests counted in the current window without recording a new one."""
        cutoff = self.clock() - self.window_seconds
        with self._lock:
            window = self._windows.get(bucket, {}).get(client)
            if not window:
                return 0
            return sum(1 for t in window if t > cutoff)

    def reset(self, bucket: str | None = None) -> None:
        """Clear tracking data for one bucket, or all buckets."""
        with self._lock:
            if bucket is None:
                self._windows.clear()
            else:
                self._windows.pop(bucket, None)

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return sum(len(clients) for clients in self._windows.values())


def create_rate_limiter(settings: "RateLimitSettings") -> SlidingWindowRateLimiter:
    """Build the process-wide limiter from configuration."""
    return SlidingWindowRateLimiter(
        window_seconds=settings.window_seconds,
        limits={API_BUCKET: settings.max_requests, AUTH_BUCKET: settings.auth_max_requests},
    )
