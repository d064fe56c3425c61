"""Unit tests for rate limiting functionality.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.

Tests cover:
- SlidingWindowRateLimiter: sliding window algorithm, per-bucket/per-client tracking
- RateLimitDecision: response headers
- create_rate_limiter: factory function
"""

from __future__ import annotations

import pytest

from ms365_gateway.config import RateLimitSettings
from ms365_gateway.security.rate_limiter import (
    API_BUCKET,
    AUTH_BUCKET,
    RateLimitDecision,
    SlidingWindowRateLimiter,
    create_rate_limiter,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at an arbitrary monotonic time."""
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    """Limiter with a 60 second window, 3 api requests and 2 auth requests."""
    return SlidingWindowRateLimiter(
        window_seconds=60,
        limits={API_BUCKET: 3, AUTH_BUCKET: 2},
        clock=clock,
    )


# =============================================================================
# SlidingWindowRateLimiter Tests
# =============================================================================


class TestSlidingWindowBasic:
    """Basic functionality tests for SlidingWindowRateLimiter."""

    def test_allows_first_request(self, limiter: SlidingWindowRateLimiter) -> None:
        """First request should always be allowed."""
        # Act
        decision = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert decision.allowed is True
        assert decision.limit == 3
        assert decision.remaining == 2

    def test_allows_requests_up_to_limit(self, limiter: SlidingWindowRateLimiter) -> None:
        """Requests within the limit are allowed and remaining counts down."""
        # Act
        decisions = [limiter.check(API_BUCKET, "10.0.0.1") for _ in range(3)]

        # Assert
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_rejects_request_past_limit(self, limiter: SlidingWindowRateLimiter) -> None:
        """Given limit+1 requests in one window, the last is rejected."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")

        # Act
        decision = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after == 60

    def test_rejected_requests_are_not_counted(self, limiter: SlidingWindowRateLimiter) -> None:
        """Rejections do not extend the client's own penalty."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")

        # Act
        for _ in range(5):
            limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert limiter.get_count(API_BUCKET, "10.0.0.1") == 3

    def test_tracks_clients_independently(self, limiter: SlidingWindowRateLimiter) -> None:
        """Different clients have separate windows."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")

        # Act
        blocked = limiter.check(API_BUCKET, "10.0.0.1")
        other = limiter.check(API_BUCKET, "10.0.0.2")

        # Assert
        assert blocked.allowed is False
        assert other.allowed is True
        assert limiter.tracked_clients == 2

    def test_tracks_buckets_independently(self, limiter: SlidingWindowRateLimiter) -> None:
        """The auth bucket has its own, smaller ceiling."""
        # Arrange
        limiter.check(AUTH_BUCKET, "10.0.0.1")
        limiter.check(AUTH_BUCKET, "10.0.0.1")

        # Act
        auth = limiter.check(AUTH_BUCKET, "10.0.0.1")
        api = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert auth.allowed is False
        assert auth.limit == 2
        assert api.allowed is True

    def test_unknown_bucket_raises(self, limiter: SlidingWindowRateLimiter) -> None:
        """Given a bucket with no configured limit, raises KeyError."""
        with pytest.raises(KeyError):
            limiter.check("uploads", "10.0.0.1")


class TestSlidingWindowExpiry:
    """Tests for window expiry and retry timing."""

    def test_allows_again_after_window(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Once the window has elapsed since the oldest request, requests pass again."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")

        # Act
        clock.advance(60)
        decision = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert decision.allowed is True

    def test_retry_after_shrinks_with_time(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Retry-After reflects the time left until the oldest request leaves the window."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")
        clock.advance(45)

        # Act
        decision = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert decision.allowed is False
        assert decision.retry_after == 15

    def test_retry_after_is_at_least_one(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Fractional waits round up to a whole second."""
        # Arrange
        for _ in range(3):
            limiter.check(API_BUCKET, "10.0.0.1")
        clock.advance(59.9)

        # Act
        decision = limiter.check(API_BUCKET, "10.0.0.1")

        # Assert
        assert decision.retry_after == 1

    def test_sliding_not_fixed_window(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Only requests older than the window are released."""
        # Arrange
        limiter.check(API_BUCKET, "10.0.0.1")
        clock.advance(30)
        limiter.check(API_BUCKET, "10.0.0.1")
        limiter.check(API_BUCKET, "10.0.0.1")

        # Act - first request has left, the other two remain
        clock.advance(31)
        count = limiter.get_count(API_BUCKET, "10.0.0.1")

        # Assert
        assert count == 2

    def test_reset_clears_bucket(self, limiter: SlidingWindowRateLimiter) -> None:
        """reset(bucket) clears only that bucket."""
        # Arrange
        limiter.check(API_BUCKET, "10.0.0.1")
        limiter.check(AUTH_BUCKET, "10.0.0.1")

        # Act
        limiter.reset(API_BUCKET)

        # Assert
        assert limiter.get_count(API_BUCKET, "10.0.0.1") == 0
        assert limiter.get_count(AUTH_BUCKET, "10.0.0.1") == 1

    def test_reset_all(self, limiter: SlidingWindowRateLimiter) -> None:
        """reset() with no bucket clears everything."""
        # Arrange
        limiter.check(API_BUCKET, "10.0.0.1")
        limiter.check(AUTH_BUCKET, "10.0.0.2")

        # Act
        limiter.reset()

        # Assert
        assert limiter.tracked_clients == 0


# =============================================================================
# RateLimitDecision Tests
# =============================================================================


class TestRateLimitDecisionHeaders:
    """Tests for RateLimitDecision.headers."""

    def test_allowed_headers(self) -> None:
        """Given an allowed decision, returns X-RateLimit-* without Retry-After."""
        decision = RateLimitDecision(allowed=True, limit=100, remaining=99, reset_at=1700000000)

        headers = decision.headers()

        assert headers == {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "99",
            "X-RateLimit-Reset": "1700000000",
        }

    def test_rejected_headers_include_retry_after(self) -> None:
        """Given a rejected decision, adds Retry-After."""
        decision = RateLimitDecision(allowed=False, limit=100, remaining=0, reset_at=1700000000, retry_after=42)

        headers = decision.headers()

        assert headers["Retry-After"] == "42"
        assert headers["X-RateLimit-Remaining"] == "0"


# =============================================================================
# Factory Tests
# =============================================================================


class TestCreateRateLimiter:
    """Tests for create_rate_limiter factory."""

    def test_uses_configured_limits(self) -> None:
        """Limits and window come from RateLimitSettings."""
        # Arrange
        settings = RateLimitSettings(window_seconds=120, max_requests=50, auth_max_requests=5)

        # Act
        limiter = create_rate_limiter(settings)

        # Assert
        assert limiter.window_seconds == 120
        assert limiter.limit_for(API_BUCKET) == 50
        assert limiter.limit_for(AUTH_BUCKET) == 5

    def test_defaults(self) -> None:
        """Default settings: 100 api / 20 auth per 15 minutes."""
        limiter = create_rate_limiter(RateLimitSettings())

        assert limiter.window_seconds == 900
        assert limiter.limit_for(API_BUCKET) == 100
        assert limiter.limit_for(AUTH_BUCKET) == 20
