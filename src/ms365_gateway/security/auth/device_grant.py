"""Device authorization grant (RFC 8628), server side.

A narrow profile for programmatic clients (agents, desktop assistants):

1. Client calls register() and shows the user code and verification URI
2. Client polls poll(device_code) every `interval` seconds
3. User signs in interactively (or calls /device/authorize while signed in)
   and the user code is bound to their canonical user id
4. The next poll returns a gateway token plus an opaque refresh token

Poll outcomes follow RFC 8628 section 3.5: authorization_pending, slow_down
(polled faster than interval; interval grows by 5 seconds), expired_token,
access_denied. Requests are memory-only and removed once terminal.

Refresh tokens handed to device clients are opaque random strings. Only
their SHA-256 is persisted, in the secure namespace.
"""

from __future__ import annotations

__all__ = [
    "DeviceAuthRequest",
    "DeviceAuthorizationService",
    "DeviceRequestStatus",
    "DeviceTokenGrant",
    "PollResult",
    "PollStatus",
    "normalize_user_code",
]

import asyncio
import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from ms365_gateway.constants import (
    APP_NAME,
    DEVICE_CODE_TTL_SECONDS,
    DEVICE_POLL_INTERVAL_SECONDS,
    DEVICE_REFRESH_TOKEN_DAYS,
    DEVICE_SLOW_DOWN_INCREMENT_SECONDS,
    MAX_DEVICE_REQUESTS,
)
from ms365_gateway.exceptions import AuthenticationError, InvalidRequestError, RateLimitError
from ms365_gateway.security.auth.gateway_tokens import LifetimeClass
from ms365_gateway.security.auth.token_records import email_from_canonical_id
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.security.auth.gateway_tokens import GatewayTokenService
    from ms365_gateway.security.secret_store import SecretStore

_logger = logging.getLogger(f"{APP_NAME}.device")

# RFC 8628 section 6.1: consonants only, no vowels to avoid words
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"
USER_CODE_LENGTH = 8

DEVICE_SETTING_PREFIX = "device:"
REFRESH_SECRET_PREFIX = "device-refresh:"


class DeviceRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class PollStatus(str, Enum):
    """Wire values returned to polling clients."""

    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    EXPIRED_TOKEN = "expired_token"
    ACCESS_DENIED = "access_denied"
    INVALID_GRANT = "invalid_grant"
    APPROVED = "approved"


@dataclass(slots=True)
class DeviceAuthRequest:
    """One pending device authorization.

    Attributes:
        device_code: Secret the client polls with.
        user_code: Short code the user types or follows.
        device_id: Client instance id assigned at registration.
        verification_uri: Where the user approves.
        expires_at: Epoch seconds.
        interval: Minimum seconds between polls.
        status: DeviceRequestStatus.
        bound_user: Canonical user id once approved.
        client_name: Optional label supplied by the client.
        last_poll_at: Epoch seconds of the previous poll.
    """

    device_code: str
    user_code: str
    device_id: str
    verification_uri: str
    expires_at: float
    interval: int
    status: DeviceRequestStatus = DeviceRequestStatus.PENDING
    bound_user: str | None = None
    client_name: str | None = None
    last_poll_at: float | None = None

    @property
    def verification_uri_complete(self) -> str:
        return f"{self.verification_uri}?user_code={self.user_code}"

    def expires_in(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


@dataclass(frozen=True, slots=True)
class DeviceTokenGrant:
    """Tokens returned once a device request is approved or refreshed."""

    access_token: str
    refresh_token: str
    expires_in: int
    device_id: str
    canonical_user_id: str
    token_type: str = "Bearer"


@dataclass(frozen=True, slots=True)
class PollResult:
    """Outcome of one poll.

    Attributes:
        status: PollStatus.
        interval: Interval the client must honor from now on.
        grant: Present when status is APPROVED.
    """

    status: PollStatus
    interval: int = DEVICE_POLL_INTERVAL_SECONDS
    grant: DeviceTokenGrant | None = None


def normalize_user_code(user_code: str) -> str:
    """Uppercase and strip separators so "bcdf-ghjk" matches "BCDFGHJK"."""
    return "".join(ch for ch in user_code.upper() if ch.isalnum())


def _format_user_code(raw: str) -> str:
    half = len(raw) // 2
    return f"{raw[:half]}-{raw[half:]}"


def _hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class DeviceAuthorizationService:
    """Owns pending device requests and device refresh tokens.

    Args:
        store: Secret store for refresh-token hashes and device registrations.
        token_service: Mints gateway tokens on approval and refresh.
        verification_uri: URL users visit to approve a code.
        ttl_seconds: Lifetime of a device request.
        interval_seconds: Initial minimum poll interval.
        max_requests: Cap on concurrently pending requests.
        clock: Epoch-seconds clock, injectable for tests.
    """

    def __init__(
        self,
        store: "SecretStore",
        token_service: "GatewayTokenService",
        *,
        verification_uri: str,
        ttl_seconds: int = DEVICE_CODE_TTL_SECONDS,
        interval_seconds: int = DEVICE_POLL_INTERVAL_SECONDS,
        max_requests: int = MAX_DEVICE_REQUESTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._tokens = token_service
        self._verification_uri = verification_uri
        self._ttl = ttl_seconds
        self._interval = interval_seconds
        self._max_requests = max_requests
        self._clock = clock
        self._by_device_code: dict[str, DeviceAuthRequest] = {}
        self._by_user_code: dict[str, str] = {}
        self._lock = threading.Lock()
        # lookup and revoke of a refresh token must not interleave
        self._refresh_lock = asyncio.Lock()

    # =========================================================================
    # Registration
    # =========================================================================

    async def register(self, *, client_name: str | None = None) -> DeviceAuthRequest:
        """Start a device authorization.

        Raises:
            RateLimitError: Too many requests are already pending
                (code DEVICE_FLOW_LIMIT).
        """
        now = self._clock()
        with self._lock:
            self._cleanup_expired_locked(now)
            if len(self._by_device_code) >= self._max_requests:
                raise RateLimitError(
                    "Too many pending device authorizations. Try again shortly.",
                    retry_after=self._interval,
                    code="DEVICE_FLOW_LIMIT",
                )
            user_code = self._new_user_code_locked()
            request = DeviceAuthRequest(
                device_code=secrets.token_urlsafe(32),
                user_code=user_code,
                device_id=f"device-{secrets.token_hex(8)}",
                verification_uri=self._verification_uri,
                expires_at=now + self._ttl,
                interval=self._interval,
                client_name=client_name,
            )
            self._by_device_code[request.device_code] = request
            self._by_user_code[normalize_user_code(user_code)] = request.device_code

        await asyncio.to_thread(
            self._store.set_setting,
            f"{DEVICE_SETTING_PREFIX}{request.device_id}",
            {
                "device_id": request.device_id,
                "client_name": client_name,
                "registered_at": datetime.now(timezone.utc).isoformat(),
                "canonical_user_id": None,
            },
        )
        _logger.info(
            {
                "event": "device_registered",
                "message": "Device authorization started",
                "device_id": request.device_id,
                "client_name": client_name,
            }
        )
        return request

    def _new_user_code_locked(self) -> str:
        while True:
            raw = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
            if raw not in self._by_user_code:
                return _format_user_code(raw)

    # =========================================================================
    # User decision
    # =========================================================================

    def find_by_user_code(self, user_code: str) -> DeviceAuthRequest | None:
        """Pending, unexpired request for a user code."""
        now = self._clock()
        with self._lock:
            self._cleanup_expired_locked(now)
            device_code = self._by_user_code.get(normalize_user_code(user_code))
            if device_code is None:
                return None
            return self._by_device_code.get(device_code)

    async def approve(self, user_code: str, canonical_user_id: str) -> DeviceAuthRequest:
        """Bind a pending request to a user.

        Raises:
            InvalidRequestError: Unknown, expired, or already decided user
                code (code INVALID_USER_CODE).
        """
        request = self._decide(user_code, DeviceRequestStatus.APPROVED, canonical_user_id)
        registration = await asyncio.to_thread(
            self._store.get_setting, f"{DEVICE_SETTING_PREFIX}{request.device_id}"
        )
        registration = dict(registration) if isinstance(registration, dict) else {"device_id": request.device_id}
        registration["canonical_user_id"] = canonical_user_id
        registration["approved_at"] = datetime.now(timezone.utc).isoformat()
        await asyncio.to_thread(
            self._store.set_setting, f"{DEVICE_SETTING_PREFIX}{request.device_id}", registration
        )
        _logger.info(
            {
                "event": "device_approved",
                "message": "Device authorization approved",
                "device_id": request.device_id,
                "user": hash_sensitive_id(canonical_user_id),
            }
        )
        return request

    def deny(self, user_code: str) -> DeviceAuthRequest:
        request = self._decide(user_code, DeviceRequestStatus.DENIED, None)
        _logger.info(
            {"event": "device_denied", "message": "Device authorization denied", "device_id": request.device_id}
        )
        return request

    def _decide(
        self, user_code: str, status: DeviceRequestStatus, canonical_user_id: str | None
    ) -> DeviceAuthRequest:
        now = self._clock()
        with self._lock:
            self._cleanup_expired_locked(now)
            device_code = self._by_user_code.get(normalize_user_code(user_code))
            request = self._by_device_code.get(device_code) if device_code else None
            if request is None or request.status != DeviceRequestStatus.PENDING:
                raise InvalidRequestError(
                    "Unknown, expired or already used user code", code="INVALID_USER_CODE"
                )
            request.status = status
            request.bound_user = canonical_user_id
            return request

    # =========================================================================
    # Polling
    # =========================================================================

    async def poll(self, device_code: str) -> PollResult:
        """Advance a client's poll.

        Args:
            device_code: Code returned by register().

        Returns:
            PollResult. APPROVED carries the gateway token grant; the request
            is removed once a terminal result has been returned.
        """
        now = self._clock()
        with self._lock:
            request = self._by_device_code.get(device_code)
            if request is None:
                return PollResult(status=PollStatus.INVALID_GRANT)

            if now >= request.expires_at:
                self._remove_locked(request)
                request.status = DeviceRequestStatus.EXPIRED
                return PollResult(status=PollStatus.EXPIRED_TOKEN, interval=request.interval)

            if request.status == DeviceRequestStatus.DENIED:
                self._remove_locked(request)
                return PollResult(status=PollStatus.ACCESS_DENIED, interval=request.interval)

            if request.status == DeviceRequestStatus.APPROVED:
                self._remove_locked(request)
            else:
                too_fast = request.last_poll_at is not None and now - request.last_poll_at < request.interval
                request.last_poll_at = now
                if too_fast:
                    request.interval += DEVICE_SLOW_DOWN_INCREMENT_SECONDS
                    return PollResult(status=PollStatus.SLOW_DOWN, interval=request.interval)
                return PollResult(status=PollStatus.AUTHORIZATION_PENDING, interval=request.interval)

        assert request.bound_user is not None
        grant = await self._issue_grant(request.bound_user, request.device_id)
        return PollResult(status=PollStatus.APPROVED, interval=request.interval, grant=grant)

    # =========================================================================
    # Refresh tokens
    # =========================================================================

    async def _issue_grant(self, canonical_user_id: str, device_id: str) -> DeviceTokenGrant:
        issued = self._tokens.issue(
            device_id,
            canonical_user_id,
            {"source": "device", "email": email_from_canonical_id(canonical_user_id)},
            LifetimeClass.SHORT,
        )
        refresh_token = secrets.token_urlsafe(48)
        expires_at = datetime.now(timezone.utc) + timedelta(days=DEVICE_REFRESH_TOKEN_DAYS)
        await asyncio.to_thread(
            self._store.set_secret,
            f"{REFRESH_SECRET_PREFIX}{_hash_refresh_token(refresh_token)}",
            json.dumps(
                {
                    "canonical_user_id": canonical_user_id,
                    "device_id": device_id,
                    "expires_at": expires_at.isoformat(),
                }
            ),
        )
        return DeviceTokenGrant(
            access_token=issued.token,
            refresh_token=refresh_token,
            expires_in=issued.expires_in,
            device_id=device_id,
            canonical_user_id=canonical_user_id,
        )

    async def lookup_refresh_token(self, refresh_token: str) -> dict[str, Any]:
        """Resolve a device refresh token to its binding.

        Raises:
            AuthenticationError: Unknown or expired token (code INVALID_GRANT).
        """
        key = f"{REFRESH_SECRET_PREFIX}{_hash_refresh_token(refresh_token)}"
        raw = await asyncio.to_thread(self._store.get_secret, key)
        if not raw:
            raise AuthenticationError("Refresh token is invalid or has been revoked", code="INVALID_GRANT")
        try:
            binding = json.loads(raw)
            expires_at = datetime.fromisoformat(binding["expires_at"])
        except (ValueError, KeyError, TypeError) as e:
            await asyncio.to_thread(self._store.delete_secret, key)
            raise AuthenticationError("Refresh token record is corrupted", code="INVALID_GRANT") from e
        if expires_at <= datetime.now(timezone.utc):
            await asyncio.to_thread(self._store.delete_secret, key)
            raise AuthenticationError("Refresh token has expired", code="INVALID_GRANT")
        return dict(binding)

    async def refresh(self, refresh_token: str) -> DeviceTokenGrant:
        """Exchange a device refresh token for a new gateway token.

        The presented refresh token is rotated: it stops working and a new
        one is returned.

        Raises:
            AuthenticationError: Unknown or expired token (code INVALID_GRANT).
        """
        async with self._refresh_lock:
            binding = await self.lookup_refresh_token(refresh_token)
            await self.revoke_refresh_token(refresh_token)
        return await self._issue_grant(binding["canonical_user_id"], binding["device_id"])

    async def revoke_refresh_token(self, refresh_token: str) -> None:
        await asyncio.to_thread(
            self._store.delete_secret, f"{REFRESH_SECRET_PREFIX}{_hash_refresh_token(refresh_token)}"
        )

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def expires_in(self, request: DeviceAuthRequest) -> int:
        """Seconds left on a request by this service's clock."""
        return request.expires_in(self._clock())

    def pending_count(self) -> int:
        with self._lock:
            return len(self._by_device_code)

    def _remove_locked(self, request: DeviceAuthRequest) -> None:
        self._by_device_code.pop(request.device_code, None)
        self._by_user_code.pop(normalize_user_code(request.user_code), None)

    def _cleanup_expired_locked(self, now: float) -> None:
        for request in [r for r in self._by_device_code.values() if now >= r.expires_at]:
            request.status = DeviceRequestStatus.EXPIRED
            self._remove_locked(request)
