"""Upstream token provider.

Returns a live upstream bearer for a canonical user id:

    in-process cache -> secret store (primary or mirror key) -> silent refresh

and owns every write to stored TokenRecords, so the primary key, mirror key,
metadata and source always agree once a write completes.

Concurrency:
- Writes for one user run inside a per-user asyncio.Lock. The lock never
  spans a network call.
- Refreshes for one user are single-flight: concurrent callers await the
  same task, so at most one refresh request is in flight per user.
- The refresh task is shielded from waiter cancellation since other
  requests may depend on it.
"""

from __future__ import annotations

__all__ = [
    "UpstreamTokenProvider",
]

import asyncio
import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import ValidationError

from ms365_gateway.constants import APP_NAME, TOKEN_REFRESH_BUFFER_SECONDS
from ms365_gateway.exceptions import NoValidTokenError, ReauthRequiredError, StorageError
from ms365_gateway.security.auth.token_records import (
    TokenRecord,
    TokenRecordMetadata,
    TokenSource,
    record_keys,
    slot_key,
)
from ms365_gateway.security.auth.upstream_oauth import TokenRefreshError, TokenRefreshExpiredError
from ms365_gateway.security.auth.upstream_validator import UpstreamTokenErrorCode, quick_validate
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.security.auth.upstream_oauth import UpstreamAuthority
    from ms365_gateway.security.secret_store import SecretStore

_logger = logging.getLogger(f"{APP_NAME}.tokens")

# Settings key recording the last logout per user (epoch seconds).
REVOKED_BEFORE_PREFIX = "revoked-before:"


def _is_live(record: TokenRecord, now: float) -> bool:
    """True when the record's bearer is currently usable.

    JWT bearers must pass quick_validate. Opaque bearers (issued to some
    personal accounts) cannot be decoded, so their stored expiry decides.
    """
    result = quick_validate(record.upstream_token, now=now)
    if result.valid:
        return True
    if result.error_code == UpstreamTokenErrorCode.INVALID_FORMAT:
        return record.metadata.expires_at.timestamp() > now
    return False


class UpstreamTokenProvider:
    """Cache-backed access to per-user upstream tokens.

    Args:
        store: Secret store holding TokenRecords.
        authority: Token endpoint client for silent refresh. None disables refresh.
        refresh_buffer_seconds: Refresh proactively when this close to expiry.
    """

    def __init__(
        self,
        store: "SecretStore",
        authority: "UpstreamAuthority | None" = None,
        *,
        refresh_buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
    ) -> None:
        self._store = store
        self._authority = authority
        self._refresh_buffer = refresh_buffer_seconds
        self._cache: dict[str, TokenRecord] = {}
        self._write_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: dict[str, asyncio.Task[TokenRecord]] = {}
        self._revoked: dict[str, int | None] = {}

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_upstream_token(self, canonical_user_id: str) -> str:
        """Return a live upstream bearer for the user.

        Args:
            canonical_user_id: "<provider>:<email>".

        Returns:
            Bearer string that is currently valid.

        Raises:
            NoValidTokenError: No record, or an expired record without a
                refresh path.
            ReauthRequiredError: The refresh token was rejected.
            StorageError: The secret store failed.
        """
        now = time.time()

        record = self._cache.get(canonical_user_id)
        if record is None or not _is_live(record, now):
            record = await self._load_record(canonical_user_id)
            if record is not None:
                self._cache[canonical_user_id] = record

        if record is None:
            raise NoValidTokenError(
                "No upstream token is stored for this user. Sign in or inject a token first."
            )

        live = _is_live(record, now)
        near_expiry = record.seconds_until_expiry <= self._refresh_buffer

        if live and not (near_expiry and self._can_refresh(record)):
            return record.upstream_token

        if not self._can_refresh(record):
            self._cache.pop(canonical_user_id, None)
            raise NoValidTokenError(
                f"The stored upstream token ({record.source.value}) has expired and cannot be "
                "refreshed. Sign in again or inject a new token."
            )

        try:
            refreshed = await self._refresh_single_flight(canonical_user_id, record)
        except ReauthRequiredError:
            if live:
                _logger.warning(
                    {
                        "event": "proactive_refresh_failed",
                        "message": "Proactive refresh failed; using still-valid token",
                        "user": hash_sensitive_id(canonical_user_id),
                    }
                )
                return record.upstream_token
            raise
        return refreshed.upstream_token

    async def get_record(self, canonical_user_id: str) -> TokenRecord | None:
        """Active record from cache or storage, without validation or refresh."""
        cached = self._cache.get(canonical_user_id)
        if cached is not None:
            return cached
        record = await self._load_record(canonical_user_id)
        if record is not None:
            self._cache[canonical_user_id] = record
        return record

    async def has_record(self, canonical_user_id: str) -> bool:
        return await self.get_record(canonical_user_id) is not None

    async def get_active_source(self, canonical_user_id: str) -> TokenSource | None:
        record = await self.get_record(canonical_user_id)
        return record.source if record is not None else None

    async def get_source_record(self, canonical_user_id: str, source: TokenSource) -> TokenRecord | None:
        """Stored record for one source slot (active or not)."""
        raw = await asyncio.to_thread(self._store.get_secret, slot_key(canonical_user_id, source))
        return self._parse_record(raw, canonical_user_id)

    async def revoked_before(self, canonical_user_id: str) -> int | None:
        """Epoch second before which credentials for this user are rejected."""
        if canonical_user_id in self._revoked:
            return self._revoked[canonical_user_id]
        value = await asyncio.to_thread(self._store.get_setting, f"{REVOKED_BEFORE_PREFIX}{canonical_user_id}")
        mark = int(value) if isinstance(value, (int, float)) else None
        self._revoked[canonical_user_id] = mark
        return mark

    # =========================================================================
    # Writes
    # =========================================================================

    async def write_record(self, record: TokenRecord) -> None:
        """Store a record and make it the user's active credential.

        Last writer wins. The record's source slot, the primary and mirror
        keys, metadata, source and refresh token are written in one critical
        section. Also clears any logout mark for the user.

        Raises:
            StorageError: The secret store failed.
        """
        uid = record.canonical_user_id
        async with self._write_locks[uid]:
            await asyncio.to_thread(self._write_sync, record)
            self._cache[uid] = record
            self._revoked[uid] = None

        _logger.info(
            {
                "event": "token_record_written",
                "message": f"Stored upstream token from {record.source.value} flow",
                "user": hash_sensitive_id(uid),
                "source": record.source.value,
                "expires_at": record.metadata.expires_at.isoformat(),
            }
        )

    async def activate_source(self, canonical_user_id: str, source: TokenSource) -> TokenRecord:
        """Make a stored source slot the active credential again.

        Raises:
            NoValidTokenError: The slot is empty (code NO_STORED_TOKEN).
        """
        record = await self.get_source_record(canonical_user_id, source)
        if record is None:
            raise NoValidTokenError(
                f"No stored {source.value} token for this user", code="NO_STORED_TOKEN"
            )
        await self.write_record(record)
        return record

    async def clear_source(self, canonical_user_id: str, source: TokenSource) -> TokenRecord | None:
        """Delete one source slot.

        If that source was active, the most recently stored remaining slot
        becomes active; if none remains, the active keys are cleared.

        Returns:
            The record that is active afterwards, or None.
        """
        uid = canonical_user_id
        async with self._write_locks[uid]:
            active = await asyncio.to_thread(self._store.get_secret, record_keys(uid).source)
            await asyncio.to_thread(self._store.delete_secret, slot_key(uid, source))
            if active != source.value:
                return self._cache.get(uid) or await self._load_record_unlocked(uid)

            fallback: TokenRecord | None = None
            for other in TokenSource:
                if other == source:
                    continue
                candidate = self._parse_record(
                    await asyncio.to_thread(self._store.get_secret, slot_key(uid, other)), uid
                )
                if candidate is not None and (fallback is None or candidate.stored_at > fallback.stored_at):
                    fallback = candidate

            if fallback is None:
                await asyncio.to_thread(self._delete_active_sync, uid)
                self._cache.pop(uid, None)
            else:
                await asyncio.to_thread(self._write_sync, fallback)
                self._cache[uid] = fallback

        _logger.info(
            {
                "event": "token_source_cleared",
                "message": f"Cleared {source.value} token",
                "user": hash_sensitive_id(uid),
                "fallback_source": fallback.source.value if fallback else None,
            }
        )
        return fallback

    async def clear_user(self, canonical_user_id: str, *, revoke: bool = True) -> None:
        """Delete every stored credential for the user (logout).

        Args:
            canonical_user_id: User to clear.
            revoke: Also record a logout mark so credentials issued before
                now are rejected until the user authenticates again.
        """
        uid = canonical_user_id
        async with self._write_locks[uid]:
            await asyncio.to_thread(self._delete_active_sync, uid)
            for source in TokenSource:
                await asyncio.to_thread(self._store.delete_secret, slot_key(uid, source))
            self._cache.pop(uid, None)
            if revoke:
                mark = int(time.time()) + 1
                await asyncio.to_thread(self._store.set_setting, f"{REVOKED_BEFORE_PREFIX}{uid}", mark)
                self._revoked[uid] = mark

        _logger.info(
            {
                "event": "token_records_cleared",
                "message": "Cleared all stored upstream tokens for user",
                "user": hash_sensitive_id(uid),
            }
        )

    def invalidate_cache(self, canonical_user_id: str | None = None) -> None:
        if canonical_user_id is None:
            self._cache.clear()
        else:
            self._cache.pop(canonical_user_id, None)

    # =========================================================================
    # Refresh
    # =========================================================================

    def _can_refresh(self, record: TokenRecord) -> bool:
        return bool(record.refresh_token) and self._authority is not None and self._authority.is_configured

    async def _refresh_single_flight(self, uid: str, record: TokenRecord) -> TokenRecord:
        task = self._inflight.get(uid)
        if task is None or task.done():
            task = asyncio.create_task(self._refresh(uid, record))
            self._inflight[uid] = task
            task.add_done_callback(lambda t, key=uid: self._forget_inflight(key, t))
        return await asyncio.shield(task)

    def _forget_inflight(self, uid: str, task: asyncio.Task[TokenRecord]) -> None:
        if self._inflight.get(uid) is task:
            del self._inflight[uid]
        if not task.cancelled():
            # Retrieve so an unawaited failure is not reported as never retrieved
            task.exception()

    async def _refresh(self, uid: str, record: TokenRecord) -> TokenRecord:
        assert self._authority is not None and record.refresh_token is not None
        try:
            response = await self._authority.refresh(record.refresh_token)
        except TokenRefreshExpiredError as e:
            _logger.warning(
                {
                    "event": "token_refresh_rejected",
                    "message": "Refresh token rejected; re-authentication required",
                    "user": hash_sensitive_id(uid),
                    "error_message": str(e),
                }
            )
            raise ReauthRequiredError(
                "Your session has expired and could not be renewed. Sign in again at /api/auth/login."
            ) from e
        except TokenRefreshError as e:
            _logger.warning(
                {
                    "event": "token_refresh_failed",
                    "message": "Silent token refresh failed",
                    "user": hash_sensitive_id(uid),
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            raise ReauthRequiredError(
                f"Silent token refresh failed ({e}). Sign in again at /api/auth/login."
            ) from e

        refreshed = TokenRecord(
            canonical_user_id=uid,
            upstream_token=response.access_token,
            refresh_token=response.refresh_token or record.refresh_token,
            metadata=TokenRecordMetadata(
                user=record.metadata.user,
                expires_at=datetime.fromtimestamp(response.expires_at, tz=timezone.utc),
                scopes=response.scopes or record.metadata.scopes,
                source=record.source,
            ),
        )
        await self.write_record(refreshed)
        return refreshed

    # =========================================================================
    # Storage (synchronous, run via asyncio.to_thread)
    # =========================================================================

    async def _load_record(self, uid: str) -> TokenRecord | None:
        async with self._write_locks[uid]:
            return await self._load_record_unlocked(uid)

    async def _load_record_unlocked(self, uid: str) -> TokenRecord | None:
        record, needs_repair = await asyncio.to_thread(self._read_active_sync, uid)
        if record is not None and needs_repair:
            _logger.warning(
                {
                    "event": "token_mirror_repaired",
                    "message": "Primary and mirror upstream token keys disagreed; repaired",
                    "user": hash_sensitive_id(uid),
                }
            )
            await asyncio.to_thread(self._write_sync, record)
        return record

    def _parse_record(self, raw: str | None, uid: str) -> TokenRecord | None:
        if not raw:
            return None
        try:
            record = TokenRecord.from_json(raw)
        except ValidationError as e:
            _logger.warning(
                {
                    "event": "token_record_unreadable",
                    "message": "Ignoring unreadable stored token record",
                    "user": hash_sensitive_id(uid),
                    "error_message": str(e),
                }
            )
            return None
        return record if record.canonical_user_id == uid else None

    def _read_active_sync(self, uid: str) -> tuple[TokenRecord | None, bool]:
        keys = record_keys(uid)
        primary = self._store.get_secret(keys.primary)
        mirror = self._store.get_secret(keys.mirror)
        metadata_raw = self._store.get_secret(keys.metadata)
        refresh_token = self._store.get_secret(keys.refresh)

        if not primary and not mirror:
            return None, False
        if metadata_raw is None:
            raise StorageError(f"Token metadata missing for stored upstream token ({hash_sensitive_id(uid)})")
        try:
            metadata = TokenRecordMetadata.model_validate(json.loads(metadata_raw))
        except (ValueError, ValidationError) as e:
            raise StorageError(f"Stored token metadata is corrupted: {e}") from e

        def build(token: str) -> TokenRecord:
            return TokenRecord(
                canonical_user_id=uid,
                upstream_token=token,
                metadata=metadata,
                refresh_token=refresh_token or None,
            )

        if primary and primary == mirror:
            return build(primary), False

        # Keys disagree or one is missing: adopt whichever is currently valid.
        now = time.time()
        candidates = [build(token) for token in (primary, mirror) if token]
        for candidate in candidates:
            if _is_live(candidate, now):
                return candidate, True
        return candidates[0], True

    def _write_sync(self, record: TokenRecord) -> None:
        uid = record.canonical_user_id
        keys = record_keys(uid)
        self._store.set_secret(slot_key(uid, record.source), record.to_json())
        self._store.set_secret(keys.metadata, record.metadata.model_dump_json())
        self._store.set_secret(keys.source, record.source.value)
        if record.refresh_token:
            self._store.set_secret(keys.refresh, record.refresh_token)
        else:
            self._store.delete_secret(keys.refresh)
        self._store.set_secret(keys.primary, record.upstream_token)
        self._store.set_secret(keys.mirror, record.upstream_token_mirror)
        self._store.delete_setting(f"{REVOKED_BEFORE_PREFIX}{uid}")

    def _delete_active_sync(self, uid: str) -> None:
        for key in record_keys(uid).all():
            self._store.delete_secret(key)
