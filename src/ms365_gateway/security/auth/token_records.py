"""Per-user upstream token records and their storage keys.

A TokenRecord is everything the gateway knows about one user's upstream
credential. It is persisted in the secure namespace of the secret store under
keys prefixed with the canonical user id, so several users and tenants share
one store without collisions:

    <uid>:upstream-token     bearer string (primary)
    <uid>:ms-access-token    same bearer string (mirror)
    <uid>:token-metadata     JSON {user, expires_at, scopes, source}
    <uid>:token-source       interactive | device | external | exchange
    <uid>:refresh-token      upstream refresh token, when the source has one
    <uid>:slot:<source>      full record per source, for source switching

Only UpstreamTokenProvider writes these keys.
"""

from __future__ import annotations

__all__ = [
    "TokenRecord",
    "TokenRecordMetadata",
    "TokenSource",
    "TokenUser",
    "canonical_user_id_for",
    "email_from_canonical_id",
    "record_keys",
    "slot_key",
    "synthetic_device_id",
]

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from ms365_gateway.constants import DEVICE_ID_PREFIX, IDENTITY_PROVIDER

if TYPE_CHECKING:
    from ms365_gateway.security.auth.upstream_validator import TokenMetadata


class TokenSource(str, Enum):
    """Which auth flow produced a TokenRecord."""

    INTERACTIVE = "interactive"
    DEVICE = "device"
    EXTERNAL = "external"
    EXCHANGE = "exchange"


# =============================================================================
# Identity helpers
# =============================================================================


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def canonical_user_id_for(email: str) -> str:
    """Canonical user id for an email address ("ms365:<email>").

    Raises:
        ValueError: If email is empty.
    """
    normalized = _normalize_email(email or "")
    if not normalized:
        raise ValueError("Cannot derive a canonical user id without an email")
    return f"{IDENTITY_PROVIDER}:{normalized}"


def email_from_canonical_id(canonical_user_id: str) -> str:
    prefix = f"{IDENTITY_PROVIDER}:"
    return canonical_user_id[len(prefix) :] if canonical_user_id.startswith(prefix) else canonical_user_id


def synthetic_device_id(email: str) -> str:
    """Deterministic device id for externally authenticated callers.

    Example:
        >>> synthetic_device_id("a@b.com")
        'synthetic-employee-<first 16 hex chars of sha256("a@b.com")>'
    """
    digest = hashlib.sha256(_normalize_email(email).encode("utf-8")).hexdigest()
    return f"{DEVICE_ID_PREFIX}{digest[:16]}"


# =============================================================================
# Keys
# =============================================================================


class _RecordKeys:
    """Storage keys for one canonical user id."""

    __slots__ = ("primary", "mirror", "metadata", "source", "refresh")

    def __init__(self, canonical_user_id: str) -> None:
        self.primary = f"{canonical_user_id}:upstream-token"
        self.mirror = f"{canonical_user_id}:ms-access-token"
        self.metadata = f"{canonical_user_id}:token-metadata"
        self.source = f"{canonical_user_id}:token-source"
        self.refresh = f"{canonical_user_id}:refresh-token"

    def all(self) -> tuple[str, ...]:
        return (self.primary, self.mirror, self.metadata, self.source, self.refresh)


def record_keys(canonical_user_id: str) -> _RecordKeys:
    return _RecordKeys(canonical_user_id)


def slot_key(canonical_user_id: str, source: TokenSource) -> str:
    return f"{canonical_user_id}:slot:{source.value}"


# =============================================================================
# Models
# =============================================================================


class TokenUser(BaseModel):
    id: str | None = None
    email: str
    name: str | None = None


class TokenRecordMetadata(BaseModel):
    """Non-credential part of a TokenRecord.

    Attributes:
        user: Identity the token belongs to.
        expires_at: Upstream token expiry (UTC).
        scopes: Granted delegated scopes, sorted.
        source: Flow that produced the token.
    """

    user: TokenUser
    expires_at: datetime
    scopes: list[str] = Field(default_factory=list)
    source: TokenSource


class TokenRecord(BaseModel):
    """Upstream credential for one canonical user id.

    Attributes:
        canonical_user_id: "<provider>:<email>".
        upstream_token: Raw bearer string.
        metadata: User, expiry, scopes, source.
        refresh_token: Upstream refresh token (interactive and device sources).
        stored_at: When this record was written.
    """

    canonical_user_id: str
    upstream_token: str = Field(min_length=1, repr=False)
    metadata: TokenRecordMetadata
    refresh_token: str | None = Field(default=None, repr=False)
    stored_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def source(self) -> TokenSource:
        return self.metadata.source

    @property
    def upstream_token_mirror(self) -> str:
        """Bearer under the mirror key; identical to upstream_token."""
        return self.upstream_token

    @property
    def seconds_until_expiry(self) -> float:
        return (self.metadata.expires_at - datetime.now(timezone.utc)).total_seconds()

    @property
    def is_expired(self) -> bool:
        return self.seconds_until_expiry <= 0

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TokenRecord":
        return cls.model_validate_json(data)

    @classmethod
    def from_upstream_metadata(
        cls,
        token: str,
        metadata: "TokenMetadata",
        source: TokenSource,
        *,
        refresh_token: str | None = None,
    ) -> "TokenRecord":
        """Record for a validated upstream bearer.

        Raises:
            ValueError: If the metadata carries no email.
        """
        email = metadata.email or ""
        return cls(
            canonical_user_id=canonical_user_id_for(email),
            upstream_token=token,
            metadata=TokenRecordMetadata(
                user=TokenUser(id=metadata.user_id, email=_normalize_email(email), name=metadata.name),
                expires_at=datetime.fromtimestamp(metadata.exp, tz=timezone.utc),
                scopes=list(metadata.scopes),
                source=source,
            ),
            refresh_token=refresh_token,
        )

    def public_metadata(self) -> dict[str, object]:
        """Metadata safe to return to clients (no credentials)."""
        return {
            "user": self.metadata.user.model_dump(),
            "expires_at": self.metadata.expires_at.isoformat().replace("+00:00", "Z"),
            "scopes": list(self.metadata.scopes),
            "source": self.metadata.source.value,
        }
