"""First-party gateway tokens.

Gateway tokens are HMAC-signed JWTs that identify a (deviceId, canonical
user id) pair. They are stateless: nothing is stored when one is issued, and
verification needs only the process-wide signing secret.

Claims:
    sub: canonical user id ("ms365:<email>")
    deviceId: client instance id
    iat, exp: issue and expiry times (epoch seconds)
    metadata: arbitrary JSON object (email, name, source tag, ...)
"""

from __future__ import annotations

__all__ = [
    "GatewayClaims",
    "GatewayTokenError",
    "GatewayTokenErrorReason",
    "GatewayTokenService",
    "IssuedToken",
    "LifetimeClass",
]

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import jwt

if TYPE_CHECKING:
    from ms365_gateway.config import GatewayTokenConfig


class LifetimeClass(str, Enum):
    """Lifetime classes for issued tokens."""

    SHORT = "short"
    LONG = "long"


class GatewayTokenErrorReason(str, Enum):
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"


class GatewayTokenError(Exception):
    """Gateway token failed verification.

    Attributes:
        reason: GatewayTokenErrorReason.
    """

    def __init__(self, reason: GatewayTokenErrorReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


@dataclass(frozen=True, slots=True)
class GatewayClaims:
    """Verified claim set of a gateway token."""

    sub: str
    device_id: str
    iat: int
    exp: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def canonical_user_id(self) -> str:
        return self.sub


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """A freshly minted gateway token.

    Attributes:
        token: Encoded JWT.
        expires_in: Lifetime in seconds.
        expires_at: Absolute expiry, ISO 8601 UTC.
        claims: The claims that were signed.
    """

    token: str
    expires_in: int
    expires_at: str
    claims: GatewayClaims


class GatewayTokenService:
    """Mints and verifies gateway tokens.

    The signing secret is held only on this object and never logged.

    Args:
        config: Signing secret, algorithm and lifetimes.
    """

    def __init__(self, config: "GatewayTokenConfig") -> None:
        self._secret = config.secret
        self._algorithm = config.algorithm
        self._lifetimes = {
            LifetimeClass.SHORT: config.short_lived_seconds,
            LifetimeClass.LONG: config.long_lived_seconds,
        }

    def __repr__(self) -> str:
        return f"GatewayTokenService(algorithm={self._algorithm!r})"

    def lifetime_seconds(self, lifetime: LifetimeClass) -> int:
        return self._lifetimes[lifetime]

    def issue(
        self,
        device_id: str,
        canonical_user_id: str,
        metadata: dict[str, Any] | None = None,
        lifetime: LifetimeClass = LifetimeClass.SHORT,
        *,
        now: int | None = None,
    ) -> IssuedToken:
        """Sign a new gateway token.

        Args:
            device_id: Client instance id.
            canonical_user_id: "<provider>:<email>".
            metadata: JSON-serializable metadata carried in the token.
            lifetime: SHORT (about 1 hour) or LONG (about 24 hours).
            now: Clock override in epoch seconds.

        Returns:
            IssuedToken.

        Raises:
            ValueError: If device_id or canonical_user_id is empty.
        """
        if not device_id or not canonical_user_id:
            raise ValueError("Gateway tokens require both a device id and a user id")

        iat = int(time.time()) if now is None else now
        expires_in = self._lifetimes[lifetime]
        claims = GatewayClaims(
            sub=canonical_user_id,
            device_id=device_id,
            iat=iat,
            exp=iat + expires_in,
            metadata=dict(metadata or {}),
        )
        token = jwt.encode(
            {
                "sub": claims.sub,
                "deviceId": claims.device_id,
                "iat": claims.iat,
                "exp": claims.exp,
                "metadata": claims.metadata,
            },
            self._secret,
            algorithm=self._algorithm,
        )
        expires_at = (
            datetime.fromtimestamp(claims.exp, tz=timezone.utc)
            .isoformat(timespec="seconds")
            .replace("+00:00", "Z")
        )
        return IssuedToken(token=token, expires_in=expires_in, expires_at=expires_at, claims=claims)

    def verify(self, token: str) -> GatewayClaims:
        """Verify signature, expiry and required claims.

        Args:
            token: Encoded gateway token (no "Bearer " prefix).

        Returns:
            GatewayClaims.

        Raises:
            GatewayTokenError: MALFORMED, BAD_SIGNATURE or EXPIRED.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise GatewayTokenError(GatewayTokenErrorReason.EXPIRED, "Gateway token has expired") from e
        except jwt.InvalidSignatureError as e:
            raise GatewayTokenError(
                GatewayTokenErrorReason.BAD_SIGNATURE, "Gateway token signature is invalid"
            ) from e
        except jwt.InvalidAlgorithmError as e:
            raise GatewayTokenError(
                GatewayTokenErrorReason.BAD_SIGNATURE, f"Gateway token algorithm not accepted: {e}"
            ) from e
        except jwt.PyJWTError as e:
            raise GatewayTokenError(GatewayTokenErrorReason.MALFORMED, f"Malformed gateway token: {e}") from e

        sub = payload.get("sub")
        device_id = payload.get("deviceId")
        if not isinstance(sub, str) or not sub or not isinstance(device_id, str) or not device_id:
            raise GatewayTokenError(
                GatewayTokenErrorReason.MALFORMED, "Gateway token must carry both sub and deviceId"
            )

        metadata = payload.get("metadata")
        return GatewayClaims(
            sub=sub,
            device_id=device_id,
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
