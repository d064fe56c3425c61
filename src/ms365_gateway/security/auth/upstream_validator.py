"""Structural validation of upstream (Microsoft Graph) bearer tokens.

Graph access tokens are signed by Microsoft with keys this gateway does not
hold for verification purposes, and Graph itself re-validates every call. The
gateway therefore only reads the claims: it checks the three-segment shape,
the audience, and the expiry, and can optionally call GET /me to confirm the
token is live.

Operations:
- decode_token: parse header and payload without signature verification
- quick_validate: decode + required claims + audience + expiry, never raises
- UpstreamTokenValidator.full_validate: quick_validate + /me check
- extract_metadata: normalized projection of the claims (and /me profile)

Every operation is pure and non-retrying; none of them touches storage.
"""

from __future__ import annotations

__all__ = [
    "DecodedToken",
    "TokenMetadata",
    "UpstreamTokenErrorCode",
    "UpstreamTokenValidator",
    "UpstreamValidationError",
    "ValidationResult",
    "decode_token",
    "extract_metadata",
    "quick_validate",
    "strip_bearer",
]

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import jwt

from ms365_gateway.constants import (
    APP_NAME,
    EXPIRING_SOON_SECONDS,
    GRAPH_AUDIENCE,
    GRAPH_BASE_URL,
    UPSTREAM_TIMEOUT_SECONDS,
)
from ms365_gateway.utils.logging.logging_helpers import redact_token

_logger = logging.getLogger(f"{APP_NAME}.auth")

REQUIRED_CLAIMS: tuple[str, ...] = ("aud", "exp", "iat")

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


class UpstreamTokenErrorCode(str, Enum):
    """Why an upstream token was rejected."""

    INVALID_FORMAT = "INVALID_FORMAT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_AUDIENCE = "INVALID_AUDIENCE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_CLAIMS = "MISSING_CLAIMS"


class UpstreamValidationError(Exception):
    """Raised by decode_token; caught and converted by the validate functions.

    Attributes:
        code: UpstreamTokenErrorCode for the failure.
    """

    def __init__(self, code: UpstreamTokenErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True, slots=True)
class DecodedToken:
    """Header and payload of an upstream token, unverified.

    Attributes:
        header: JOSE header.
        payload: Claim set.
        raw: Token string without any "Bearer " prefix.
    """

    header: dict[str, Any]
    payload: dict[str, Any]
    raw: str


@dataclass(frozen=True, slots=True)
class TokenMetadata:
    """Normalized view of an upstream token's claims.

    Attributes:
        user: {id, name, email, tenant}; values may be None.
        app: {id, name} of the client application the token was issued to.
        scopes: Delegated scopes from scp, sorted and de-duplicated.
        expires_at: Absolute expiry, ISO 8601 UTC.
        expires_in_seconds: Remaining lifetime, never negative.
        is_expiring_soon: True when under ten minutes remain.
        issued_at: Issue time, ISO 8601 UTC.
    """

    user: dict[str, str | None]
    app: dict[str, str | None]
    scopes: list[str]
    expires_at: str
    expires_in_seconds: int
    is_expiring_soon: bool
    issued_at: str | None
    exp: int = field(repr=False, default=0)

    @property
    def email(self) -> str | None:
        return self.user.get("email")

    @property
    def name(self) -> str | None:
        return self.user.get("name")

    @property
    def user_id(self) -> str | None:
        return self.user.get("id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": dict(self.user),
            "app": dict(self.app),
            "scopes": list(self.scopes),
            "expires_at": self.expires_at,
            "expires_in_seconds": self.expires_in_seconds,
            "is_expiring_soon": self.is_expiring_soon,
            "issued_at": self.issued_at,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of quick_validate / full_validate.

    Attributes:
        valid: True when the token was accepted.
        token: Token without "Bearer " prefix (when it could be decoded).
        metadata: Present when valid.
        error_code: Present when not valid.
        message: Human-readable failure reason.
    """

    valid: bool
    token: str | None = None
    metadata: TokenMetadata | None = None
    error_code: UpstreamTokenErrorCode | None = None
    message: str | None = None

    @classmethod
    def failure(cls, code: UpstreamTokenErrorCode, message: str, token: str | None = None) -> "ValidationResult":
        return cls(valid=False, token=token, error_code=code, message=message)


# =============================================================================
# Pure operations
# =============================================================================


def strip_bearer(token: str) -> str:
    """Remove an optional case-insensitive "Bearer " prefix and surrounding space."""
    return _BEARER_PREFIX.sub("", token.strip()).strip()


def decode_token(token: str | None) -> DecodedToken:
    """Decode an upstream token without verifying its signature.

    Args:
        token: Token string, optionally prefixed with "Bearer ".

    Returns:
        DecodedToken with header, payload and the bare token.

    Raises:
        UpstreamValidationError: INVALID_FORMAT if the token is empty, does not
            have exactly three dot-separated segments, or the first two
            segments are not base64url-encoded JSON objects.
    """
    if not token or not isinstance(token, str):
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.INVALID_FORMAT, "Token must be a non-empty string"
        )

    raw = strip_bearer(token)
    if len(raw.split(".")) != 3:
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.INVALID_FORMAT,
            "Invalid JWT format: expected 3 parts separated by dots",
        )

    try:
        header = jwt.get_unverified_header(raw)
        payload = jwt.decode(raw, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.INVALID_FORMAT, f"Failed to decode JWT: {e}"
        ) from e

    return DecodedToken(header=header, payload=payload, raw=raw)


def _to_iso(epoch_seconds: float) -> str:
    return (
        datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _parse_scopes(scp: Any) -> list[str]:
    if isinstance(scp, str):
        items = scp.split(" ")
    elif isinstance(scp, list):
        items = [str(item) for item in scp]
    else:
        return []
    return sorted({item for item in items if item})


def extract_metadata(
    decoded: DecodedToken,
    profile: dict[str, Any] | None = None,
    *,
    now: float | None = None,
) -> TokenMetadata:
    """Project claims (and an optional /me profile) into TokenMetadata.

    Profile values take precedence over in-token claims for display name
    and email.

    Args:
        decoded: Output of decode_token.
        profile: Graph /me response, when a full validation ran.
        now: Clock override in epoch seconds.

    Returns:
        TokenMetadata.
    """
    payload = decoded.payload
    profile = profile or {}
    current = int(time.time() if now is None else now)

    exp = int(payload.get("exp", 0))
    expires_in = max(0, exp - current)
    iat = payload.get("iat")

    user = {
        "id": payload.get("oid") or payload.get("sub"),
        "name": profile.get("displayName") or payload.get("name"),
        "email": (
            profile.get("mail")
            or profile.get("userPrincipalName")
            or payload.get("upn")
            or payload.get("unique_name")
            or payload.get("preferred_username")
        ),
        "tenant": payload.get("tid"),
    }
    app = {
        "id": payload.get("appid") or payload.get("azp"),
        "name": payload.get("app_displayname"),
    }

    return TokenMetadata(
        user=user,
        app=app,
        scopes=_parse_scopes(payload.get("scp")),
        expires_at=_to_iso(exp),
        expires_in_seconds=expires_in,
        is_expiring_soon=expires_in < EXPIRING_SOON_SECONDS,
        issued_at=_to_iso(float(iat)) if isinstance(iat, (int, float)) else None,
        exp=exp,
    )


def _check_claims(decoded: DecodedToken, now: float) -> None:
    payload = decoded.payload

    missing = [claim for claim in REQUIRED_CLAIMS if claim not in payload]
    if missing:
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.MISSING_CLAIMS,
            f"Missing required claims: {', '.join(missing)}",
        )

    aud = payload["aud"]
    audiences = aud if isinstance(aud, list) else [aud]
    if GRAPH_AUDIENCE not in audiences:
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.INVALID_AUDIENCE,
            f"Token audience must be {GRAPH_AUDIENCE}, got: {aud}",
        )

    exp, iat = payload["exp"], payload["iat"]
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.INVALID_FORMAT, "Claims exp and iat must be numeric"
        )
    if exp <= int(now):
        raise UpstreamValidationError(
            UpstreamTokenErrorCode.TOKEN_EXPIRED, f"Token expired at {_to_iso(exp)}"
        )


def quick_validate(token: str | None, *, now: float | None = None) -> ValidationResult:
    """Validate an upstream token offline.

    Checks, in order: format, required claims {aud, exp, iat}, audience,
    expiry (exp must be strictly in the future).

    Args:
        token: Token string, optionally prefixed with "Bearer ".
        now: Clock override in epoch seconds.

    Returns:
        ValidationResult; never raises.
    """
    current = time.time() if now is None else now
    try:
        decoded = decode_token(token)
        _check_claims(decoded, current)
    except UpstreamValidationError as e:
        return ValidationResult.failure(e.code, e.message)
    return ValidationResult(
        valid=True,
        token=decoded.raw,
        metadata=extract_metadata(decoded, now=current),
    )


# =============================================================================
# Live validation
# =============================================================================


class UpstreamTokenValidator:
    """Validates upstream tokens, optionally against the live Graph API.

    Args:
        http_client: Shared async client. The caller owns its lifecycle.
        graph_base_url: Graph API root (".../v1.0").
        timeout_seconds: Timeout for the /me check.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        graph_base_url: str = GRAPH_BASE_URL,
        timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._http = http_client
        self._me_url = f"{graph_base_url.rstrip('/')}/me"
        self._timeout = timeout_seconds

    def quick_validate(self, token: str | None) -> ValidationResult:
        return quick_validate(token)

    async def fetch_profile(self, token: str) -> dict[str, Any]:
        """GET /me with the given bearer.

        Raises:
            UpstreamValidationError: VALIDATION_FAILED on non-2xx, network
                error, or timeout.
        """
        try:
            response = await self._http.get(
                self._me_url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamValidationError(
                UpstreamTokenErrorCode.VALIDATION_FAILED, "Token validation request timed out"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamValidationError(
                UpstreamTokenErrorCode.VALIDATION_FAILED, f"Network error during validation: {e}"
            ) from e

        if not response.is_success:
            message = f"Graph API returned {response.status_code}"
            try:
                body = response.json()
                message = body.get("error", {}).get("message") or message
            except (ValueError, AttributeError):
                pass
            raise UpstreamValidationError(
                UpstreamTokenErrorCode.VALIDATION_FAILED, f"Token validation failed: {message}"
            )

        try:
            profile = response.json()
        except ValueError:
            return {}
        return profile if isinstance(profile, dict) else {}

    async def full_validate(self, token: str | None) -> ValidationResult:
        """quick_validate, then confirm liveness with GET /me.

        The /me profile is merged into the metadata with precedence over
        in-token claims. Not retried on timeout.

        Args:
            token: Token string, optionally prefixed with "Bearer ".

        Returns:
            ValidationResult; never raises (cancellation excepted).
        """
        quick = quick_validate(token)
        if not quick.valid or quick.token is None:
            return quick

        try:
            profile = await self.fetch_profile(quick.token)
        except UpstreamValidationError as e:
            _logger.info(
                {
                    "event": "upstream_token_me_check_failed",
                    "message": e.message,
                    "token": redact_token(quick.token),
                }
            )
            return ValidationResult.failure(e.code, e.message, token=quick.token)

        decoded = decode_token(quick.token)
        return ValidationResult(
            valid=True,
            token=quick.token,
            metadata=extract_metadata(decoded, profile),
        )
