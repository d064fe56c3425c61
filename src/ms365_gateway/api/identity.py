"""Caller identity resolution.

For each request the first credential that checks out wins:

1. Authorization: Bearer <gateway token>
2. Authorization: Bearer <upstream token> (structurally valid Graph token)
3. Session cookie whose server-side session holds a signed-in user
4. ?token=<gateway or upstream token>, streaming (/sse) endpoints only

A failing step falls through to the next; only exhausting all four is a 401.
The query-parameter rule for non-streaming paths is enforced earlier, by
SecurityMiddleware, so by the time a route asks for an identity a query
token can only be present on an /sse path.

Tokens issued before a user's last logout are rejected (see
UpstreamTokenProvider.clear_user).
"""

from __future__ import annotations

__all__ = [
    "IdentityDep",
    "IdentitySource",
    "OptionalIdentityDep",
    "RequestIdentity",
    "caller_scopes",
    "is_sse_path",
    "optional_identity",
    "require_identity",
    "resolve_identity",
]

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import Depends, Request

from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.constants import APP_NAME, SESSION_COOKIE_NAME, SSE_PATH_SUFFIXES
from ms365_gateway.exceptions import NoValidTokenError
from ms365_gateway.security.auth.gateway_tokens import GatewayTokenError
from ms365_gateway.security.auth.token_records import canonical_user_id_for, synthetic_device_id
from ms365_gateway.security.auth.upstream_validator import decode_token, quick_validate, strip_bearer
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.security.auth.gateway_tokens import GatewayClaims, GatewayTokenService
    from ms365_gateway.security.auth.sessions import BrowserSessionStore
    from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider

_logger = logging.getLogger(f"{APP_NAME}.auth")


class IdentitySource(str, Enum):
    """Which credential identified the caller."""

    GATEWAY_TOKEN = "gateway_token"
    UPSTREAM_TOKEN = "upstream_token"
    SESSION = "session"
    QUERY_TOKEN = "query_token"


@dataclass(slots=True)
class RequestIdentity:
    """Request-scoped caller identity.

    Attributes:
        canonical_user_id: "ms365:<email>".
        device_id: Client instance id (gateway token claim, or synthetic).
        source: Credential that identified the caller.
        email: Caller email.
        name: Display name, when known.
        upstream_token: Bearer presented directly by the caller, if any.
        claims: Gateway token metadata, or upstream token claims.
        session_id: Browser session id for cookie-authenticated callers.
    """

    canonical_user_id: str
    device_id: str
    source: IdentitySource
    email: str
    name: str | None = None
    upstream_token: str | None = field(default=None, repr=False)
    claims: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


def is_sse_path(path: str) -> bool:
    return path.endswith(SSE_PATH_SUFFIXES)


def _bearer_from_header(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header[:7].lower() != "bearer ":
        return None
    token = strip_bearer(header)
    return token or None


async def _is_revoked(provider: "UpstreamTokenProvider", uid: str, issued_at: Any) -> bool:
    mark = await provider.revoked_before(uid)
    if mark is None:
        return False
    return not isinstance(issued_at, (int, float)) or issued_at < mark


async def _from_gateway_token(
    token: str,
    tokens: "GatewayTokenService",
    provider: "UpstreamTokenProvider",
    source: IdentitySource,
) -> RequestIdentity | None:
    try:
        claims: GatewayClaims = tokens.verify(token)
    except GatewayTokenError:
        return None
    if await _is_revoked(provider, claims.sub, claims.iat):
        _logger.info(
            {
                "event": "revoked_gateway_token",
                "message": "Gateway token issued before logout was rejected",
                "user": hash_sensitive_id(claims.sub),
            }
        )
        return None
    metadata = claims.metadata
    return RequestIdentity(
        canonical_user_id=claims.sub,
        device_id=claims.device_id,
        source=source,
        email=str(metadata.get("email") or claims.sub.split(":", 1)[-1]),
        name=metadata.get("name"),
        claims=dict(metadata),
    )


async def _from_upstream_token(
    token: str,
    provider: "UpstreamTokenProvider",
    source: IdentitySource,
) -> RequestIdentity | None:
    result = quick_validate(token)
    if not result.valid or result.metadata is None or not result.metadata.email:
        return None
    uid = canonical_user_id_for(result.metadata.email)
    payload = decode_token(token).payload
    if await _is_revoked(provider, uid, payload.get("iat")):
        return None
    return RequestIdentity(
        canonical_user_id=uid,
        device_id=synthetic_device_id(result.metadata.email),
        source=source,
        email=result.metadata.email.strip().lower(),
        name=result.metadata.name,
        upstream_token=result.token,
        claims=payload,
    )


def _from_session(request: Request, sessions: "BrowserSessionStore") -> RequestIdentity | None:
    session = sessions.get(request.cookies.get(SESSION_COOKIE_NAME))
    if session is None or session.ms_user is None:
        return None
    user = session.ms_user
    return RequestIdentity(
        canonical_user_id=user.canonical_user_id,
        device_id=synthetic_device_id(user.email),
        source=IdentitySource.SESSION,
        email=user.email,
        name=user.name,
        session_id=session.session_id,
    )


async def resolve_identity(request: Request) -> RequestIdentity | None:
    """Identify the caller, or return None when no credential checks out."""
    state = request.app.state
    tokens: GatewayTokenService = state.token_service
    provider: UpstreamTokenProvider = state.provider

    bearer = _bearer_from_header(request)
    if bearer:
        identity = await _from_gateway_token(bearer, tokens, provider, IdentitySource.GATEWAY_TOKEN)
        if identity is None:
            identity = await _from_upstream_token(bearer, provider, IdentitySource.UPSTREAM_TOKEN)
        if identity is not None:
            return identity

    identity = _from_session(request, state.sessions)
    if identity is not None:
        return identity

    query_token = request.query_params.get("token")
    if query_token and is_sse_path(request.url.path):
        identity = await _from_gateway_token(query_token, tokens, provider, IdentitySource.QUERY_TOKEN)
        if identity is None:
            identity = await _from_upstream_token(query_token, provider, IdentitySource.QUERY_TOKEN)
        if identity is not None:
            _logger.info(
                {
                    "event": "query_token_used",
                    "message": "Caller authenticated with a query-parameter token",
                    "path": request.url.path,
                    "user": hash_sensitive_id(identity.canonical_user_id),
                }
            )
            return identity

    return None


async def optional_identity(request: Request) -> RequestIdentity | None:
    """Dependency: the caller's identity, or None. Cached on request.state."""
    if hasattr(request.state, "identity"):
        cached: RequestIdentity | None = request.state.identity
        return cached
    identity = await resolve_identity(request)
    request.state.identity = identity
    return identity


async def require_identity(request: Request) -> RequestIdentity:
    """Dependency: the caller's identity.

    Raises:
        APIError: 401 UNAUTHENTICATED when no credential checks out.
    """
    identity = await optional_identity(request)
    if identity is None:
        raise APIError(
            status_code=401,
            code=ErrorCode.UNAUTHENTICATED,
            message="Authentication required. Present a gateway token, a Microsoft Graph token, "
            "or sign in at /api/auth/login.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


IdentityDep = Annotated[RequestIdentity, Depends(require_identity)]
OptionalIdentityDep = Annotated["RequestIdentity | None", Depends(optional_identity)]


async def caller_scopes(identity: RequestIdentity, provider: "UpstreamTokenProvider") -> list[str]:
    """Delegated scopes of the caller's upstream token, sorted and de-duplicated.

    The bearer the caller presented is used when there is one, otherwise the
    stored record. A stored token that cannot be decoded (opaque, or expired)
    falls back to the scopes recorded when it was stored.

    Raises:
        NoValidTokenError: No upstream token is available for the caller.
    """
    record = None
    token = identity.upstream_token
    if token is None:
        record = await provider.get_record(identity.canonical_user_id)
        if record is None:
            raise NoValidTokenError("No upstream token available for this user")
        token = record.upstream_token

    result = quick_validate(token)
    if result.metadata is not None:
        return list(result.metadata.scopes)
    if record is not None:
        return sorted(set(record.metadata.scopes))
    raise NoValidTokenError(result.message or "Upstream token is not usable")
