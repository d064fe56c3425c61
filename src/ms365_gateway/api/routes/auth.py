"""Authentication API endpoints.

Interactive sign-in and session management:
- GET /status - Who the caller is and which upstream source is active
- GET /login - Start authorization-code + PKCE sign-in (optional ?user_code=)
- GET /callback - Complete sign-in, store the upstream token
- POST /logout - Clear session, stored tokens and cache
- POST /generate-mcp-token - Long-lived gateway token for the caller
- GET /.well-known/oauth-protected-resource - Resource metadata

Routes mounted at: /auth and /api/auth
"""

from __future__ import annotations

__all__ = [
    "clear_session_cookie",
    "router",
    "set_session_cookie",
]

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ms365_gateway.api.deps import (
    AuthorityDep,
    ConfigDep,
    DeviceServiceDep,
    PkceStoreDep,
    ProviderDep,
    SessionsDep,
    StoreDep,
    TokenServiceDep,
)
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.identity import IdentityDep, OptionalIdentityDep
from ms365_gateway.api.rate_limit import auth_rate_limit
from ms365_gateway.api.schemas import (
    AuthStatusResponse,
    GatewayTokenResponse,
    LogoutResponse,
    ProtectedResourceMetadata,
)
from ms365_gateway.api.utils import run_auth_flow
from ms365_gateway.constants import APP_NAME, LAST_USER_SETTING, SESSION_COOKIE_NAME, SESSION_TTL_SECONDS
from ms365_gateway.exceptions import InvalidRequestError
from ms365_gateway.security.auth.gateway_tokens import LifetimeClass
from ms365_gateway.security.auth.pkce import PkceState, create_pkce_challenge
from ms365_gateway.security.auth.sessions import SessionUser
from ms365_gateway.security.auth.token_records import (
    TokenRecord,
    TokenRecordMetadata,
    TokenSource,
    TokenUser,
    canonical_user_id_for,
)
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.config import AppConfig
    from ms365_gateway.security.auth.sessions import BrowserSession

router = APIRouter(dependencies=[Depends(auth_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.auth")


# =============================================================================
# Session cookie helpers
# =============================================================================


def set_session_cookie(response: Response, session: "BrowserSession", config: "AppConfig") -> None:
    """Attach the opaque session id cookie (HttpOnly, SameSite=Lax)."""
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.session_id,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        secure=config.server.base_url.startswith("https://"),
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


def _wants_html(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "text/html" in accept and "application/json" not in accept


# =============================================================================
# Status
# =============================================================================


@router.get("/status", response_model=AuthStatusResponse, response_model_exclude_none=True)
async def get_status(identity: OptionalIdentityDep, provider: ProviderDep) -> AuthStatusResponse:
    """Authentication status of the caller.

    Unauthenticated callers get loginUrl instead of user details.
    """
    if identity is None:
        return AuthStatusResponse(
            authenticated=False,
            loginUrl="/api/auth/login",
            message="Not authenticated. Sign in at /api/auth/login.",
        )

    record = await provider.get_record(identity.canonical_user_id)
    return AuthStatusResponse(
        authenticated=True,
        user={
            "id": identity.canonical_user_id,
            "email": identity.email,
            "name": identity.name or (record.metadata.user.name if record else None),
            "deviceId": identity.device_id,
            "authMethod": identity.source.value,
        },
        token_source=record.source.value if record else None,
        message="Authenticated" if record else "Authenticated, but no upstream token is stored",
        logoutUrl="/api/auth/logout",
    )


# =============================================================================
# Interactive authorization-code + PKCE
# =============================================================================


@router.get("/login")
async def login(
    request: Request,
    config: ConfigDep,
    authority: AuthorityDep,
    sessions: SessionsDep,
    pkce_store: PkceStoreDep,
    device_service: DeviceServiceDep,
    user_code: str | None = Query(default=None, max_length=32),
    login_hint: str | None = Query(default=None, max_length=320),
) -> RedirectResponse:
    """Redirect to the upstream authority with a fresh PKCE challenge.

    With ?user_code= the pending device authorization is approved once the
    sign-in completes.
    """
    if not authority.is_configured:
        raise APIError(
            status_code=503,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            message="Interactive sign-in is not configured (MICROSOFT_CLIENT_ID is not set)",
        )
    if user_code and device_service.find_by_user_code(user_code) is None:
        raise APIError(
            status_code=400,
            code=ErrorCode.INVALID_USER_CODE,
            message="Unknown or expired device code",
        )

    session, _ = sessions.get_or_create(request.cookies.get(SESSION_COOKIE_NAME))
    challenge = create_pkce_challenge()
    state = secrets.token_urlsafe(24)

    session.pkce_verifier = challenge.code_verifier
    session.pkce_state = state
    session.pending_user_code = user_code
    pkce_store.put(
        state,
        PkceState(
            code_verifier=challenge.code_verifier,
            created_at=time.monotonic(),
            session_id=session.session_id,
            user_code=user_code,
        ),
    )

    url = authority.build_authorization_url(
        state=state, code_challenge=challenge.code_challenge, login_hint=login_hint
    )
    response = RedirectResponse(url, status_code=302)
    set_session_cookie(response, session, config)
    return response


@router.get("/callback")
async def callback(
    request: Request,
    config: ConfigDep,
    authority: AuthorityDep,
    provider: ProviderDep,
    sessions: SessionsDep,
    pkce_store: PkceStoreDep,
    device_service: DeviceServiceDep,
    store: StoreDep,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> RedirectResponse:
    """Complete the authorization-code flow.

    The state must match a login this gateway started. The verifier is taken
    from the browser session, falling back to the state-keyed store when the
    session cookie did not survive the round trip.
    """
    if error:
        _logger.warning(
            {"event": "login_rejected", "message": f"Authority returned {error}", "error": error}
        )
        raise APIError(status_code=401, code=ErrorCode.LOGIN_FAILED, message=error_description or error)
    if not code:
        raise APIError(status_code=400, code=ErrorCode.INVALID_REQUEST, message="Missing authorization code")
    if not state:
        raise APIError(status_code=400, code=ErrorCode.INVALID_REQUEST, message="Missing state parameter")

    session = sessions.get(request.cookies.get(SESSION_COOKIE_NAME))
    pending = pkce_store.pop(state)
    verifier: str | None = None
    user_code: str | None = None
    if session is not None and session.pkce_verifier and session.pkce_state == state:
        verifier = session.pkce_verifier
        user_code = session.pending_user_code
    elif pending is not None:
        verifier = pending.code_verifier
        user_code = pending.user_code
        if session is None and pending.session_id:
            session = sessions.get(pending.session_id)

    if not verifier:
        raise APIError(
            status_code=400,
            code=ErrorCode.NO_CODE_VERIFIER,
            message="No PKCE verifier for this sign-in. Start again at /api/auth/login.",
        )

    async def complete() -> "BrowserSession":
        tokens = await authority.exchange_code(code, verifier)
        username = tokens.username
        if not username:
            raise APIError(
                status_code=401,
                code=ErrorCode.INVALID_USER_INFO,
                message="The authority did not return a username for this account",
            )

        uid = canonical_user_id_for(username)
        email = username.strip().lower()
        record = TokenRecord(
            canonical_user_id=uid,
            upstream_token=tokens.access_token,
            metadata=TokenRecordMetadata(
                user=TokenUser(id=tokens.object_id, email=email, name=tokens.display_name),
                expires_at=datetime.fromtimestamp(tokens.expires_at, tz=timezone.utc),
                scopes=tokens.scopes,
                source=TokenSource.INTERACTIVE,
            ),
            refresh_token=tokens.refresh_token,
        )
        await provider.write_record(record)
        await asyncio.to_thread(
            store.set_setting,
            LAST_USER_SETTING,
            {
                "canonical_user_id": uid,
                "name": tokens.display_name,
                "signed_in_at": datetime.now(timezone.utc).isoformat(),
            },
        )

        browser = session if session is not None else sessions.create()
        browser.clear_pkce()
        browser.pending_user_code = None
        browser.ms_user = SessionUser(
            canonical_user_id=uid, email=email, name=tokens.display_name, source=TokenSource.INTERACTIVE.value
        )

        if user_code:
            try:
                await device_service.approve(user_code, uid)
            except InvalidRequestError as e:
                # Sign-in still succeeded; the device client will see expired_token
                _logger.warning(
                    {"event": "device_approval_skipped", "message": e.message, "user": hash_sensitive_id(uid)}
                )

        _logger.info(
            {
                "event": "login_completed",
                "message": "Interactive sign-in completed",
                "user": hash_sensitive_id(uid),
                "device_code_approved": bool(user_code),
            }
        )
        return browser

    try:
        browser = await run_auth_flow(request, complete())
    finally:
        # A verifier is good for one exchange attempt, successful or not
        if session is not None:
            session.clear_pkce()
    response = RedirectResponse("/", status_code=302)
    set_session_cookie(response, browser, config)
    return response


# =============================================================================
# Logout
# =============================================================================


@router.post("/logout", response_model=None)
async def logout(
    request: Request,
    identity: OptionalIdentityDep,
    provider: ProviderDep,
    sessions: SessionsDep,
    pkce_store: PkceStoreDep,
) -> Response:
    """Clear the caller's session, stored upstream tokens and cache.

    Gateway and upstream tokens issued before this moment stop working for
    the user. Browsers (Accept: text/html) are redirected to "/".
    """
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if identity is not None:
        await provider.clear_user(identity.canonical_user_id)
        sessions.destroy_user(identity.canonical_user_id)
        _logger.info(
            {
                "event": "logout",
                "message": "User logged out",
                "user": hash_sensitive_id(identity.canonical_user_id),
            }
        )
    if session_id:
        sessions.destroy(session_id)
        pkce_store.discard_session(session_id)

    response: Response
    if _wants_html(request):
        response = RedirectResponse("/", status_code=303)
    else:
        body = LogoutResponse(success=True, message="Logged out successfully")
        response = JSONResponse(body.model_dump())
    clear_session_cookie(response)
    return response


# =============================================================================
# Gateway tokens for MCP clients
# =============================================================================


@router.post("/generate-mcp-token", response_model=GatewayTokenResponse)
async def generate_mcp_token(
    identity: IdentityDep,
    provider: ProviderDep,
    tokens: TokenServiceDep,
) -> GatewayTokenResponse:
    """Mint a long-lived gateway token for the authenticated caller.

    Raises:
        APIError: 401 NO_VALID_TOKEN when no upstream token is stored for the
            caller (the gateway token would be useless).
    """
    if not await provider.has_record(identity.canonical_user_id):
        raise APIError(
            status_code=401,
            code=ErrorCode.NO_VALID_TOKEN,
            message="No upstream token stored for this user. Sign in first.",
        )

    issued = tokens.issue(
        identity.device_id,
        identity.canonical_user_id,
        {
            "email": identity.email,
            "name": identity.name,
            "source": "mcp-token",
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
        LifetimeClass.LONG,
    )
    _logger.info(
        {
            "event": "mcp_token_issued",
            "message": "Issued long-lived gateway token",
            "user": hash_sensitive_id(identity.canonical_user_id),
            "device_id": identity.device_id,
        }
    )
    return GatewayTokenResponse(
        access_token=issued.token,
        expires_in=issued.expires_in,
        expires_at=issued.expires_at,
        user={"id": identity.canonical_user_id, "email": identity.email, "name": identity.name},
    )


# =============================================================================
# Discovery
# =============================================================================


@router.get("/.well-known/oauth-protected-resource", response_model=ProtectedResourceMetadata)
async def protected_resource_metadata(config: ConfigDep) -> ProtectedResourceMetadata:
    base_url = config.server.base_url
    return ProtectedResourceMetadata(
        resource=base_url,
        authorization_servers=[f"{config.upstream.authority}/v2.0"],
        bearer_methods_supported=["header"],
        scopes_supported=list(config.upstream.scopes),
        resource_documentation=f"{base_url}/tools",
    )
