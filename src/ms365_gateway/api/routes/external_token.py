"""External upstream token endpoints.

Lets a caller supply a Microsoft Graph bearer obtained elsewhere (another
app, Graph Explorer, an agent) instead of signing in through the gateway:

- POST /external-token/login - Unauthenticated: validate, store, open a session
- POST /external-token - Store an external token for the signed-in caller
- GET /external-token, GET /external-token/status - External token state
- DELETE /external-token - Remove it; fall back to another stored source
- POST /external-token/switch - Choose the active source

Routes mounted at: /auth and /api/auth
"""

from __future__ import annotations

__all__ = ["router"]

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ms365_gateway.api.deps import ConfigDep, ProviderDep, SessionsDep, ValidatorDep
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.identity import IdentityDep
from ms365_gateway.api.rate_limit import auth_rate_limit
from ms365_gateway.api.routes.auth import set_session_cookie
from ms365_gateway.api.schemas import (
    ExternalTokenClearResponse,
    ExternalTokenLoginResponse,
    ExternalTokenRequest,
    ExternalTokenResponse,
    ExternalTokenStatusResponse,
    SwitchSourceRequest,
    SwitchSourceResponse,
)
from ms365_gateway.api.utils import run_auth_flow
from ms365_gateway.constants import APP_NAME, SESSION_COOKIE_NAME
from ms365_gateway.exceptions import NoValidTokenError
from ms365_gateway.security.auth.sessions import SessionUser
from ms365_gateway.security.auth.token_records import TokenRecord, TokenSource
from ms365_gateway.security.auth.upstream_validator import ValidationResult, quick_validate
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id, redact_token

if TYPE_CHECKING:
    from ms365_gateway.security.auth.upstream_validator import UpstreamTokenValidator

router = APIRouter(dependencies=[Depends(auth_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.auth")


def _validation_failed(result: ValidationResult) -> APIError:
    code = result.error_code.value if result.error_code else "VALIDATION_FAILED"
    return APIError(status_code=400, code=code, message=result.message or "Token validation failed")


def _source_from_wire(value: str) -> TokenSource:
    # "oauth" is the older name for the interactive sign-in source
    return TokenSource.INTERACTIVE if value == "oauth" else TokenSource(value)


async def _validated_record(request: Request, validator: "UpstreamTokenValidator", token: str) -> TokenRecord:
    result = await run_auth_flow(request, validator.full_validate(token))
    if not result.valid or result.metadata is None or result.token is None:
        _logger.info(
            {
                "event": "external_token_rejected",
                "message": result.message,
                "error_code": result.error_code.value if result.error_code else None,
                "token": redact_token(token),
            }
        )
        raise _validation_failed(result)
    if not result.metadata.email:
        raise APIError(
            status_code=400,
            code=ErrorCode.INVALID_USER_INFO,
            message="Token does not identify a user (missing email)",
        )
    return TokenRecord.from_upstream_metadata(result.token, result.metadata, TokenSource.EXTERNAL)


# =============================================================================
# Unauthenticated login with an external token
# =============================================================================


@router.post("/external-token/login", response_model=None)
async def external_token_login(
    request: Request,
    body: ExternalTokenRequest,
    config: ConfigDep,
    validator: ValidatorDep,
    provider: ProviderDep,
    sessions: SessionsDep,
) -> JSONResponse:
    """Sign in with an upstream token: validate, store it, open a browser session."""
    record = await _validated_record(request, validator, body.access_token)
    await provider.write_record(record)

    user = record.metadata.user
    session, _ = sessions.get_or_create(request.cookies.get(SESSION_COOKIE_NAME))
    session.ms_user = SessionUser(
        canonical_user_id=record.canonical_user_id,
        email=user.email,
        name=user.name or "External User",
        source=TokenSource.EXTERNAL.value,
    )
    _logger.info(
        {
            "event": "external_token_login",
            "message": "Signed in with external token",
            "user": hash_sensitive_id(record.canonical_user_id),
            "scope_count": len(record.metadata.scopes),
        }
    )

    content = ExternalTokenLoginResponse(
        success=True,
        authenticated=True,
        user={"name": user.name, "email": user.email, "id": user.id},
        metadata=record.public_metadata(),
    )
    response = JSONResponse(content.model_dump())
    set_session_cookie(response, session, config)
    return response


# =============================================================================
# Authenticated management
# =============================================================================


@router.post("/external-token", response_model=ExternalTokenResponse)
async def inject_external_token(
    request: Request,
    body: ExternalTokenRequest,
    identity: IdentityDep,
    validator: ValidatorDep,
    provider: ProviderDep,
) -> ExternalTokenResponse:
    """Store an external upstream token for the caller and make it active.

    Raises:
        APIError: 400 with the validator's code when the token is rejected;
            403 FORBIDDEN when the token belongs to a different user.
    """
    record = await _validated_record(request, validator, body.access_token)
    if record.canonical_user_id != identity.canonical_user_id:
        raise APIError(
            status_code=403,
            code=ErrorCode.FORBIDDEN,
            message="The supplied token belongs to a different user",
        )

    await provider.write_record(record)
    _logger.info(
        {
            "event": "external_token_injected",
            "message": "External token stored",
            "user": hash_sensitive_id(identity.canonical_user_id),
            "expires_at": record.metadata.expires_at.isoformat(),
        }
    )
    return ExternalTokenResponse(success=True, metadata=record.public_metadata())


@router.get("/external-token", response_model=ExternalTokenStatusResponse, response_model_exclude_none=True)
@router.get(
    "/external-token/status", response_model=ExternalTokenStatusResponse, response_model_exclude_none=True
)
async def external_token_status(identity: IdentityDep, provider: ProviderDep) -> ExternalTokenStatusResponse:
    """State of the caller's external token.

    A stored external token that no longer passes quick validation is
    removed and reported with expired_reason.
    """
    uid = identity.canonical_user_id
    record = await provider.get_source_record(uid, TokenSource.EXTERNAL)
    active = await provider.get_active_source(uid)
    if record is None:
        return ExternalTokenStatusResponse(
            has_external_token=False,
            is_active=False,
            token_source=active.value if active else None,
        )

    check = quick_validate(record.upstream_token)
    if not check.valid or check.metadata is None:
        fallback = await provider.clear_source(uid, TokenSource.EXTERNAL)
        return ExternalTokenStatusResponse(
            has_external_token=False,
            is_active=False,
            token_source=fallback.source.value if fallback else None,
            expired_reason=check.error_code.value if check.error_code else check.message,
        )

    return ExternalTokenStatusResponse(
        has_external_token=True,
        is_active=active == TokenSource.EXTERNAL,
        token_source=active.value if active else None,
        metadata=check.metadata.to_dict(),
    )


@router.delete("/external-token", response_model=ExternalTokenClearResponse, response_model_exclude_none=True)
async def clear_external_token(identity: IdentityDep, provider: ProviderDep) -> ExternalTokenClearResponse:
    """Remove the external token; the most recent other source becomes active."""
    fallback = await provider.clear_source(identity.canonical_user_id, TokenSource.EXTERNAL)
    return ExternalTokenClearResponse(
        success=True,
        message="External token cleared successfully",
        active_source=fallback.source.value if fallback else None,
    )


@router.post("/external-token/switch", response_model=SwitchSourceResponse)
async def switch_token_source(
    body: SwitchSourceRequest,
    identity: IdentityDep,
    provider: ProviderDep,
) -> SwitchSourceResponse:
    """Make a stored source the active upstream credential.

    Raises:
        APIError: 400 NO_EXTERNAL_TOKEN or EXTERNAL_TOKEN_INVALID when
            switching to a missing or unusable external token; 404
            NO_STORED_TOKEN for any other empty source.
    """
    uid = identity.canonical_user_id
    source = _source_from_wire(body.source)

    if source == TokenSource.EXTERNAL:
        record = await provider.get_source_record(uid, source)
        if record is None:
            raise APIError(
                status_code=400,
                code=ErrorCode.NO_EXTERNAL_TOKEN,
                message="No external token available. Please inject a token first.",
            )
        check = quick_validate(record.upstream_token)
        if not check.valid:
            raise APIError(
                status_code=400,
                code=ErrorCode.EXTERNAL_TOKEN_INVALID,
                message=f"External token is invalid: {check.message}",
            )

    try:
        await provider.activate_source(uid, source)
    except NoValidTokenError as e:
        raise APIError(status_code=404, code=ErrorCode.NO_STORED_TOKEN, message=e.message) from e

    _logger.info(
        {
            "event": "token_source_switched",
            "message": f"Active token source is now {source.value}",
            "user": hash_sensitive_id(uid),
        }
    )
    return SwitchSourceResponse(success=True, active_source=source.value)
