"""Device authorization grant endpoints (RFC 8628).

- POST /device/register - Start a device authorization
- POST /device/authorize - Signed-in user approves or denies a user code
- POST /device/token - Client polls for its gateway token
- POST /device/refresh - Rotate a device refresh token for a new gateway token

Poll and refresh failures use the OAuth error body
{error, error_description, interval?} with lower-case RFC codes.

Routes mounted at: /auth and /api/auth
"""

from __future__ import annotations

__all__ = ["router"]

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ms365_gateway.api.deps import DeviceServiceDep, ProviderDep
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.identity import IdentityDep
from ms365_gateway.api.rate_limit import auth_rate_limit
from ms365_gateway.api.schemas import (
    DeviceAuthorizeRequest,
    DeviceAuthorizeResponse,
    DeviceRefreshRequest,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceTokenRequest,
    DeviceTokenResponse,
)
from ms365_gateway.api.utils import run_auth_flow
from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import AuthenticationError
from ms365_gateway.security.auth.device_grant import DeviceTokenGrant, PollStatus
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

router = APIRouter(dependencies=[Depends(auth_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.device")

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

_POLL_DESCRIPTIONS = {
    PollStatus.AUTHORIZATION_PENDING: "The user has not yet approved this device",
    PollStatus.SLOW_DOWN: "Polling too frequently; increase the interval",
    PollStatus.EXPIRED_TOKEN: "The device code has expired; register again",
    PollStatus.ACCESS_DENIED: "The user denied this device",
    PollStatus.INVALID_GRANT: "Unknown device code",
}


def _oauth_error(error: str, description: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": error, "error_description": description, **extra},
        headers={"Cache-Control": "no-store"},
    )


def _grant_response(grant: DeviceTokenGrant) -> DeviceTokenResponse:
    return DeviceTokenResponse(
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        token_type=grant.token_type,
        expires_in=grant.expires_in,
        device_id=grant.device_id,
    )


@router.post("/device/register", response_model=DeviceRegisterResponse)
async def register_device(
    device_service: DeviceServiceDep,
    body: DeviceRegisterRequest | None = None,
) -> DeviceRegisterResponse:
    """Start a device authorization.

    The client shows user_code and verification_uri to the user, then polls
    /device/token every `interval` seconds.
    """
    request = await device_service.register(client_name=body.client_name if body else None)
    return DeviceRegisterResponse(
        device_code=request.device_code,
        user_code=request.user_code,
        verification_uri=request.verification_uri,
        verification_uri_complete=request.verification_uri_complete,
        expires_in=device_service.expires_in(request),
        interval=request.interval,
    )


@router.post("/device/authorize", response_model=DeviceAuthorizeResponse)
async def authorize_device(
    body: DeviceAuthorizeRequest,
    identity: IdentityDep,
    provider: ProviderDep,
    device_service: DeviceServiceDep,
) -> DeviceAuthorizeResponse:
    """Approve or deny a pending user code as the signed-in caller.

    Raises:
        APIError: 401 NO_VALID_TOKEN when the caller has no stored upstream
            token; 400 INVALID_USER_CODE for unknown or decided codes.
    """
    if not await provider.has_record(identity.canonical_user_id):
        raise APIError(
            status_code=401,
            code=ErrorCode.NO_VALID_TOKEN,
            message="No upstream token stored for this user. Sign in before approving a device.",
        )

    if body.action == "deny":
        request = device_service.deny(body.user_code)
    else:
        request = await device_service.approve(body.user_code, identity.canonical_user_id)
    return DeviceAuthorizeResponse(success=True, status=request.status.value, device_id=request.device_id)


@router.post("/device/token", response_model=None)
async def device_token(
    body: DeviceTokenRequest,
    device_service: DeviceServiceDep,
) -> DeviceTokenResponse | JSONResponse:
    """Poll for the gateway token of a device authorization."""
    if body.grant_type is not None and body.grant_type != DEVICE_CODE_GRANT_TYPE:
        return _oauth_error("unsupported_grant_type", f"Expected grant_type {DEVICE_CODE_GRANT_TYPE}")

    result = await device_service.poll(body.device_code)
    if result.status == PollStatus.APPROVED and result.grant is not None:
        _logger.info(
            {
                "event": "device_token_issued",
                "message": "Issued gateway token to device",
                "device_id": result.grant.device_id,
                "user": hash_sensitive_id(result.grant.canonical_user_id),
            }
        )
        return _grant_response(result.grant)

    extra: dict[str, Any] = {}
    if result.status in (PollStatus.AUTHORIZATION_PENDING, PollStatus.SLOW_DOWN):
        extra["interval"] = result.interval
    return _oauth_error(result.status.value, _POLL_DESCRIPTIONS[result.status], **extra)


@router.post("/device/refresh", response_model=None)
async def device_refresh(
    request: Request,
    body: DeviceRefreshRequest,
    device_service: DeviceServiceDep,
    provider: ProviderDep,
) -> DeviceTokenResponse | JSONResponse:
    """Exchange a device refresh token for a new gateway token.

    The refresh token is rotated. It is refused once the user no longer has
    a stored upstream token (for example after logout).
    """

    async def rotate() -> DeviceTokenGrant | None:
        binding = await device_service.lookup_refresh_token(body.refresh_token)
        if not await provider.has_record(binding["canonical_user_id"]):
            await device_service.revoke_refresh_token(body.refresh_token)
            return None
        return await device_service.refresh(body.refresh_token)

    try:
        grant = await run_auth_flow(request, rotate())
    except AuthenticationError as e:
        return _oauth_error("invalid_grant", e.message)

    if grant is None:
        return _oauth_error("invalid_grant", "The user must sign in again before this device can refresh")
    return _grant_response(grant)
