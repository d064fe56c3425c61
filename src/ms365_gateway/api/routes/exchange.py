"""Upstream-token-for-gateway-token exchange.

- POST /graph-token-exchange - Trade a Microsoft Graph bearer for a
  long-lived gateway token

The caller is unauthenticated; the upstream token is its only credential.
Stages and their failures:

    quick_validate   -> 401 INVALID_TOKEN
    GET /me check    -> 401 TOKEN_VERIFICATION_FAILED
    email + user id  -> 401 INVALID_USER_INFO
    anything else    -> 500 EXCHANGE_FAILED

Nothing is stored unless every stage passes.

Routes mounted at: /auth and /api/auth
"""

from __future__ import annotations

__all__ = ["router"]

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from ms365_gateway.api.deps import ProviderDep, TokenServiceDep, ValidatorDep
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.rate_limit import auth_rate_limit
from ms365_gateway.api.schemas import ExchangeRequest, ExchangeResponse, ExchangeUser
from ms365_gateway.api.utils import run_auth_flow
from ms365_gateway.constants import APP_NAME, EXCHANGE_TOKEN_SOURCE
from ms365_gateway.security.auth.gateway_tokens import LifetimeClass
from ms365_gateway.security.auth.token_records import TokenRecord, TokenSource, synthetic_device_id
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id, redact_token

router = APIRouter(dependencies=[Depends(auth_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.auth")


@router.post("/graph-token-exchange", response_model=ExchangeResponse)
async def graph_token_exchange(
    request: Request,
    body: ExchangeRequest,
    validator: ValidatorDep,
    provider: ProviderDep,
    tokens: TokenServiceDep,
) -> ExchangeResponse:
    """Exchange a Graph access token for a 24-hour gateway token."""
    token = body.graph_access_token

    quick = validator.quick_validate(token)
    if not quick.valid:
        _logger.info(
            {
                "event": "exchange_rejected",
                "message": quick.message,
                "stage": "quick_validate",
                "token": redact_token(token),
            }
        )
        raise APIError(
            status_code=401,
            code=ErrorCode.INVALID_TOKEN,
            message=quick.message or "Invalid token",
            details={"reason": quick.error_code.value if quick.error_code else None},
        )

    async def exchange() -> ExchangeResponse:
        full = await validator.full_validate(token)
        if not full.valid or full.metadata is None or full.token is None:
            raise APIError(
                status_code=401,
                code=ErrorCode.TOKEN_VERIFICATION_FAILED,
                message=full.message or "Token could not be verified with Microsoft Graph",
            )

        metadata = full.metadata
        if not metadata.email or not metadata.user_id:
            raise APIError(
                status_code=401,
                code=ErrorCode.INVALID_USER_INFO,
                message="Token does not identify a user (missing email or id)",
            )

        record = TokenRecord.from_upstream_metadata(full.token, metadata, TokenSource.EXCHANGE)
        uid = record.canonical_user_id
        email = record.metadata.user.email
        device_id = synthetic_device_id(email)
        await provider.write_record(record)

        issued = tokens.issue(
            device_id,
            uid,
            {
                "email": email,
                "name": metadata.name,
                "graphUserId": metadata.user_id,
                "source": EXCHANGE_TOKEN_SOURCE,
                "exchanged_at": datetime.now(timezone.utc).isoformat(),
            },
            LifetimeClass.LONG,
        )
        _logger.info(
            {
                "event": "token_exchanged",
                "message": "Exchanged Graph token for gateway token",
                "user": hash_sensitive_id(uid),
                "device_id": device_id,
                "scope_count": len(metadata.scopes),
            }
        )
        return ExchangeResponse(
            access_token=issued.token,
            expires_in=issued.expires_in,
            expires_at=issued.expires_at,
            user=ExchangeUser(id=metadata.user_id, email=email, name=metadata.name),
        )

    try:
        return await run_auth_flow(request, exchange())
    except APIError:
        raise
    except Exception as e:
        _logger.error(
            {
                "event": "exchange_failed",
                "message": f"Token exchange failed: {type(e).__name__}: {e}",
                "token": redact_token(token),
            },
            exc_info=e,
        )
        raise APIError(
            status_code=500,
            code=ErrorCode.EXCHANGE_FAILED,
            message="Token exchange failed",
        ) from e
