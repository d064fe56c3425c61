"""Debug API endpoints.

WARNING: These endpoints are for development only. The router is mounted
only when the deployment mode is "development".

- GET /debug/graph-token - The caller's current upstream bearer, in full

Routes mounted at: /v1 and /api/v1 (development mode only)
"""

from __future__ import annotations

__all__ = ["router"]

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ms365_gateway.api.deps import ProviderDep
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.identity import IdentityDep
from ms365_gateway.api.rate_limit import api_rate_limit
from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import AuthenticationError
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

router = APIRouter(dependencies=[Depends(api_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.api")


@router.get("/debug/graph-token")
async def debug_graph_token(identity: IdentityDep, provider: ProviderDep) -> dict[str, Any]:
    """Return the upstream bearer the dispatcher would use for this caller."""
    try:
        token = await provider.get_upstream_token(identity.canonical_user_id)
    except AuthenticationError as e:
        raise APIError.from_gateway_error(e) from e
    except Exception as e:
        _logger.error(
            {
                "event": "debug_graph_token_failed",
                "message": f"Debug graph token retrieval failed: {type(e).__name__}: {e}",
                "user": hash_sensitive_id(identity.canonical_user_id),
            },
            exc_info=e,
        )
        raise APIError(
            status_code=500,
            code=ErrorCode.DEBUG_GRAPH_TOKEN_FAILED,
            message="Failed to get access token",
        ) from e

    _logger.info(
        {
            "event": "debug_graph_token",
            "message": "Debug graph token retrieved",
            "user": hash_sensitive_id(identity.canonical_user_id),
            "token_length": len(token),
        }
    )
    return {"accessToken": token, "hasToken": bool(token), "tokenLength": len(token)}
