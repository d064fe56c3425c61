"""Scope-to-tool projection for the caller.

- GET /permissions - {scopes, availableTools, scopeCount, toolCount}

Routes mounted at: /v1 and /api/v1
"""

from __future__ import annotations

__all__ = ["router"]

from fastapi import APIRouter, Depends

from ms365_gateway.api.deps import ProviderDep
from ms365_gateway.api.errors import APIError
from ms365_gateway.api.identity import IdentityDep, caller_scopes
from ms365_gateway.api.rate_limit import api_rate_limit
from ms365_gateway.api.schemas import PermissionsResponse
from ms365_gateway.exceptions import NoValidTokenError
from ms365_gateway.tools.scopes import available_tools

router = APIRouter(dependencies=[Depends(api_rate_limit)])


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(identity: IdentityDep, provider: ProviderDep) -> PermissionsResponse:
    """Tools unlocked by the scopes on the caller's upstream token.

    Scopes unknown to the gateway contribute nothing; a tool unlocked by
    several scopes is listed once.
    """
    try:
        scopes = await caller_scopes(identity, provider)
    except NoValidTokenError as e:
        raise APIError.from_gateway_error(e) from e

    tools = available_tools(scopes)
    return PermissionsResponse(
        scopes=scopes,
        availableTools=tools,
        scopeCount=len(scopes),
        toolCount=len(tools),
    )
