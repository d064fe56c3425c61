"""Unauthenticated health and discovery endpoints.

- GET /health - Liveness plus the active secret-store backend
- GET /tools - Public tool catalogue

Routes mounted at: / (root)
"""

from __future__ import annotations

__all__ = ["router"]

from fastapi import APIRouter

from ms365_gateway import __version__
from ms365_gateway.api.deps import DispatcherDep, StoreDep
from ms365_gateway.api.schemas import HealthResponse, ToolsResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(store: StoreDep) -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, storage=store.describe())


@router.get("/tools", response_model=ToolsResponse)
async def list_tools(dispatcher: DispatcherDep) -> ToolsResponse:
    """Every tool the gateway can dispatch, with parameters and REST route."""
    return ToolsResponse(tools=[tool.to_public_dict() for tool in dispatcher.list_tools()])
