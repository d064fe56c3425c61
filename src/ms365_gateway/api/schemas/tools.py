"""Tool catalogue, permissions and health schemas."""

from __future__ import annotations

__all__ = [
    "HealthResponse",
    "McpInfoResponse",
    "PermissionsResponse",
    "ToolsResponse",
]

from typing import Any

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    storage: dict[str, str]


class ToolsResponse(BaseModel):
    """Public tool catalogue."""

    tools: list[dict[str, Any]]


class PermissionsResponse(BaseModel):
    """Tools unlocked by the caller's upstream token scopes."""

    scopes: list[str]
    availableTools: list[str]
    scopeCount: int
    toolCount: int


class McpInfoResponse(BaseModel):
    name: str
    version: str
    protocolVersion: str
    capabilities: dict[str, Any]
    endpoints: dict[str, str]
