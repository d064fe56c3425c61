"""API schemas (Pydantic models) for request/response validation.

Centralized schemas for all API routes.
"""

from __future__ import annotations

# Auth schemas
from ms365_gateway.api.schemas.auth import (
    AuthStatusResponse,
    DeviceAuthorizeRequest,
    DeviceAuthorizeResponse,
    DeviceRefreshRequest,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceTokenRequest,
    DeviceTokenResponse,
    ExchangeRequest,
    ExchangeResponse,
    ExchangeUser,
    ExternalTokenClearResponse,
    ExternalTokenLoginResponse,
    ExternalTokenRequest,
    ExternalTokenResponse,
    ExternalTokenStatusResponse,
    GatewayTokenResponse,
    LogoutResponse,
    ProtectedResourceMetadata,
    SwitchSourceRequest,
    SwitchSourceResponse,
)

# Tool schemas
from ms365_gateway.api.schemas.tools import (
    HealthResponse,
    McpInfoResponse,
    PermissionsResponse,
    ToolsResponse,
)

__all__ = [
    # Auth
    "AuthStatusResponse",
    "DeviceAuthorizeRequest",
    "DeviceAuthorizeResponse",
    "DeviceRefreshRequest",
    "DeviceRegisterRequest",
    "DeviceRegisterResponse",
    "DeviceTokenRequest",
    "DeviceTokenResponse",
    "ExchangeRequest",
    "ExchangeResponse",
    "ExchangeUser",
    "ExternalTokenClearResponse",
    "ExternalTokenLoginResponse",
    "ExternalTokenRequest",
    "ExternalTokenResponse",
    "ExternalTokenStatusResponse",
    "GatewayTokenResponse",
    "LogoutResponse",
    "ProtectedResourceMetadata",
    "SwitchSourceRequest",
    "SwitchSourceResponse",
    # Tools
    "HealthResponse",
    "McpInfoResponse",
    "PermissionsResponse",
    "ToolsResponse",
]
