"""Authentication API schemas."""

from __future__ import annotations

__all__ = [
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
]

from typing import Any, Literal

from pydantic import BaseModel, Field


# =============================================================================
# Status / logout
# =============================================================================


class AuthStatusResponse(BaseModel):
    """Authentication status response."""

    authenticated: bool
    user: dict[str, Any] | None = None
    token_source: str | None = None
    message: str
    logoutUrl: str | None = None
    loginUrl: str | None = None


class LogoutResponse(BaseModel):
    """Logout response."""

    success: bool
    message: str


class GatewayTokenResponse(BaseModel):
    """A gateway token minted for the caller."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: str
    user: dict[str, Any] | None = None


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 protected resource metadata (RFC 9728)."""

    resource: str
    authorization_servers: list[str]
    bearer_methods_supported: list[str]
    scopes_supported: list[str]
    resource_documentation: str


# =============================================================================
# Device authorization grant
# =============================================================================


class DeviceRegisterRequest(BaseModel):
    client_name: str | None = Field(default=None, max_length=200)


class DeviceRegisterResponse(BaseModel):
    """RFC 8628 device authorization response."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


class DeviceAuthorizeRequest(BaseModel):
    user_code: str = Field(min_length=1)
    action: Literal["approve", "deny"] = "approve"


class DeviceAuthorizeResponse(BaseModel):
    success: bool
    status: str
    device_id: str


class DeviceTokenRequest(BaseModel):
    device_code: str = Field(min_length=1)
    grant_type: str | None = None


class DeviceRefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class DeviceTokenResponse(BaseModel):
    """Successful device token (or refresh) response."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    device_id: str


# =============================================================================
# External upstream tokens
# =============================================================================


class ExternalTokenRequest(BaseModel):
    access_token: str = Field(min_length=1)


class SwitchSourceRequest(BaseModel):
    """Requested active source. "oauth" is accepted for "interactive"."""

    source: Literal["oauth", "interactive", "device", "external", "exchange"]


class ExternalTokenResponse(BaseModel):
    success: bool
    metadata: dict[str, Any]


class ExternalTokenLoginResponse(BaseModel):
    success: bool
    authenticated: bool
    user: dict[str, Any]
    metadata: dict[str, Any]


class ExternalTokenStatusResponse(BaseModel):
    has_external_token: bool
    is_active: bool
    token_source: str | None = None
    metadata: dict[str, Any] | None = None
    expired_reason: str | None = None


class ExternalTokenClearResponse(BaseModel):
    success: bool
    message: str
    active_source: str | None = None


class SwitchSourceResponse(BaseModel):
    success: bool
    active_source: str


# =============================================================================
# Upstream-token-for-gateway-token exchange
# =============================================================================


class ExchangeRequest(BaseModel):
    graph_access_token: str = Field(min_length=1)


class ExchangeUser(BaseModel):
    id: str
    email: str
    name: str | None = None


class ExchangeResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: str
    user: ExchangeUser
