"""Authentication infrastructure.

This module provides:
- Upstream token validation (structural decode plus /me check)
- Gateway token issuance and verification
- Per-user upstream token records and the provider that owns them
- Authorization-code + PKCE and device-grant primitives
- Server-side browser sessions

These are primitives; the HTTP flows that combine them live in api/routes/.
"""

from ms365_gateway.security.auth.device_grant import (
    DeviceAuthorizationService,
    DeviceAuthRequest,
    DeviceTokenGrant,
    PollResult,
    PollStatus,
)
from ms365_gateway.security.auth.gateway_tokens import (
    GatewayClaims,
    GatewayTokenError,
    GatewayTokenService,
    IssuedToken,
    LifetimeClass,
)
from ms365_gateway.security.auth.pkce import (
    PkceState,
    PkceStateStore,
    create_pkce_challenge,
)
from ms365_gateway.security.auth.sessions import (
    BrowserSession,
    BrowserSessionStore,
    SessionUser,
)
from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider
from ms365_gateway.security.auth.token_records import (
    TokenRecord,
    TokenRecordMetadata,
    TokenSource,
    TokenUser,
    canonical_user_id_for,
    synthetic_device_id,
)
from ms365_gateway.security.auth.upstream_oauth import (
    TokenRefreshError,
    TokenRefreshExpiredError,
    UpstreamAuthority,
    UpstreamTokenResponse,
)
from ms365_gateway.security.auth.upstream_validator import (
    TokenMetadata,
    UpstreamTokenErrorCode,
    UpstreamTokenValidator,
    ValidationResult,
    quick_validate,
)

__all__ = [
    "BrowserSession",
    "BrowserSessionStore",
    "DeviceAuthRequest",
    "DeviceAuthorizationService",
    "DeviceTokenGrant",
    "GatewayClaims",
    "GatewayTokenError",
    "GatewayTokenService",
    "IssuedToken",
    "LifetimeClass",
    "PkceState",
    "PkceStateStore",
    "PollResult",
    "PollStatus",
    "SessionUser",
    "TokenMetadata",
    "TokenRecord",
    "TokenRecordMetadata",
    "TokenRefreshError",
    "TokenRefreshExpiredError",
    "TokenSource",
    "TokenUser",
    "UpstreamAuthority",
    "UpstreamTokenErrorCode",
    "UpstreamTokenProvider",
    "UpstreamTokenResponse",
    "UpstreamTokenValidator",
    "ValidationResult",
    "canonical_user_id_for",
    "create_pkce_challenge",
    "quick_validate",
    "synthetic_device_id",
]
