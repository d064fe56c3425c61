"""Shared dependencies for API routes.

FastAPI convention: deps.py contains reusable request dependencies.
Every component is built once by the composition root (api/server.py) and
stored on app.state; routes receive them through the Annotated aliases:

    from ms365_gateway.api.deps import ConfigDep, ProviderDep

    @router.get("/status")
    async def status(config: ConfigDep, provider: ProviderDep) -> dict:
        ...
"""

from __future__ import annotations

__all__ = [
    # Dependency functions
    "get_authority",
    "get_config",
    "get_device_service",
    "get_dispatcher",
    "get_pkce_store",
    "get_provider",
    "get_rate_limiter",
    "get_sessions",
    "get_sse_registry",
    "get_store",
    "get_token_service",
    "get_validator",
    # Type aliases for Annotated pattern
    "AuthorityDep",
    "ConfigDep",
    "DeviceServiceDep",
    "DispatcherDep",
    "PkceStoreDep",
    "ProviderDep",
    "RateLimiterDep",
    "SessionsDep",
    "SseRegistryDep",
    "StoreDep",
    "TokenServiceDep",
    "ValidatorDep",
]

from typing import TYPE_CHECKING, Annotated, Any, Callable

from fastapi import Depends, Request

from ms365_gateway.api.errors import APIError, ErrorCode

if TYPE_CHECKING:
    from ms365_gateway.api.mcp.sessions import SseSessionRegistry
    from ms365_gateway.config import AppConfig
    from ms365_gateway.security.auth.device_grant import DeviceAuthorizationService
    from ms365_gateway.security.auth.gateway_tokens import GatewayTokenService
    from ms365_gateway.security.auth.pkce import PkceStateStore
    from ms365_gateway.security.auth.sessions import BrowserSessionStore
    from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider
    from ms365_gateway.security.auth.upstream_oauth import UpstreamAuthority
    from ms365_gateway.security.auth.upstream_validator import UpstreamTokenValidator
    from ms365_gateway.security.rate_limiter import SlidingWindowRateLimiter
    from ms365_gateway.security.secret_store import SecretStore
    from ms365_gateway.tools.dispatcher import ToolDispatcher


# =============================================================================
# Factory for State Getters
# =============================================================================


def _create_state_getter(
    attr_name: str,
    type_hint: str,
    error_detail: str,
) -> Callable[[Request], Any]:
    """Create a dependency function that retrieves a value from app.state.

    Args:
        attr_name: Attribute name on app.state (e.g., "config", "provider").
        type_hint: Type name used in the generated docstring.
        error_detail: Message for the 503 raised when the value is missing.

    Returns:
        A dependency function compatible with FastAPI's Depends().
    """

    def getter(request: Request) -> Any:
        value = getattr(request.app.state, attr_name, None)
        if value is None:
            raise APIError(status_code=503, code=ErrorCode.SERVICE_UNAVAILABLE, message=error_detail)
        return value

    getter.__name__ = f"get_{attr_name}"
    getter.__doc__ = f"Get {type_hint} from app.state.\n\nRaises APIError 503 if not available."
    return getter


# =============================================================================
# Dependency Functions (generated via factory)
# =============================================================================

get_config: Callable[[Request], "AppConfig"] = _create_state_getter(
    "config", "AppConfig", "Configuration not available. Server may still be starting."
)

get_store: Callable[[Request], "SecretStore"] = _create_state_getter(
    "store", "SecretStore", "Secret store not available. Server may still be starting."
)

get_provider: Callable[[Request], "UpstreamTokenProvider"] = _create_state_getter(
    "provider", "UpstreamTokenProvider", "Token provider not available. Server may still be starting."
)

get_token_service: Callable[[Request], "GatewayTokenService"] = _create_state_getter(
    "token_service", "GatewayTokenService", "Gateway token service not available."
)

get_validator: Callable[[Request], "UpstreamTokenValidator"] = _create_state_getter(
    "validator", "UpstreamTokenValidator", "Token validator not available. Server may still be starting."
)

get_authority: Callable[[Request], "UpstreamAuthority"] = _create_state_getter(
    "authority", "UpstreamAuthority", "Upstream authority not available. Server may still be starting."
)

get_sessions: Callable[[Request], "BrowserSessionStore"] = _create_state_getter(
    "sessions", "BrowserSessionStore", "Session store not available."
)

get_pkce_store: Callable[[Request], "PkceStateStore"] = _create_state_getter(
    "pkce_store", "PkceStateStore", "PKCE state store not available."
)

get_device_service: Callable[[Request], "DeviceAuthorizationService"] = _create_state_getter(
    "device_service", "DeviceAuthorizationService", "Device authorization not available."
)

get_dispatcher: Callable[[Request], "ToolDispatcher"] = _create_state_getter(
    "dispatcher", "ToolDispatcher", "Tool dispatcher not available. Server may still be starting."
)

get_sse_registry: Callable[[Request], "SseSessionRegistry"] = _create_state_getter(
    "sse_registry", "SseSessionRegistry", "SSE session registry not available."
)

get_rate_limiter: Callable[[Request], "SlidingWindowRateLimiter"] = _create_state_getter(
    "rate_limiter", "SlidingWindowRateLimiter", "Rate limiter not available."
)


# =============================================================================
# Type Aliases for Annotated Pattern
# =============================================================================

ConfigDep = Annotated["AppConfig", Depends(get_config)]
StoreDep = Annotated["SecretStore", Depends(get_store)]
ProviderDep = Annotated["UpstreamTokenProvider", Depends(get_provider)]
TokenServiceDep = Annotated["GatewayTokenService", Depends(get_token_service)]
ValidatorDep = Annotated["UpstreamTokenValidator", Depends(get_validator)]
AuthorityDep = Annotated["UpstreamAuthority", Depends(get_authority)]
SessionsDep = Annotated["BrowserSessionStore", Depends(get_sessions)]
PkceStoreDep = Annotated["PkceStateStore", Depends(get_pkce_store)]
DeviceServiceDep = Annotated["DeviceAuthorizationService", Depends(get_device_service)]
DispatcherDep = Annotated["ToolDispatcher", Depends(get_dispatcher)]
SseRegistryDep = Annotated["SseSessionRegistry", Depends(get_sse_registry)]
RateLimiterDep = Annotated["SlidingWindowRateLimiter", Depends(get_rate_limiter)]
