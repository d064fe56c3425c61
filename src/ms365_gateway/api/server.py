"""FastAPI application for the gateway.

Composition root: every long-lived component (secret store, upstream HTTP
client, token provider, session stores, dispatcher) is built once here and
placed on app.state, where api/deps.py hands it to routes.

Surfaces:
- Auth flows (/auth, /api/auth) - sign-in, device grant, exchange, external tokens
- JSON-RPC transport (/mcp, /api/mcp)
- REST tools and permissions (/v1, /api/v1)
- Health and tool catalogue (/health, /tools)
- Debug (/v1/debug, /api/v1/debug) - development mode only

Security:
- SecurityMiddleware (outermost): size cap, query-token rule, CORS preflight
  denial, security headers
- CORSMiddleware: CORS headers for allowlisted origins
- Per-route rate limit dependencies

Usage:
    uvicorn ms365_gateway.api.server:create_app --factory --port 3000
"""

from __future__ import annotations

__all__ = ["create_app"]

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ms365_gateway import __version__
from ms365_gateway.config import AppConfig, load_config
from ms365_gateway.constants import UPSTREAM_TIMEOUT_SECONDS
from ms365_gateway.security.auth.device_grant import DeviceAuthorizationService
from ms365_gateway.security.auth.gateway_tokens import GatewayTokenService
from ms365_gateway.security.auth.pkce import PkceStateStore
from ms365_gateway.security.auth.sessions import BrowserSessionStore
from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider
from ms365_gateway.security.auth.upstream_oauth import UpstreamAuthority
from ms365_gateway.security.auth.upstream_validator import UpstreamTokenValidator
from ms365_gateway.security.rate_limiter import create_rate_limiter
from ms365_gateway.security.secret_store import SecretStore, create_secret_store
from ms365_gateway.telemetry.system.system_logger import (
    configure_system_logger_file,
    get_system_logger,
    set_console_level,
)
from ms365_gateway.tools.dispatcher import ToolDispatcher
from ms365_gateway.tools.modules import GraphClient, build_default_modules
from ms365_gateway.tools.registry import ModuleRegistry

from .errors import register_exception_handlers
from .mcp.sessions import SseSessionRegistry
from .routes import (
    auth,
    debug,
    device,
    exchange,
    external_token,
    health,
    mcp,
    permissions,
    tools,
)
from .security import SecurityMiddleware, build_cors_options

logger = get_system_logger()


def _configure_logging(config: AppConfig) -> None:
    set_console_level("DEBUG" if config.is_development else config.logging.log_level)
    log_path = config.logging.system_log_path
    if log_path is not None:
        configure_system_logger_file(log_path)


def create_app(
    config: AppConfig | None = None,
    *,
    store: SecretStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    registry: ModuleRegistry | None = None,
) -> FastAPI:
    """Create the FastAPI application with all routes.

    Args:
        config: Application configuration. Environment plus saved file if None.
        store: Secret store. Built from config.storage if None.
        http_client: Shared upstream client. The app creates and closes its
            own if None; a client passed in is left open on shutdown.
        registry: Tool module registry. Graph-backed modules if None.

    Returns:
        Configured FastAPI application.

    Raises:
        ConfigurationError: Invalid environment configuration.
        StorageError: The configured secret store cannot be opened.
    """
    if config is None:
        config = load_config()
    _configure_logging(config)

    if store is None:
        store = create_secret_store(config.storage)
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT_SECONDS)

    authority = UpstreamAuthority(config.upstream, http_client)
    token_service = GatewayTokenService(config.gateway_tokens)
    provider = UpstreamTokenProvider(store, authority)
    if registry is None:
        graph = GraphClient(http_client, config.upstream.graph_base_url)
        registry = ModuleRegistry(build_default_modules(graph))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            {
                "event": "server_started",
                "message": f"ms365-gateway {__version__} listening on {config.server.base_url}",
                "mode": config.mode,
                "storage": store.describe(),
                "interactive_login": authority.is_configured,
            }
        )
        try:
            yield
        finally:
            if owns_http_client:
                await http_client.aclose()
            logger.info({"event": "server_stopped", "message": "ms365-gateway stopped"})

    app = FastAPI(
        title="ms365-gateway",
        description="Authenticating gateway in front of Microsoft Graph",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # Components shared by every request (see api/deps.py)
    app.state.config = config
    app.state.store = store
    app.state.http_client = http_client
    app.state.authority = authority
    app.state.token_service = token_service
    app.state.provider = provider
    app.state.validator = UpstreamTokenValidator(http_client, config.upstream.graph_base_url)
    app.state.sessions = BrowserSessionStore()
    app.state.pkce_store = PkceStateStore()
    app.state.device_service = DeviceAuthorizationService(
        store,
        token_service,
        verification_uri=f"{config.server.base_url}/api/auth/login",
    )
    app.state.dispatcher = ToolDispatcher(registry, provider)
    app.state.sse_registry = SseSessionRegistry()
    app.state.rate_limiter = create_rate_limiter(config.rate_limit)

    # CORS first so that SecurityMiddleware wraps it and sees preflights first
    if config.allow_all_origins:
        logger.warning(
            {
                "event": "cors_allow_all",
                "message": "CORS allows all origins in development. "
                "Set CORS_ALLOWED_ORIGINS for production.",
            }
        )
    app.add_middleware(CORSMiddleware, **build_cors_options(config))
    app.add_middleware(
        SecurityMiddleware,
        allowed_origins=config.cors.allowed_origins,
        allow_all_origins=config.allow_all_origins,
    )

    register_exception_handlers(app)

    for prefix in ("/auth", "/api/auth"):
        app.include_router(auth.router, prefix=prefix, tags=["auth"])
        app.include_router(device.router, prefix=prefix, tags=["device"])
        app.include_router(exchange.router, prefix=prefix, tags=["exchange"])
        app.include_router(external_token.router, prefix=prefix, tags=["external-token"])
    for prefix in ("/mcp", "/api/mcp"):
        app.include_router(mcp.router, prefix=prefix, tags=["mcp"])
    for prefix in ("/v1", "/api/v1"):
        app.include_router(permissions.router, prefix=prefix, tags=["permissions"])
        if config.is_development:
            app.include_router(debug.router, prefix=prefix, tags=["debug"])
        app.include_router(tools.router, prefix=prefix, tags=["tools"])
    app.include_router(health.router, tags=["health"])

    return app
