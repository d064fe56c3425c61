"""Application-wide constants for ms365-gateway.

Constants that define application behavior.
For user-configurable settings per deployment, see config.py.
"""

import os

__all__ = [
    # Application identity
    "APP_NAME",
    "IDENTITY_PROVIDER",
    # Protected directories
    "PROTECTED_CONFIG_DIR",
    # Upstream (Microsoft identity platform + Graph)
    "GRAPH_AUDIENCE",
    "GRAPH_BASE_URL",
    "AUTHORITY_HOST",
    "DEFAULT_TENANT_ID",
    "DEFAULT_REDIRECT_URI",
    "DEFAULT_SCOPES",
    "UPSTREAM_TIMEOUT_SECONDS",
    # Token lifecycle
    "EXPIRING_SOON_SECONDS",
    "TOKEN_REFRESH_BUFFER_SECONDS",
    "DEFAULT_UPSTREAM_EXPIRES_IN_SECONDS",
    "SHORT_LIVED_TOKEN_SECONDS",
    "LONG_LIVED_TOKEN_SECONDS",
    "DEVICE_REFRESH_TOKEN_DAYS",
    # Auth flows
    "AUTH_FLOW_BUDGET_SECONDS",
    "PKCE_VERIFIER_BYTES",
    "PKCE_STATE_TTL_SECONDS",
    "SESSION_COOKIE_NAME",
    "SESSION_TTL_SECONDS",
    "DEVICE_CODE_TTL_SECONDS",
    "DEVICE_POLL_INTERVAL_SECONDS",
    "DEVICE_SLOW_DOWN_INCREMENT_SECONDS",
    "MAX_DEVICE_REQUESTS",
    "DEVICE_ID_PREFIX",
    "EXCHANGE_TOKEN_SOURCE",
    "LAST_USER_SETTING",
    # Rate limiting
    "DEFAULT_RATE_LIMIT_WINDOW_SECONDS",
    "DEFAULT_RATE_LIMIT_MAX",
    "DEFAULT_RATE_LIMIT_AUTH_MAX",
    # JSON-RPC transport
    "MCP_PROTOCOL_VERSION",
    "MCP_SERVER_NAME",
    "SSE_KEEPALIVE_SECONDS",
    "SSE_PATH_SUFFIXES",
    # HTTP server
    "DEFAULT_PORT",
    "DEFAULT_HOST",
    "MAX_REQUEST_SIZE",
]

from platformdirs import user_config_dir

# ============================================================================
# Application Identity
# ============================================================================

# Application name used for directory names, keyring service names, loggers.
APP_NAME: str = "ms365-gateway"

# Provider prefix of every canonical user id ("ms365:<email>").
IDENTITY_PROVIDER: str = "ms365"

# ============================================================================
# Protected Directories
# ============================================================================

# Settings file, encrypted secret store fallback and saved config live here.
# realpath so symlinked home directories resolve to one location.
PROTECTED_CONFIG_DIR: str = os.path.realpath(user_config_dir(APP_NAME))


# ============================================================================
# Upstream (Microsoft identity platform + Graph)
# ============================================================================

# The only audience accepted on upstream bearer tokens.
GRAPH_AUDIENCE: str = "https://graph.microsoft.com"

GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"

AUTHORITY_HOST: str = "https://login.microsoftonline.com"

DEFAULT_TENANT_ID: str = "common"

DEFAULT_REDIRECT_URI: str = "http://localhost:3000/api/auth/callback"

DEFAULT_SCOPES: tuple[str, ...] = (
    "User.Read",
    "openid",
    "profile",
    "email",
    "offline_access",
    "Calendars.ReadWrite",
    "Mail.ReadWrite",
    "Mail.Send",
    "Files.ReadWrite",
    "People.Read",
    "Tasks.ReadWrite",
    "Contacts.ReadWrite",
)

# Per-request timeout for every outbound upstream call
# (code exchange, refresh, /me check, forwarded tool calls).
UPSTREAM_TIMEOUT_SECONDS: float = 10.0

# ============================================================================
# Token Lifecycle
# ============================================================================

# Metadata flags tokens with less than this remaining as expiring soon.
EXPIRING_SOON_SECONDS: int = 600

# Provider refreshes proactively when this close to expiry.
TOKEN_REFRESH_BUFFER_SECONDS: int = 300

# Used when a token endpoint response omits expires_in.
DEFAULT_UPSTREAM_EXPIRES_IN_SECONDS: int = 3600

SHORT_LIVED_TOKEN_SECONDS: int = 3600
LONG_LIVED_TOKEN_SECONDS: int = 86400


# Opaque refresh tokens handed to device-grant clients.
DEVICE_REFRESH_TOKEN_DAYS: int = 30

# ============================================================================
# Auth Flows
# ============================================================================

# Hard budget from receipt to response for every auth flow.
AUTH_FLOW_BUDGET_SECONDS: float = 30.0

PKCE_VERIFIER_BYTES: int = 32

# Verifiers not claimed by a callback within this window are discarded.
PKCE_STATE_TTL_SECONDS: int = 600

SESSION_COOKIE_NAME: str = "ms365_session"
SESSION_TTL_SECONDS: int = 8 * 3600

DEVICE_CODE_TTL_SECONDS: int = 900
DEVICE_POLL_INTERVAL_SECONDS: int = 5

# RFC 8628 section 3.5: add 5 seconds on slow_down.
DEVICE_SLOW_DOWN_INCREMENT_SECONDS: int = 5

# Cap on concurrent pending device authorizations.
MAX_DEVICE_REQUESTS: int = 100

# Deterministic device ids for exchange-derived sessions.
DEVICE_ID_PREFIX: str = "synthetic-employee-"

# Metadata source tag on gateway tokens minted by the exchange flow.
EXCHANGE_TOKEN_SOURCE: str = "graph-token-exchange"

# Non-secret setting describing the most recent interactive sign-in.
LAST_USER_SETTING: str = "ms-user-info"

# ============================================================================
# Rate Limiting
# ============================================================================

DEFAULT_RATE_LIMIT_WINDOW_SECONDS: int = 900
DEFAULT_RATE_LIMIT_MAX: int = 100
DEFAULT_RATE_LIMIT_AUTH_MAX: int = 20

# ============================================================================
# JSON-RPC Transport
# ============================================================================

MCP_PROTOCOL_VERSION: str = "2024-11-05"
MCP_SERVER_NAME: str = APP_NAME

SSE_KEEPALIVE_SECONDS: float = 30.0

# Streaming endpoints, matched via path.endswith(). Only these accept ?token=.
SSE_PATH_SUFFIXES: tuple[str, ...] = ("/sse",)

# ============================================================================
# HTTP Server
# ============================================================================

DEFAULT_PORT: int = 3000
DEFAULT_HOST: str = "127.0.0.1"

# 1MB request body cap; file content uploads are base64 inside JSON.
MAX_REQUEST_SIZE: int = 1024 * 1024
