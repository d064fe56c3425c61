"""API route modules.

Route organization:
- auth: Interactive sign-in (PKCE), status, logout, gateway token issuance
- device: Device authorization grant (RFC 8628) and device refresh tokens
- exchange: Graph token for gateway token exchange
- external_token: Caller-supplied upstream tokens and source switching
- mcp: JSON-RPC transport (SSE sessions, message and simple endpoints)
- tools: Generated REST tool endpoints
- permissions: Scope-to-tool projection
- health: Liveness and public tool catalogue
- debug: Development-only diagnostics
"""

from . import (
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

__all__ = [
    "auth",
    "debug",
    "device",
    "exchange",
    "external_token",
    "health",
    "mcp",
    "permissions",
    "tools",
]
