"""JSON-RPC (MCP-style) transport: message handling and SSE sessions."""

from ms365_gateway.api.mcp.protocol import JsonRpcHandler
from ms365_gateway.api.mcp.sessions import SseSession, SseSessionRegistry

__all__ = [
    "JsonRpcHandler",
    "SseSession",
    "SseSessionRegistry",
]
