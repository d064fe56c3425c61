"""JSON-RPC 2.0 message handling for the MCP-style transport.

Supported methods:
- initialize: protocol version, server info, capabilities
- initialized / notifications/initialized: acknowledgement
- any other message without "id": accepted without a reply
- tools/list: tools unlocked by the caller's upstream token scopes
- tools/call: dispatch through the ToolDispatcher
- ping

Error codes:
    -32700 parse error (raised by the route, before this module)
    -32600 invalid request envelope
    -32601 unknown method
    -32602 invalid params (including unknown tools and rejected arguments)
    -32603 internal error
    -32001 no usable upstream token for the caller

Tool failures other than those above are reported in-result:
{"content": [{"type": "text", "text": "Error: ..."}], "isError": true}.
"""

from __future__ import annotations

__all__ = [
    "AUTH_REQUIRED",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "JsonRpcHandler",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "error_response",
]

import logging
from typing import TYPE_CHECKING, Any

from ms365_gateway import __version__
from ms365_gateway.api.identity import caller_scopes
from ms365_gateway.constants import APP_NAME, MCP_PROTOCOL_VERSION, MCP_SERVER_NAME
from ms365_gateway.exceptions import (
    GatewayError,
    InvalidRequestError,
    NoValidTokenError,
    ReauthRequiredError,
    ToolMethodNotFoundError,
    UnknownToolError,
)
from ms365_gateway.tools.dispatcher import build_input_schema
from ms365_gateway.tools.registry import ToolContext
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.api.identity import RequestIdentity
    from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider
    from ms365_gateway.tools.dispatcher import ToolDispatcher

_logger = logging.getLogger(f"{APP_NAME}.mcp")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
AUTH_REQUIRED = -32001

_NOTIFICATIONS = frozenset({"initialized", "notifications/initialized"})


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def _result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


class _RpcError(Exception):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class JsonRpcHandler:
    """Turns one JSON-RPC request into one response.

    Args:
        dispatcher: Shared tool dispatcher.
        provider: Upstream token provider (for tools/list scopes).
    """

    def __init__(self, dispatcher: "ToolDispatcher", provider: "UpstreamTokenProvider") -> None:
        self._dispatcher = dispatcher
        self._provider = provider

    async def handle(
        self,
        message: Any,
        identity: "RequestIdentity",
        *,
        session_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Handle one decoded message.

        Returns:
            The response object, or None for a notification (no "id").
        """
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request: expected a JSON object")

        request_id = message.get("id")
        method = message.get("method")
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: must be JSON-RPC 2.0")

        if "id" not in message:
            # Notifications never get a reply, including for unknown methods
            if method not in _NOTIFICATIONS:
                _logger.debug(
                    {
                        "event": "jsonrpc_notification_ignored",
                        "message": f"Ignoring notification {method}",
                        "method": method,
                        "session_id": session_id,
                    }
                )
            return None

        params = message.get("params")
        if params is not None and not isinstance(params, dict):
            return error_response(request_id, INVALID_PARAMS, "Invalid params: expected an object")

        _logger.debug(
            {
                "event": "jsonrpc_request",
                "message": f"Handling {method}",
                "method": method,
                "session_id": session_id,
            }
        )

        try:
            result = await self._dispatch(method, params or {}, identity, session_id)
        except _RpcError as e:
            return error_response(request_id, e.code, e.message, e.data)
        except Exception as e:
            _logger.error(
                {
                    "event": "jsonrpc_internal_error",
                    "message": f"{method} failed: {type(e).__name__}: {e}",
                    "method": method,
                    "session_id": session_id,
                },
                exc_info=e,
            )
            return error_response(request_id, INTERNAL_ERROR, f"Internal error: {e}")

        return _result(request_id, result)

    async def _dispatch(
        self,
        method: str,
        params: dict[str, Any],
        identity: "RequestIdentity",
        session_id: str | None,
    ) -> dict[str, Any]:
        if method == "initialize":
            return {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": MCP_SERVER_NAME, "version": __version__},
            }
        if method in _NOTIFICATIONS or method == "ping":
            return {}
        if method == "tools/list":
            return await self._tools_list(identity)
        if method == "tools/call":
            return await self._tools_call(params, identity, session_id)
        raise _RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _tools_list(self, identity: "RequestIdentity") -> dict[str, Any]:
        try:
            scopes = await caller_scopes(identity, self._provider)
        except NoValidTokenError as e:
            raise _RpcError(AUTH_REQUIRED, e.message, {"code": e.code}) from e

        return {
            "tools": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "inputSchema": build_input_schema(tool),
                }
                for tool in self._dispatcher.list_tools(scopes)
            ]
        }

    async def _tools_call(
        self,
        params: dict[str, Any],
        identity: "RequestIdentity",
        session_id: str | None,
    ) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments")
        if not isinstance(name, str) or not name:
            raise _RpcError(INVALID_PARAMS, "Invalid params: tool name is required")
        if arguments is not None and not isinstance(arguments, dict):
            raise _RpcError(INVALID_PARAMS, "Invalid params: arguments must be an object")

        context = ToolContext(
            canonical_user_id=identity.canonical_user_id,
            device_id=identity.device_id,
            source=identity.source.value,
            transport="jsonrpc",
            request_id=session_id,
        )
        try:
            result = await self._dispatcher.call(name, arguments, context)
        except (UnknownToolError, ToolMethodNotFoundError, InvalidRequestError) as e:
            raise _RpcError(INVALID_PARAMS, e.message, {"code": e.code, "details": e.details}) from e
        except (NoValidTokenError, ReauthRequiredError) as e:
            raise _RpcError(AUTH_REQUIRED, e.message, {"code": e.code}) from e
        except GatewayError as e:
            return self._tool_error(name, identity, e.message, e.code)
        except Exception as e:
            return self._tool_error(name, identity, str(e) or type(e).__name__, None)

        return {"content": [{"type": "text", "text": result.text}], "isError": False}

    def _tool_error(self, name: str, identity: "RequestIdentity", message: str, code: str | None) -> dict[str, Any]:
        _logger.warning(
            {
                "event": "jsonrpc_tool_failed",
                "message": f"{name} failed: {message}",
                "tool": name,
                "error_code": code,
                "user": hash_sensitive_id(identity.canonical_user_id),
            }
        )
        return {"content": [{"type": "text", "text": f"Error: {message}"}], "isError": True}
