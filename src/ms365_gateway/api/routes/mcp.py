"""JSON-RPC transport endpoints.

- GET /sse - Event stream; first event names the message endpoint
- POST /sse, POST /message?sessionId=... - JSON-RPC request; the response is
  returned over HTTP and, when the session is open, also pushed to its stream
- POST "" - Plain request/response JSON-RPC without a stream
- GET /info - Transport description (unauthenticated)

Stream format:
    event: endpoint
    data: <base>/api/mcp/message?sessionId=mcp-...

    event: message
    data: {"jsonrpc": "2.0", ...}

Routes mounted at: /mcp and /api/mcp
"""

from __future__ import annotations

__all__ = ["router"]

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from ms365_gateway import __version__
from ms365_gateway.api.deps import ConfigDep, DispatcherDep, ProviderDep, SseRegistryDep
from ms365_gateway.api.identity import IdentityDep, RequestIdentity
from ms365_gateway.api.mcp.protocol import PARSE_ERROR, JsonRpcHandler, error_response
from ms365_gateway.api.mcp.sessions import SseSessionRegistry
from ms365_gateway.api.rate_limit import api_rate_limit
from ms365_gateway.api.schemas import McpInfoResponse
from ms365_gateway.api.utils import run_request_bound
from ms365_gateway.api.utils.cancellation import ClientDisconnected
from ms365_gateway.constants import APP_NAME, MCP_PROTOCOL_VERSION, MCP_SERVER_NAME
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

router = APIRouter(dependencies=[Depends(api_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.mcp")

CLIENT_CLOSED_REQUEST = 499


def _mount_prefix(request: Request, suffix: str) -> str:
    """Path prefix this router was reached under (/mcp or /api/mcp)."""
    path = request.url.path
    return path[: -len(suffix)] if path.endswith(suffix) else path


# =============================================================================
# Event stream
# =============================================================================


@router.get("/sse", response_model=None)
async def open_stream(
    request: Request,
    identity: IdentityDep,
    config: ConfigDep,
    registry: SseRegistryDep,
) -> EventSourceResponse:
    """Open an SSE session.

    Streams the endpoint event, then every JSON-RPC response posted for this
    session, with a keepalive comment after each idle interval.
    """
    session = registry.open(identity)
    endpoint = (
        f"{config.server.base_url}{_mount_prefix(request, '/sse')}/message?sessionId={session.session_id}"
    )
    keepalive = config.server.sse_keepalive_seconds

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        try:
            yield {"event": "endpoint", "data": endpoint}
            while True:
                try:
                    message = await asyncio.wait_for(session.queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield {"comment": "keepalive"}
                    continue
                yield {"event": "message", "data": json.dumps(message)}
        finally:
            registry.close(session.session_id)

    return EventSourceResponse(event_generator())


# =============================================================================
# Message endpoints
# =============================================================================


_UNPARSEABLE = object()


async def _read_message(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw)
    except ValueError:
        return _UNPARSEABLE


def _session_id(request: Request, message: Any) -> str | None:
    session_id = request.query_params.get("sessionId")
    if session_id:
        return session_id
    if not isinstance(message, dict):
        return None
    value = message.get("sessionId")
    return value if isinstance(value, str) else None


async def _handle(
    request: Request,
    identity: RequestIdentity,
    handler: JsonRpcHandler,
    registry: SseSessionRegistry | None,
) -> Response:
    message = await _read_message(request)
    if message is _UNPARSEABLE:
        return JSONResponse(
            status_code=400,
            content=error_response(None, PARSE_ERROR, "Parse error: body is not valid JSON"),
        )

    session_id = _session_id(request, message) if registry is not None else None
    try:
        response = await run_request_bound(request, handler.handle(message, identity, session_id=session_id))
    except ClientDisconnected:
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if response is None:
        return Response(status_code=202)

    if registry is not None and session_id:
        session = registry.get(session_id)
        # Sessions only receive responses to their own caller's requests
        if session is not None and session.identity.canonical_user_id == identity.canonical_user_id:
            registry.publish(session_id, response)
        elif session is None:
            _logger.debug(
                {
                    "event": "sse_session_missing",
                    "message": "Message posted for a session that is not open",
                    "session_id": session_id,
                    "user": hash_sensitive_id(identity.canonical_user_id),
                }
            )

    return JSONResponse(content=response)


@router.post("/sse", response_model=None)
@router.post("/message", response_model=None)
async def post_message(
    request: Request,
    identity: IdentityDep,
    dispatcher: DispatcherDep,
    provider: ProviderDep,
    registry: SseRegistryDep,
) -> Response:
    """Handle a JSON-RPC request addressed to an SSE session."""
    return await _handle(request, identity, JsonRpcHandler(dispatcher, provider), registry)


@router.post("", response_model=None)
async def post_simple(
    request: Request,
    identity: IdentityDep,
    dispatcher: DispatcherDep,
    provider: ProviderDep,
) -> Response:
    """Handle a JSON-RPC request without a stream."""
    return await _handle(request, identity, JsonRpcHandler(dispatcher, provider), None)


@router.get("/info", response_model=McpInfoResponse)
async def transport_info(dispatcher: DispatcherDep) -> McpInfoResponse:
    return McpInfoResponse(
        name=MCP_SERVER_NAME,
        version=__version__,
        protocolVersion=MCP_PROTOCOL_VERSION,
        capabilities={"tools": {"available": True, "count": len(dispatcher.list_tools())}},
        endpoints={
            "sse": "/api/mcp/sse",
            "message": "/api/mcp/message",
            "simple": "/api/mcp",
        },
    )
