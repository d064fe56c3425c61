"""REST tool endpoints, generated from the tool catalogue.

One route per catalogue entry (GET /mail, POST /mail/send,
PATCH /mail/{id}/read, ...). Arguments are merged from the query string,
the JSON body and the path, with path segments taking precedence. The
response body is the handler's raw result, sent with the tool's success
status (201 for creations).

Failure mapping:
- typed gateway errors -> their category status (400, 401, 404, 502, 504, ...)
- anything else raised by a handler -> 500 TOOL_EXECUTION_FAILED

Routes mounted at: /v1 and /api/v1
"""

from __future__ import annotations

__all__ = ["router"]

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from ms365_gateway.api.deps import DispatcherDep
from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.api.identity import IdentityDep
from ms365_gateway.api.rate_limit import api_rate_limit
from ms365_gateway.api.utils import run_request_bound
from ms365_gateway.api.utils.cancellation import ClientDisconnected
from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import GatewayError
from ms365_gateway.tools.catalogue import TOOL_CATALOGUE, ToolDefinition
from ms365_gateway.tools.registry import ToolContext
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

router = APIRouter(dependencies=[Depends(api_rate_limit)])

_logger = logging.getLogger(f"{APP_NAME}.tools")

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# nginx convention for "client closed request"; never reaches the client
CLIENT_CLOSED_REQUEST = 499


async def _collect_arguments(request: Request, tool: ToolDefinition) -> dict[str, Any]:
    """Query string, then JSON body, then path parameters."""
    arguments: dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        spec = tool.param(key)
        if spec is not None and spec.type == "array" and len(values) > 1:
            arguments[key] = values
        else:
            arguments[key] = values[-1]

    if request.method in _BODY_METHODS:
        raw = await request.body()
        if raw.strip():
            try:
                body = json.loads(raw)
            except ValueError as e:
                raise APIError(
                    status_code=400,
                    code=ErrorCode.INVALID_REQUEST,
                    message="Request body is not valid JSON",
                ) from e
            if not isinstance(body, dict):
                raise APIError(
                    status_code=400,
                    code=ErrorCode.INVALID_REQUEST,
                    message="Request body must be a JSON object",
                )
            arguments.update(body)

    arguments.update(request.path_params)
    return arguments


def _make_endpoint(tool: ToolDefinition) -> Callable[..., Awaitable[Response]]:
    async def endpoint(request: Request, identity: IdentityDep, dispatcher: DispatcherDep) -> Response:
        arguments = await _collect_arguments(request, tool)
        context = ToolContext(
            canonical_user_id=identity.canonical_user_id,
            device_id=identity.device_id,
            source=identity.source.value,
            transport="rest",
            request_id=request.headers.get("x-request-id"),
        )

        try:
            result = await run_request_bound(request, dispatcher.call(tool.name, arguments, context))
        except ClientDisconnected:
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except GatewayError as e:
            raise APIError.from_gateway_error(e) from e
        except Exception as e:
            _logger.error(
                {
                    "event": "tool_execution_failed",
                    "message": f"{tool.qualified_name} failed: {type(e).__name__}: {e}",
                    "tool": tool.qualified_name,
                    "user": hash_sensitive_id(identity.canonical_user_id),
                },
                exc_info=e,
            )
            raise APIError(
                status_code=500,
                code=ErrorCode.TOOL_EXECUTION_FAILED,
                message=f"{tool.name} failed: {e}",
            ) from e

        return JSONResponse(status_code=tool.success_status, content=jsonable_encoder(result.value))

    endpoint.__name__ = tool.name
    endpoint.__doc__ = tool.description
    return endpoint


# Literal paths are registered before parameterized siblings by catalogue order
for _tool in TOOL_CATALOGUE:
    router.add_api_route(
        _tool.path,
        _make_endpoint(_tool),
        methods=list(_tool.http_methods),
        name=_tool.name,
        summary=_tool.description,
        response_model=None,
    )
