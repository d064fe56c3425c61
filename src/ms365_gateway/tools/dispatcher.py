"""Tool dispatcher shared by the REST and JSON-RPC surfaces.

Per call:
1. Resolve the tool name to module + method (UNKNOWN_TOOL / METHOD_NOT_FOUND)
2. Validate and coerce the arguments against the catalogue entry
3. Fetch the caller's upstream bearer from the UpstreamTokenProvider
4. Invoke the handler with {...arguments, accessToken}
5. Normalize the return value: strings pass through, anything else is JSON

Envelopes (REST status codes, JSON-RPC result/isError) are the caller's job.
"""

from __future__ import annotations

__all__ = [
    "ResolvedTool",
    "ToolDispatcher",
    "ToolResult",
    "build_input_schema",
    "normalize_result",
]

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from ms365_gateway.constants import APP_NAME
from ms365_gateway.exceptions import GatewayError, NoValidTokenError
from ms365_gateway.tools.aliases import ToolLocation, build_alias_table, resolve_tool_name
from ms365_gateway.tools.catalogue import TOOL_CATALOGUE, ToolDefinition
from ms365_gateway.tools.registry import ModuleRegistry, ToolContext, ToolHandler
from ms365_gateway.tools.scopes import available_tools
from ms365_gateway.tools.validation import ACCESS_TOKEN_ARG, validate_arguments
from ms365_gateway.utils.logging.logging_helpers import hash_sensitive_id

if TYPE_CHECKING:
    from ms365_gateway.security.auth.token_provider import UpstreamTokenProvider

_logger = logging.getLogger(f"{APP_NAME}.tools")


@dataclass(frozen=True, slots=True)
class ResolvedTool:
    """A tool name resolved against the alias table and registry."""

    requested_name: str
    location: ToolLocation
    handler: ToolHandler
    definition: ToolDefinition | None

    @property
    def qualified_name(self) -> str:
        return f"{self.location.module}.{self.location.method}"


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Handler output.

    Attributes:
        value: Raw handler return value (used for REST bodies).
        text: Normalized text (used for JSON-RPC content).
    """

    value: Any
    text: str


def normalize_result(value: Any) -> str:
    """Strings pass through; any other value is JSON-encoded."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, ensure_ascii=False)


def build_input_schema(tool: ToolDefinition) -> dict[str, Any]:
    """JSON-schema input descriptor for tools/list."""
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {param.name: param.to_schema() for param in tool.params},
    }
    required = [param.name for param in tool.params if param.required]
    if required:
        schema["required"] = required
    return schema


class ToolDispatcher:
    """Resolves, authorizes with an upstream token, and invokes tools.

    Args:
        registry: Module handlers.
        provider: Source of per-user upstream bearers.
        catalogue: Tool definitions (defaults to the built-in catalogue).
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        provider: "UpstreamTokenProvider",
        *,
        catalogue: Iterable[ToolDefinition] = TOOL_CATALOGUE,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._catalogue = tuple(catalogue)
        self._aliases = build_alias_table(self._catalogue)
        self._by_location = {(t.module, t.method): t for t in self._catalogue}

    @property
    def catalogue(self) -> tuple[ToolDefinition, ...]:
        return self._catalogue

    def resolve(self, name: str) -> ResolvedTool:
        """Resolve a tool name to its handler.

        Raises:
            UnknownToolError: Name is neither an alias nor a known module.
            ToolMethodNotFoundError: Module lacks the method.
        """
        location = resolve_tool_name(name, self._aliases)
        handler = self._registry.get_handler(location.module, location.method)
        return ResolvedTool(
            requested_name=name,
            location=location,
            handler=handler,
            definition=self._by_location.get((location.module, location.method)),
        )

    def list_tools(self, scopes: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Catalogue entries, optionally restricted to what the scopes unlock."""
        tools = [t for t in self._catalogue if self._registry.has(t.module, t.method)]
        if scopes is None:
            return tools
        allowed = set(available_tools(scopes))
        return [t for t in tools if t.name in allowed]

    async def call(
        self,
        name: str,
        arguments: Mapping[str, Any] | None,
        context: ToolContext,
    ) -> ToolResult:
        """Dispatch one tool call.

        Args:
            name: Tool name, alias, or module.method.
            arguments: Client arguments.
            context: Caller identity and transport.

        Returns:
            ToolResult.

        Raises:
            UnknownToolError, ToolMethodNotFoundError: Resolution failed.
            InvalidRequestError: Arguments failed validation.
            NoValidTokenError, ReauthRequiredError: No usable upstream token.
            GatewayError: Typed handler failure (UpstreamError etc.).
            Exception: Untyped handler failure, propagated as-is.
        """
        resolved = self.resolve(name)
        if resolved.definition is not None:
            args = validate_arguments(resolved.definition, arguments)
        else:
            args = {k: v for k, v in (arguments or {}).items() if k != ACCESS_TOKEN_ARG}

        token = await self._provider.get_upstream_token(context.canonical_user_id)
        if not token:
            raise NoValidTokenError("No upstream token available for this user")
        args[ACCESS_TOKEN_ARG] = token

        started = time.monotonic()
        try:
            value = await resolved.handler(args, context)
        except GatewayError as e:
            _logger.warning(
                {
                    "event": "tool_call_failed",
                    "message": f"{resolved.qualified_name} failed: {e.message}",
                    "tool": resolved.qualified_name,
                    "error_code": e.code,
                    "user": hash_sensitive_id(context.canonical_user_id),
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                }
            )
            raise
        except Exception as e:
            _logger.error(
                {
                    "event": "tool_call_error",
                    "message": f"{resolved.qualified_name} raised {type(e).__name__}: {e}",
                    "tool": resolved.qualified_name,
                    "user": hash_sensitive_id(context.canonical_user_id),
                }
            )
            raise

        _logger.debug(
            {
                "event": "tool_call_completed",
                "message": f"{resolved.qualified_name} completed",
                "tool": resolved.qualified_name,
                "transport": context.transport,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            }
        )
        return ToolResult(value=value, text=normalize_result(value))
