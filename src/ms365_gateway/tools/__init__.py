"""Tool layer: catalogue, name resolution, validation and dispatch.

The catalogue is the single source of truth for tool names, parameters and
REST routes. Both the REST surface and the JSON-RPC surface call tools
through ToolDispatcher.
"""

from ms365_gateway.tools.aliases import LEGACY_ALIASES, resolve_tool_name
from ms365_gateway.tools.catalogue import TOOL_CATALOGUE, ParamSpec, ToolDefinition, get_tool
from ms365_gateway.tools.dispatcher import ToolDispatcher, ToolResult
from ms365_gateway.tools.registry import ModuleRegistry, ToolContext
from ms365_gateway.tools.scopes import SCOPE_TOOL_MAP, available_tools

__all__ = [
    "LEGACY_ALIASES",
    "ModuleRegistry",
    "ParamSpec",
    "SCOPE_TOOL_MAP",
    "TOOL_CATALOGUE",
    "ToolContext",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolResult",
    "available_tools",
    "get_tool",
    "resolve_tool_name",
]
