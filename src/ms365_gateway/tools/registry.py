"""Static module registry.

Maps module name to the handlers that module declares. Handlers are looked
up in the mapping each module returns from handlers(); there is no
attribute reflection, so only declared methods are callable.

Handler contract:
    async def handler(arguments: dict, context: ToolContext) -> Any

where `arguments` always carries a non-empty "accessToken".
"""

from __future__ import annotations

__all__ = [
    "ModuleRegistry",
    "ToolContext",
    "ToolHandler",
    "ToolModule",
]

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ms365_gateway.exceptions import ToolMethodNotFoundError, UnknownToolError


@dataclass(frozen=True, slots=True)
class ToolContext:
    """Request context handed to tool handlers.

    Attributes:
        canonical_user_id: Caller identity.
        device_id: Caller's client instance.
        source: How the caller authenticated (gateway_token, session, ...).
        transport: "rest" or "jsonrpc".
        request_id: Correlation id for logs, when available.
    """

    canonical_user_id: str
    device_id: str | None = None
    source: str | None = None
    transport: str = "rest"
    request_id: str | None = None


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


class ToolModule(Protocol):
    """A backend module: a name plus its declared handlers."""

    name: str

    def handlers(self) -> Mapping[str, ToolHandler]: ...


class ModuleRegistry:
    """Immutable {module_name: {method_name: handler}} table.

    Args:
        modules: Module objects to register.

    Raises:
        ValueError: If two modules share a name.
    """

    def __init__(self, modules: "list[ToolModule] | tuple[ToolModule, ...]") -> None:
        table: dict[str, dict[str, ToolHandler]] = {}
        for module in modules:
            if module.name in table:
                raise ValueError(f"Duplicate module name: {module.name}")
            table[module.name] = dict(module.handlers())
        self._table = table

    @property
    def module_names(self) -> list[str]:
        return sorted(self._table)

    def methods(self, module_name: str) -> list[str]:
        return sorted(self._table.get(module_name, {}))

    def has(self, module_name: str, method_name: str) -> bool:
        return method_name in self._table.get(module_name, {})

    def get_handler(self, module_name: str, method_name: str) -> ToolHandler:
        """Look up a handler.

        Raises:
            UnknownToolError: No such module.
            ToolMethodNotFoundError: Module exists but lacks the method.
        """
        handlers = self._table.get(module_name)
        if handlers is None:
            raise UnknownToolError(f"Unknown module: {module_name}")
        handler = handlers.get(method_name)
        if handler is None:
            raise ToolMethodNotFoundError(f"Method {method_name} not found in module {module_name}")
        return handler
