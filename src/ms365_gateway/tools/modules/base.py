"""Shared pieces for Graph-backed tool modules."""

from __future__ import annotations

__all__ = [
    "GraphModule",
    "email_address",
    "recipients",
    "require_token",
]

from typing import Any, Mapping

from ms365_gateway.exceptions import AuthenticationError
from ms365_gateway.tools.modules.graph_client import GraphClient
from ms365_gateway.tools.registry import ToolHandler
from ms365_gateway.tools.validation import ACCESS_TOKEN_ARG


def require_token(arguments: Mapping[str, Any]) -> str:
    """Injected upstream bearer.

    Raises:
        AuthenticationError: The dispatcher did not inject a token.
    """
    token = arguments.get(ACCESS_TOKEN_ARG)
    if not isinstance(token, str) or not token:
        raise AuthenticationError("Tool handler invoked without an upstream access token", code="NO_VALID_TOKEN")
    return token


def recipients(addresses: list[str] | None) -> list[dict[str, Any]]:
    """Graph recipient objects from plain addresses."""
    return [{"emailAddress": {"address": address}} for address in addresses or [] if address]


def email_address(value: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Flatten a Graph {emailAddress: {name, address}} wrapper."""
    if not value:
        return None
    inner = value.get("emailAddress") or {}
    return {"name": inner.get("name"), "email": inner.get("address")}


class GraphModule:
    """Base for modules that call Microsoft Graph.

    Subclasses set `name` and return their handler table from handlers().
    """

    name: str = ""

    def __init__(self, graph: GraphClient) -> None:
        self._graph = graph

    def handlers(self) -> Mapping[str, ToolHandler]:
        raise NotImplementedError
