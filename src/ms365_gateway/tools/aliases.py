"""Tool name resolution.

Clients name tools three ways:

    getInbox            canonical catalogue name
    getMail             legacy alias kept for older adapters
    mail.getInbox       explicit module.method

Canonical names and legacy aliases live in one table mapping a name to its
(module, method) location. Dotted names bypass the table, except that a few
historical method names (calendar.create, people.find, ...) are rewritten to
their current method.
"""

from __future__ import annotations

__all__ = [
    "LEGACY_ALIASES",
    "METHOD_ALIASES",
    "ToolLocation",
    "build_alias_table",
    "resolve_tool_name",
]

from typing import Iterable, NamedTuple

from ms365_gateway.exceptions import UnknownToolError
from ms365_gateway.tools.catalogue import TOOL_CATALOGUE, ToolDefinition


class ToolLocation(NamedTuple):
    module: str
    method: str


LEGACY_ALIASES: dict[str, str] = {
    # mail
    "getMail": "getInbox",
    "readMail": "getInbox",
    "sendMail": "sendEmail",
    "searchMail": "searchEmails",
    "flagMail": "flagEmail",
    "getAttachments": "getMailAttachments",
    "getMailDetails": "getEmailDetails",
    "readMailDetails": "getEmailDetails",
    "markMailRead": "markAsRead",
    "markEmailRead": "markAsRead",
    "replyToEmail": "replyToMail",
    # calendar
    "getCalendar": "getEvents",
    "deleteEvent": "cancelEvent",
}

METHOD_ALIASES: dict[tuple[str, str], str] = {
    ("calendar", "create"): "createEvent",
    ("calendar", "update"): "updateEvent",
    ("people", "find"): "findPeople",
    ("mail", "sendMail"): "sendEmail",
    ("mail", "searchMail"): "searchEmails",
}


def build_alias_table(catalogue: Iterable[ToolDefinition] = TOOL_CATALOGUE) -> dict[str, ToolLocation]:
    """Map every canonical name and legacy alias to its location.

    Raises:
        ValueError: If a legacy alias points at a name missing from the catalogue.
    """
    table = {tool.name: ToolLocation(tool.module, tool.method) for tool in catalogue}
    for alias, target in LEGACY_ALIASES.items():
        if target not in table:
            raise ValueError(f"Alias {alias!r} targets unknown tool {target!r}")
        table.setdefault(alias, table[target])
    return table


def resolve_tool_name(name: str, table: dict[str, ToolLocation]) -> ToolLocation:
    """Resolve a client-supplied tool name.

    Args:
        name: Canonical name, alias, or "module.method".
        table: Result of build_alias_table().

    Returns:
        ToolLocation. Whether the module actually has that method is checked
        by the registry.

    Raises:
        UnknownToolError: Empty or unknown name.
    """
    if not name or not isinstance(name, str):
        raise UnknownToolError("Tool name is required")

    if "." in name:
        module, _, method = name.partition(".")
        if not module or not method:
            raise UnknownToolError(f"Unknown tool: {name}")
        return ToolLocation(module, METHOD_ALIASES.get((module, method), method))

    location = table.get(name)
    if location is None:
        raise UnknownToolError(f"Unknown tool: {name}")
    return location
