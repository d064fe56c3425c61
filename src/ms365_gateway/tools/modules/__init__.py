"""Microsoft Graph tool modules.

Each module owns one Graph area and maps canonical tool names to async
handlers. Handlers receive validated arguments with the caller's upstream
bearer injected as ``accessToken``.
"""

from ms365_gateway.tools.modules.base import GraphModule
from ms365_gateway.tools.modules.calendar import CalendarModule
from ms365_gateway.tools.modules.contacts import ContactsModule
from ms365_gateway.tools.modules.files import FilesModule
from ms365_gateway.tools.modules.graph_client import GraphClient
from ms365_gateway.tools.modules.groups import GroupsModule
from ms365_gateway.tools.modules.mail import MailModule
from ms365_gateway.tools.modules.people import PeopleModule
from ms365_gateway.tools.modules.search import SearchModule
from ms365_gateway.tools.modules.teams import TeamsModule
from ms365_gateway.tools.modules.todo import TodoModule

__all__ = [
    "CalendarModule",
    "ContactsModule",
    "FilesModule",
    "GraphClient",
    "GraphModule",
    "GroupsModule",
    "MailModule",
    "PeopleModule",
    "SearchModule",
    "TeamsModule",
    "TodoModule",
    "build_default_modules",
]


def build_default_modules(graph: GraphClient) -> list[GraphModule]:
    """All Graph modules, sharing one client."""
    return [
        MailModule(graph),
        CalendarModule(graph),
        FilesModule(graph),
        PeopleModule(graph),
        SearchModule(graph),
        TeamsModule(graph),
        TodoModule(graph),
        ContactsModule(graph),
        GroupsModule(graph),
    ]
