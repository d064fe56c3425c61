"""ms365-gateway: authenticating gateway in front of Microsoft Graph.

Exposes a REST and JSON-RPC tool surface for mail, calendar, files, people,
chat, tasks, contacts, groups and search. Every request is resolved to a
canonical user identity whose upstream Graph token is looked up, refreshed
when needed, and injected into the tool handler.
"""

__all__ = ["__version__"]

__version__ = "0.4.0"
