"""Unified search across Microsoft 365 content.

Uses POST /search/query. Graph only interleaves some entity types in one
request, so types are grouped and each group is queried separately:

    message, chatMessage              one request
    driveItem, site, list, listItem   one request
    event, person                     one request each

Hits from all groups are merged and ordered by rank.
"""

from __future__ import annotations

__all__ = [
    "DEFAULT_ENTITY_TYPES",
    "SearchModule",
    "group_entity_types",
]

import asyncio
from typing import Any, Mapping

from ms365_gateway.exceptions import InvalidRequestError
from ms365_gateway.tools.modules.base import GraphModule, email_address, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

VALID_ENTITY_TYPES = ("message", "event", "driveItem", "person", "chatMessage", "site", "list", "listItem")
DEFAULT_ENTITY_TYPES = ("message", "event", "driveItem", "person")

_INTERLEAVE_GROUPS = (
    ("message", "chatMessage"),
    ("driveItem", "site", "list", "listItem"),
)


def group_entity_types(entity_types: list[str]) -> list[list[str]]:
    """Split entity types into request groups Graph accepts together."""
    groups: list[list[str]] = []
    remaining = list(dict.fromkeys(entity_types))
    for family in _INTERLEAVE_GROUPS:
        members = [t for t in remaining if t in family]
        if members:
            groups.append(members)
    groups.extend([t] for t in remaining if not any(t in family for family in _INTERLEAVE_GROUPS))
    return groups


def _normalize_hit(hit: Mapping[str, Any]) -> dict[str, Any]:
    resource = hit.get("resource") or {}
    entity_type = (resource.get("@odata.type") or "").replace("#microsoft.graph.", "") or "unknown"
    result: dict[str, Any] = {
        "id": resource.get("id") or hit.get("hitId"),
        "entityType": entity_type,
        "rank": hit.get("rank"),
        "summary": hit.get("summary"),
    }
    if entity_type == "message":
        result.update(
            subject=resource.get("subject"),
            **{"from": email_address(resource.get("from"))},
            receivedDateTime=resource.get("receivedDateTime"),
            webLink=resource.get("webLink"),
        )
    elif entity_type == "event":
        result.update(
            subject=resource.get("subject"),
            start=resource.get("start"),
            end=resource.get("end"),
            organizer=email_address(resource.get("organizer")),
        )
    elif entity_type == "person":
        result.update(
            displayName=resource.get("displayName"),
            email=(resource.get("scoredEmailAddresses") or [{}])[0].get("address"),
            jobTitle=resource.get("jobTitle"),
        )
    else:
        result.update(name=resource.get("name"), webUrl=resource.get("webUrl"))
    return result


class SearchModule(GraphModule):
    name = "search"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {"search": self.search}

    async def search(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        requested = args.get("entityTypes") or list(DEFAULT_ENTITY_TYPES)
        invalid = [t for t in requested if t not in VALID_ENTITY_TYPES]
        if invalid:
            raise InvalidRequestError(
                f"Unsupported entity types: {', '.join(invalid)}",
                details=[{"field": "entityTypes", "message": f"must be among: {', '.join(VALID_ENTITY_TYPES)}"}],
            )

        token = require_token(args)
        size = args.get("top", 25)
        groups = group_entity_types(requested)
        responses = await asyncio.gather(
            *(
                self._graph.post(
                    "/search/query",
                    token,
                    {"requests": [{"entityTypes": group, "query": {"queryString": args["query"]}, "from": 0, "size": size}]},
                )
                for group in groups
            )
        )

        hits: list[dict[str, Any]] = []
        total = 0
        more_available = False
        for response in responses:
            for search_response in (response or {}).get("value") or []:
                for container in search_response.get("hitsContainers") or []:
                    total += container.get("total") or 0
                    more_available = more_available or bool(container.get("moreResultsAvailable"))
                    hits.extend(_normalize_hit(hit) for hit in container.get("hits") or [])

        hits.sort(key=lambda h: h["rank"] if isinstance(h.get("rank"), int) else 999)
        return {
            "query": args["query"],
            "entityTypes": requested,
            "total": total,
            "moreResultsAvailable": more_available,
            "results": hits,
        }
