"""Microsoft 365 group tools (read-only)."""

from __future__ import annotations

__all__ = [
    "GroupsModule",
]

from typing import Any, Mapping

from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

_GROUP_SELECT = "id,displayName,description,mail,mailEnabled,securityEnabled,groupTypes,visibility,createdDateTime"


def _group(group: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": group.get("id"),
        "displayName": group.get("displayName"),
        "description": group.get("description"),
        "mail": group.get("mail"),
        "isMicrosoft365Group": "Unified" in (group.get("groupTypes") or []),
        "securityEnabled": group.get("securityEnabled"),
        "visibility": group.get("visibility"),
        "createdDateTime": group.get("createdDateTime"),
    }


class GroupsModule(GraphModule):
    name = "groups"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "listGroups": self.list_groups,
            "listMyGroups": self.list_my_groups,
            "getGroup": self.get_group,
            "listGroupMembers": self.list_group_members,
        }

    async def list_groups(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        groups = await self._graph.get_collection(
            "/groups",
            require_token(args),
            params={"$top": args.get("top", 50), "$select": _GROUP_SELECT, "$filter": args.get("filter")},
        )
        return [_group(g) for g in groups]

    async def list_my_groups(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        groups = await self._graph.get_collection(
            "/me/memberOf/microsoft.graph.group",
            require_token(args),
            params={"$top": args.get("top", 50), "$select": _GROUP_SELECT},
        )
        return [_group(g) for g in groups]

    async def get_group(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        group = await self._graph.get(f"/groups/{args['groupId']}", require_token(args), params={"$select": _GROUP_SELECT})
        return _group(group or {})

    async def list_group_members(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        members = await self._graph.get_collection(
            f"/groups/{args['groupId']}/members",
            require_token(args),
            params={"$top": args.get("top", 50), "$select": "id,displayName,mail,userPrincipalName,jobTitle"},
        )
        return [
            {
                "id": m.get("id"),
                "displayName": m.get("displayName"),
                "email": m.get("mail") or m.get("userPrincipalName"),
                "jobTitle": m.get("jobTitle"),
                "type": (m.get("@odata.type") or "").replace("#microsoft.graph.", "") or None,
            }
            for m in members
        ]
