"""People and profile tools."""

from __future__ import annotations

__all__ = [
    "PeopleModule",
]

from typing import Any, Mapping

from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

_USER_SELECT = "id,displayName,mail,userPrincipalName,jobTitle,department,officeLocation,mobilePhone,businessPhones"


def _person(person: Mapping[str, Any]) -> dict[str, Any]:
    emails = person.get("scoredEmailAddresses") or []
    return {
        "id": person.get("id"),
        "displayName": person.get("displayName"),
        "email": emails[0].get("address") if emails else person.get("mail") or person.get("userPrincipalName"),
        "jobTitle": person.get("jobTitle"),
        "department": person.get("department"),
        "companyName": person.get("companyName"),
        "officeLocation": person.get("officeLocation"),
    }


def _user(user: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": user.get("id"),
        "displayName": user.get("displayName"),
        "email": user.get("mail") or user.get("userPrincipalName"),
        "userPrincipalName": user.get("userPrincipalName"),
        "jobTitle": user.get("jobTitle"),
        "department": user.get("department"),
        "officeLocation": user.get("officeLocation"),
        "mobilePhone": user.get("mobilePhone"),
        "businessPhones": user.get("businessPhones") or [],
    }


class PeopleModule(GraphModule):
    name = "people"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "getRelevantPeople": self.get_relevant_people,
            "findPeople": self.find_people,
            "getPersonById": self.get_person,
            "getProfile": self.get_profile,
        }

    async def get_relevant_people(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        people = await self._graph.get_collection("/me/people", require_token(args), params={"$top": args.get("top", 20)})
        return [_person(p) for p in people]

    async def find_people(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        people = await self._graph.get_collection(
            "/me/people",
            require_token(args),
            params={"$search": f'"{args["query"]}"', "$top": args.get("top", 10)},
        )
        return [_person(p) for p in people]

    async def get_person(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        user = await self._graph.get(f"/users/{args['id']}", require_token(args), params={"$select": _USER_SELECT})
        return _user(user or {})

    async def get_profile(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _user(await self._graph.get("/me", require_token(args), params={"$select": _USER_SELECT}) or {})
