"""Outlook contacts tools."""

from __future__ import annotations

__all__ = [
    "ContactsModule",
]

from typing import Any, Mapping

from ms365_gateway.exceptions import InvalidRequestError
from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

_WRITABLE = ("givenName", "surname", "displayName", "mobilePhone", "companyName", "jobTitle", "businessPhones")


def _contact(contact: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": contact.get("id"),
        "displayName": contact.get("displayName"),
        "givenName": contact.get("givenName"),
        "surname": contact.get("surname"),
        "emailAddresses": [e.get("address") for e in contact.get("emailAddresses") or []],
        "businessPhones": contact.get("businessPhones") or [],
        "mobilePhone": contact.get("mobilePhone"),
        "companyName": contact.get("companyName"),
        "jobTitle": contact.get("jobTitle"),
    }


def _contact_body(args: Mapping[str, Any]) -> dict[str, Any]:
    body = {field: args[field] for field in _WRITABLE if args.get(field) is not None}
    if args.get("emailAddresses") is not None:
        body["emailAddresses"] = [
            e if isinstance(e, dict) else {"address": e, "name": args.get("displayName") or e}
            for e in args["emailAddresses"]
        ]
    return body


class ContactsModule(GraphModule):
    name = "contacts"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "listContacts": self.list_contacts,
            "searchContacts": self.search_contacts,
            "createContact": self.create_contact,
            "getContact": self.get_contact,
            "updateContact": self.update_contact,
            "deleteContact": self.delete_contact,
        }

    async def list_contacts(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        contacts = await self._graph.get_collection(
            "/me/contacts", require_token(args), params={"$top": args.get("top", 50), "$orderby": "displayName"}
        )
        return [_contact(c) for c in contacts]

    async def search_contacts(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        contacts = await self._graph.get_collection(
            "/me/contacts", require_token(args), params={"$search": f'"{args["query"]}"', "$top": args.get("top", 20)}
        )
        return [_contact(c) for c in contacts]

    async def create_contact(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        body = _contact_body(args)
        if not (body.get("givenName") or body.get("displayName") or body.get("emailAddresses")):
            raise InvalidRequestError(
                "A contact needs a name or an email address",
                details=[{"field": "givenName", "message": "provide givenName, displayName or emailAddresses"}],
            )
        return _contact(await self._graph.post("/me/contacts", require_token(args), body) or {})

    async def get_contact(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _contact(await self._graph.get(f"/me/contacts/{args['contactId']}", require_token(args)) or {})

    async def update_contact(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        body = _contact_body(args)
        if not body:
            raise InvalidRequestError(
                "Nothing to update", details=[{"field": "contactId", "message": "provide at least one field to change"}]
            )
        updated = await self._graph.patch(f"/me/contacts/{args['contactId']}", require_token(args), body)
        return _contact(updated or {"id": args["contactId"]})

    async def delete_contact(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(f"/me/contacts/{args['contactId']}", require_token(args))
        return {"success": True, "contactId": args["contactId"]}
