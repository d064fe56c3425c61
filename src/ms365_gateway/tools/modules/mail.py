"""Mail tools (Outlook messages)."""

from __future__ import annotations

__all__ = [
    "MailModule",
]

from typing import Any, Mapping

from ms365_gateway.tools.modules.base import GraphModule, email_address, recipients, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

_LIST_SELECT = "id,subject,from,receivedDateTime,bodyPreview,isRead,importance,hasAttachments,flag,webLink"


def _summary(message: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": message.get("id"),
        "subject": message.get("subject"),
        "from": email_address(message.get("from")),
        "receivedDateTime": message.get("receivedDateTime"),
        "preview": message.get("bodyPreview"),
        "isRead": message.get("isRead"),
        "importance": message.get("importance"),
        "hasAttachments": message.get("hasAttachments"),
        "flagged": (message.get("flag") or {}).get("flagStatus") == "flagged",
        "webLink": message.get("webLink"),
    }


def _attachment(att: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": att.get("id"),
        "name": att.get("name"),
        "contentType": att.get("contentType"),
        "size": att.get("size"),
        "isInline": att.get("isInline"),
    }


class MailModule(GraphModule):
    name = "mail"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "getInbox": self.get_inbox,
            "sendEmail": self.send_email,
            "searchEmails": self.search_emails,
            "flagEmail": self.flag_email,
            "getMailAttachments": self.get_attachments,
            "markAsRead": self.mark_as_read,
            "replyToMail": self.reply,
            "addMailAttachment": self.add_attachment,
            "removeMailAttachment": self.remove_attachment,
            "getEmailDetails": self.get_details,
        }

    async def get_inbox(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        filters = [args["filter"]] if args.get("filter") else []
        if args.get("unreadOnly"):
            filters.append("isRead eq false")
        messages = await self._graph.get_collection(
            "/me/mailFolders/inbox/messages",
            require_token(args),
            params={
                "$top": args.get("top", 20),
                "$select": _LIST_SELECT,
                "$orderby": "receivedDateTime desc",
                "$filter": " and ".join(f"({f})" for f in filters) if filters else None,
            },
        )
        return [_summary(m) for m in messages]

    async def send_email(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        message: dict[str, Any] = {
            "subject": args["subject"],
            "body": {"contentType": args.get("contentType", "Text"), "content": args["body"]},
            "toRecipients": recipients(args["to"]),
        }
        if args.get("cc"):
            message["ccRecipients"] = recipients(args["cc"])
        if args.get("bcc"):
            message["bccRecipients"] = recipients(args["bcc"])
        if args.get("attachments"):
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": att.get("name"),
                    "contentBytes": att.get("contentBytes"),
                    "contentType": att.get("contentType") or "application/octet-stream",
                }
                for att in args["attachments"]
                if isinstance(att, dict)
            ]
        await self._graph.post("/me/sendMail", require_token(args), {"message": message, "saveToSentItems": True})
        return {"success": True, "recipients": len(message["toRecipients"])}

    async def search_emails(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        query = args["query"].strip()
        # $search takes the KQL string wrapped in one pair of quotes
        if not (query.startswith('"') and query.endswith('"')):
            query = f'"{query}"'
        messages = await self._graph.get_collection(
            "/me/messages",
            require_token(args),
            params={"$search": query, "$top": args.get("top", 20), "$select": _LIST_SELECT},
        )
        return [_summary(m) for m in messages]

    async def flag_email(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        status = "flagged" if args.get("flag", True) else "notFlagged"
        await self._graph.patch(f"/me/messages/{args['id']}", require_token(args), {"flag": {"flagStatus": status}})
        return {"success": True, "id": args["id"], "flagStatus": status}

    async def get_attachments(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        attachments = await self._graph.get_collection(
            f"/me/messages/{args['id']}/attachments",
            require_token(args),
            params={"$select": "id,name,contentType,size,isInline"},
        )
        return [_attachment(a) for a in attachments]

    async def mark_as_read(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        is_read = args.get("isRead", True)
        await self._graph.patch(f"/me/messages/{args['id']}", require_token(args), {"isRead": is_read})
        return {"success": True, "id": args["id"], "isRead": is_read}

    async def reply(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        action = "replyAll" if args.get("replyAll") else "reply"
        await self._graph.post(f"/me/messages/{args['id']}/{action}", require_token(args), {"comment": args["comment"]})
        return {"success": True, "id": args["id"], "replyAll": action == "replyAll"}

    async def add_attachment(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        created = await self._graph.post(
            f"/me/messages/{args['id']}/attachments",
            require_token(args),
            {
                "@odata.type": "#microsoft.graph.fileAttachment",
                "name": args["name"],
                "contentBytes": args["contentBytes"],
                "contentType": args.get("contentType") or "application/octet-stream",
                "isInline": args.get("isInline", False),
            },
        )
        return _attachment(created or {})

    async def remove_attachment(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(f"/me/messages/{args['id']}/attachments/{args['attachmentId']}", require_token(args))
        return {"success": True, "id": args["id"], "attachmentId": args["attachmentId"]}

    async def get_details(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        message = await self._graph.get(f"/me/messages/{args['id']}", require_token(args)) or {}
        details = _summary(message)
        details.update(
            {
                "to": [email_address(r) for r in message.get("toRecipients") or []],
                "cc": [email_address(r) for r in message.get("ccRecipients") or []],
                "body": (message.get("body") or {}).get("content"),
                "bodyContentType": (message.get("body") or {}).get("contentType"),
                "conversationId": message.get("conversationId"),
                "sentDateTime": message.get("sentDateTime"),
            }
        )
        return details
