"""OneDrive file tools."""

from __future__ import annotations

__all__ = [
    "FilesModule",
]

import base64
from typing import Any, Mapping
from urllib.parse import quote

from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

_TEXT_TYPES = ("text/", "application/json", "application/xml", "application/javascript")


def _item(item: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "size": item.get("size"),
        "isFolder": "folder" in item,
        "mimeType": (item.get("file") or {}).get("mimeType"),
        "lastModifiedDateTime": item.get("lastModifiedDateTime"),
        "lastModifiedBy": ((item.get("lastModifiedBy") or {}).get("user") or {}).get("displayName"),
        "webUrl": item.get("webUrl"),
        "parentId": (item.get("parentReference") or {}).get("id"),
    }


def _content_payload(item_id: str, data: bytes, content_type: str, *, prefer_text: bool) -> dict[str, Any]:
    is_text = content_type.startswith(_TEXT_TYPES)
    if prefer_text or is_text:
        try:
            return {"id": item_id, "contentType": content_type, "encoding": "utf-8", "content": data.decode("utf-8")}
        except UnicodeDecodeError:
            pass
    return {
        "id": item_id,
        "contentType": content_type,
        "encoding": "base64",
        "content": base64.b64encode(data).decode("ascii"),
    }


class FilesModule(GraphModule):
    name = "files"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "listFiles": self.list_files,
            "searchFiles": self.search_files,
            "uploadFile": self.upload_file,
            "getFileMetadata": self.get_metadata,
            "getFileContent": self.get_content,
            "downloadFile": self.download,
            "setFileContent": self.set_content,
            "updateFileContent": self.update_content,
            "createSharingLink": self.create_sharing_link,
            "getSharingLinks": self.get_sharing_links,
            "removeSharingPermission": self.remove_sharing_permission,
        }

    async def list_files(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        parent = args.get("parentId")
        path = f"/me/drive/items/{parent}/children" if parent else "/me/drive/root/children"
        items = await self._graph.get_collection(path, require_token(args), params={"$top": args.get("top", 50)})
        return [_item(i) for i in items]

    async def search_files(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        escaped = args["query"].replace("'", "''")
        items = await self._graph.get_collection(
            f"/me/drive/root/search(q='{quote(escaped, safe='')}')",
            require_token(args),
            params={"$top": args.get("top", 20)},
        )
        return [_item(i) for i in items]

    async def upload_file(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        name = quote(args["name"], safe="")
        parent = args.get("parentId")
        path = f"/me/drive/items/{parent}:/{name}:/content" if parent else f"/me/drive/root:/{name}:/content"
        created = await self._graph.put_content(path, require_token(args), args["content"], "text/plain")
        return _item(created or {})

    async def get_metadata(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _item(await self._graph.get(f"/me/drive/items/{args['id']}", require_token(args)) or {})

    async def get_content(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        data, content_type = await self._graph.get_bytes(f"/me/drive/items/{args['id']}/content", require_token(args))
        return _content_payload(args["id"], data, content_type, prefer_text=True)

    async def download(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        data, content_type = await self._graph.get_bytes(f"/me/drive/items/{args['id']}/content", require_token(args))
        return _content_payload(args["id"], data, content_type, prefer_text=False)

    async def set_content(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        updated = await self._graph.put_content(
            f"/me/drive/items/{args['id']}/content", require_token(args), args["content"], "text/plain"
        )
        return _item(updated or {"id": args["id"]})

    async def update_content(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return {**await self.set_content(args, context), "updated": True}

    async def create_sharing_link(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        created = await self._graph.post(
            f"/me/drive/items/{args['id']}/createLink",
            require_token(args),
            {"type": args.get("type", "view"), "scope": args.get("scope", "organization")},
        ) or {}
        link = created.get("link") or {}
        return {"permissionId": created.get("id"), "type": link.get("type"), "scope": link.get("scope"), "webUrl": link.get("webUrl")}

    async def get_sharing_links(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        permissions = await self._graph.get_collection(f"/me/drive/items/{args['id']}/permissions", require_token(args))
        return [
            {
                "permissionId": p.get("id"),
                "roles": p.get("roles"),
                "link": (p.get("link") or {}).get("webUrl"),
                "scope": (p.get("link") or {}).get("scope"),
                "grantedTo": ((p.get("grantedToV2") or p.get("grantedTo") or {}).get("user") or {}).get("displayName"),
            }
            for p in permissions
        ]

    async def remove_sharing_permission(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(
            f"/me/drive/items/{args['fileId']}/permissions/{args['permissionId']}", require_token(args)
        )
        return {"success": True, "fileId": args["fileId"], "permissionId": args["permissionId"]}
