"""Microsoft To Do tools."""

from __future__ import annotations

__all__ = [
    "TodoModule",
]

from typing import Any, Mapping

from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler


def _list(task_list: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": task_list.get("id"),
        "displayName": task_list.get("displayName"),
        "isOwner": task_list.get("isOwner"),
        "wellknownListName": task_list.get("wellknownListName"),
    }


def _task(task: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": task.get("id"),
        "title": task.get("title"),
        "status": task.get("status"),
        "importance": task.get("importance"),
        "body": (task.get("body") or {}).get("content"),
        "dueDateTime": task.get("dueDateTime"),
        "completedDateTime": task.get("completedDateTime"),
        "createdDateTime": task.get("createdDateTime"),
    }


def _task_body(args: Mapping[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if args.get("title") is not None:
        body["title"] = args["title"]
    if args.get("body") is not None:
        body["body"] = {"contentType": "text", "content": args["body"]}
    if args.get("dueDateTime"):
        body["dueDateTime"] = {"dateTime": args["dueDateTime"], "timeZone": "UTC"}
    if args.get("importance"):
        body["importance"] = args["importance"]
    if args.get("status"):
        body["status"] = args["status"]
    return body


class TodoModule(GraphModule):
    name = "todo"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "listTaskLists": self.list_task_lists,
            "createTaskList": self.create_task_list,
            "getTaskList": self.get_task_list,
            "updateTaskList": self.update_task_list,
            "deleteTaskList": self.delete_task_list,
            "listTasks": self.list_tasks,
            "createTask": self.create_task,
            "getTask": self.get_task,
            "updateTask": self.update_task,
            "deleteTask": self.delete_task,
            "completeTask": self.complete_task,
        }

    async def list_task_lists(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        lists = await self._graph.get_collection("/me/todo/lists", require_token(args), params={"$top": args.get("top", 20)})
        return [_list(item) for item in lists]

    async def create_task_list(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _list(await self._graph.post("/me/todo/lists", require_token(args), {"displayName": args["displayName"]}) or {})

    async def get_task_list(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _list(await self._graph.get(f"/me/todo/lists/{args['listId']}", require_token(args)) or {})

    async def update_task_list(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        updated = await self._graph.patch(
            f"/me/todo/lists/{args['listId']}", require_token(args), {"displayName": args["displayName"]}
        )
        return _list(updated or {"id": args["listId"], "displayName": args["displayName"]})

    async def delete_task_list(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(f"/me/todo/lists/{args['listId']}", require_token(args))
        return {"success": True, "listId": args["listId"]}

    async def list_tasks(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"$top": args.get("top", 20)}
        if args.get("status"):
            params["$filter"] = f"status eq '{args['status']}'"
        tasks = await self._graph.get_collection(f"/me/todo/lists/{args['listId']}/tasks", require_token(args), params=params)
        return [_task(t) for t in tasks]

    async def create_task(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        created = await self._graph.post(f"/me/todo/lists/{args['listId']}/tasks", require_token(args), _task_body(args))
        return _task(created or {})

    async def get_task(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _task(await self._graph.get(f"/me/todo/lists/{args['listId']}/tasks/{args['taskId']}", require_token(args)) or {})

    async def update_task(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        updated = await self._graph.patch(
            f"/me/todo/lists/{args['listId']}/tasks/{args['taskId']}", require_token(args), _task_body(args)
        )
        return _task(updated or {"id": args["taskId"]})

    async def delete_task(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(f"/me/todo/lists/{args['listId']}/tasks/{args['taskId']}", require_token(args))
        return {"success": True, "taskId": args["taskId"]}

    async def complete_task(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        updated = await self._graph.patch(
            f"/me/todo/lists/{args['listId']}/tasks/{args['taskId']}", require_token(args), {"status": "completed"}
        )
        return _task(updated or {"id": args["taskId"], "status": "completed"})
