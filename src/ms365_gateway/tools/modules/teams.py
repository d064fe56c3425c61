"""Teams tools: chats, channels, online meetings and transcripts."""

from __future__ import annotations

__all__ = [
    "TeamsModule",
]

from typing import Any, Mapping

from ms365_gateway.tools.modules.base import GraphModule, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler


def _message(msg: Mapping[str, Any]) -> dict[str, Any]:
    sender = (msg.get("from") or {}).get("user") or {}
    return {
        "id": msg.get("id"),
        "from": sender.get("displayName"),
        "createdDateTime": msg.get("createdDateTime"),
        "content": (msg.get("body") or {}).get("content"),
        "contentType": (msg.get("body") or {}).get("contentType"),
        "replyToId": msg.get("replyToId"),
        "webUrl": msg.get("webUrl"),
    }


def _meeting(meeting: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": meeting.get("id"),
        "subject": meeting.get("subject"),
        "startDateTime": meeting.get("startDateTime"),
        "endDateTime": meeting.get("endDateTime"),
        "joinUrl": meeting.get("joinWebUrl"),
    }


def _message_body(args: Mapping[str, Any]) -> dict[str, Any]:
    return {"body": {"contentType": args.get("contentType", "text"), "content": args["content"]}}


class TeamsModule(GraphModule):
    name = "teams"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "listChats": self.list_chats,
            "getChatMessages": self.get_chat_messages,
            "sendChatMessage": self.send_chat_message,
            "listJoinedTeams": self.list_joined_teams,
            "listTeamChannels": self.list_team_channels,
            "getChannelMessages": self.get_channel_messages,
            "sendChannelMessage": self.send_channel_message,
            "replyToMessage": self.reply_to_message,
            "listOnlineMeetings": self.list_online_meetings,
            "createOnlineMeeting": self.create_online_meeting,
            "getMeetingByJoinUrl": self.get_meeting_by_join_url,
            "getOnlineMeeting": self.get_online_meeting,
            "getMeetingTranscripts": self.get_meeting_transcripts,
            "getMeetingTranscriptContent": self.get_transcript_content,
        }

    # ----- chats -----

    async def list_chats(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        chats = await self._graph.get_collection(
            "/me/chats", require_token(args), params={"$top": args.get("top", 20), "$expand": "members"}
        )
        return [
            {
                "id": c.get("id"),
                "topic": c.get("topic"),
                "chatType": c.get("chatType"),
                "lastUpdatedDateTime": c.get("lastUpdatedDateTime"),
                "members": [m.get("displayName") for m in c.get("members") or []],
            }
            for c in chats
        ]

    async def get_chat_messages(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        messages = await self._graph.get_collection(
            f"/chats/{args['chatId']}/messages", require_token(args), params={"$top": args.get("top", 20)}
        )
        return [_message(m) for m in messages]

    async def send_chat_message(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        sent = await self._graph.post(f"/chats/{args['chatId']}/messages", require_token(args), _message_body(args))
        return _message(sent or {})

    # ----- teams and channels -----

    async def list_joined_teams(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        # /me/joinedTeams does not support $top
        teams = await self._graph.get_collection("/me/joinedTeams", require_token(args))
        return [{"id": t.get("id"), "displayName": t.get("displayName"), "description": t.get("description")} for t in teams]

    async def list_team_channels(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        channels = await self._graph.get_collection(f"/teams/{args['teamId']}/channels", require_token(args))
        return [
            {
                "id": c.get("id"),
                "displayName": c.get("displayName"),
                "description": c.get("description"),
                "membershipType": c.get("membershipType"),
            }
            for c in channels
        ]

    async def get_channel_messages(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        messages = await self._graph.get_collection(
            f"/teams/{args['teamId']}/channels/{args['channelId']}/messages",
            require_token(args),
            params={"$top": args.get("top", 20)},
        )
        return [_message(m) for m in messages]

    async def send_channel_message(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        sent = await self._graph.post(
            f"/teams/{args['teamId']}/channels/{args['channelId']}/messages", require_token(args), _message_body(args)
        )
        return _message(sent or {})

    async def reply_to_message(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        sent = await self._graph.post(
            f"/teams/{args['teamId']}/channels/{args['channelId']}/messages/{args['messageId']}/replies",
            require_token(args),
            _message_body(args),
        )
        return _message(sent or {})

    # ----- online meetings -----

    async def list_online_meetings(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        # /me/onlineMeetings does not support $top; trim locally
        meetings = await self._graph.get_collection("/me/onlineMeetings", require_token(args))
        return [_meeting(m) for m in meetings[: args.get("top", 20)]]

    async def create_online_meeting(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        created = await self._graph.post(
            "/me/onlineMeetings",
            require_token(args),
            {"subject": args["subject"], "startDateTime": args["startDateTime"], "endDateTime": args["endDateTime"]},
        )
        return _meeting(created or {})

    async def get_meeting_by_join_url(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any] | None:
        join_url = args["joinUrl"].replace("'", "''")
        meetings = await self._graph.get_collection(
            "/me/onlineMeetings", require_token(args), params={"$filter": f"JoinWebUrl eq '{join_url}'"}
        )
        return _meeting(meetings[0]) if meetings else None

    async def get_online_meeting(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return _meeting(await self._graph.get(f"/me/onlineMeetings/{args['meetingId']}", require_token(args)) or {})

    async def get_meeting_transcripts(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        transcripts = await self._graph.get_collection(
            f"/me/onlineMeetings/{args['meetingId']}/transcripts", require_token(args)
        )
        return [{"id": t.get("id"), "createdDateTime": t.get("createdDateTime")} for t in transcripts]

    async def get_transcript_content(self, args: dict[str, Any], context: ToolContext) -> str:
        data, _ = await self._graph.get_bytes(
            f"/me/onlineMeetings/{args['meetingId']}/transcripts/{args['transcriptId']}/content?$format=text/vtt",
            require_token(args),
        )
        return data.decode("utf-8", errors="replace")
