"""Declarative tool catalogue.

Every tool the gateway exposes is one ToolDefinition: its public name, the
module and method that implement it, its parameters, and the REST route it
is served on. REST routes, JSON-RPC tools/list schemas, argument validation
and the alias table are all derived from this list, so adding a tool means
adding one entry here and one handler in tools/modules/.

REST paths are relative to the version prefix (/v1 or /api/v1). Path
parameters use FastAPI's {name} syntax and must match a declared parameter.
"""

from __future__ import annotations

__all__ = [
    "TOOL_CATALOGUE",
    "ParamSpec",
    "ParamType",
    "ToolDefinition",
    "get_tool",
    "tools_by_module",
]

import re
from dataclasses import dataclass, field
from typing import Any, Literal

ParamType = Literal["string", "integer", "number", "boolean", "array", "object"]

_PATH_PARAM = re.compile(r"{(\w+)}")


@dataclass(frozen=True, slots=True)
class ParamSpec:
    """One declared tool parameter.

    Attributes:
        name: Argument name as clients send it.
        type: JSON-schema type.
        description: Shown in tools/list.
        required: Whether the argument must be present.
        default: Applied when the argument is absent.
        enum: Allowed values, if restricted.
        aliases: Alternative argument names accepted on input.
        minimum: Lower bound for integer/number parameters.
        maximum: Upper bound for integer/number parameters.
        min_length: Minimum length for string parameters.
        items: JSON-schema type of array items.
    """

    name: str
    type: ParamType
    description: str
    required: bool = False
    default: Any = None
    enum: tuple[str, ...] | None = None
    aliases: tuple[str, ...] = ()
    minimum: float | None = None
    maximum: float | None = None
    min_length: int | None = None
    items: ParamType | None = None

    def to_schema(self) -> dict[str, Any]:
        """JSON-schema fragment for this parameter."""
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        if self.default is not None:
            schema["default"] = self.default
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.min_length is not None:
            schema["minLength"] = self.min_length
        if self.type == "array":
            schema["items"] = {"type": self.items or "string"}
        return schema


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """A tool exposed over REST and JSON-RPC.

    Attributes:
        name: Public tool name (also the handler's method name).
        module: Module that implements it.
        description: Human-readable summary.
        http_methods: REST verbs the route accepts; the first is canonical.
        path: REST path under the version prefix.
        params: Declared parameters.
        success_status: HTTP status for a successful REST call.
    """

    name: str
    module: str
    description: str
    http_methods: tuple[str, ...]
    path: str
    params: tuple[ParamSpec, ...] = ()
    success_status: int = 200
    _param_index: dict[str, ParamSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_param_index", {p.name: p for p in self.params})
        for path_param in self.path_params:
            if path_param not in self._param_index:
                raise ValueError(f"{self.name}: path parameter {path_param!r} is not declared")

    @property
    def method(self) -> str:
        return self.name

    @property
    def qualified_name(self) -> str:
        return f"{self.module}.{self.name}"

    @property
    def http_method(self) -> str:
        return self.http_methods[0]

    @property
    def path_params(self) -> tuple[str, ...]:
        return tuple(_PATH_PARAM.findall(self.path))

    def param(self, name: str) -> ParamSpec | None:
        return self._param_index.get(name)

    def to_public_dict(self) -> dict[str, Any]:
        """Catalogue entry as served by GET /tools."""
        return {
            "name": self.name,
            "module": self.module,
            "description": self.description,
            "method": self.http_method,
            "endpoint": f"/api/v1{self.path}",
            "parameters": {p.name: {**p.to_schema(), "required": p.required} for p in self.params},
        }


def _p(name: str, type_: ParamType, description: str, **kwargs: Any) -> ParamSpec:
    return ParamSpec(name=name, type=type_, description=description, **kwargs)


def _top(default: int = 20) -> ParamSpec:
    return _p("top", "integer", "Maximum number of items to return", default=default, minimum=1, maximum=100, aliases=("limit",))


def _id(name: str, what: str) -> ParamSpec:
    return _p(name, "string", f"{what} id", required=True, min_length=1)


_COMMENT = _p("comment", "string", "Optional message to the organizer")
_SEND_RESPONSE = _p("sendResponse", "boolean", "Whether to notify the organizer", default=True)
_CONTENT = _p("content", "string", "Message text", required=True, min_length=1)
_CONTENT_TYPE = _p("contentType", "string", "Message body format", enum=("text", "html"), default="text")
_ATTACHMENT_FIELDS = (
    _p("name", "string", "Attachment file name", required=True, min_length=1),
    _p("contentBytes", "string", "Base64-encoded file content", required=True, min_length=1),
    _p("contentType", "string", "MIME type of the attachment"),
    _p("isInline", "boolean", "Whether the attachment is inline", default=False),
)
_CONTACT_FIELDS = (
    _p("givenName", "string", "First name"),
    _p("surname", "string", "Last name"),
    _p("displayName", "string", "Display name"),
    _p("emailAddresses", "array", "Email addresses"),
    _p("businessPhones", "array", "Business phone numbers"),
    _p("mobilePhone", "string", "Mobile phone number"),
    _p("companyName", "string", "Company"),
    _p("jobTitle", "string", "Job title"),
)
_TASK_FIELDS = (
    _p("body", "string", "Task notes"),
    _p("dueDateTime", "string", "Due date (ISO 8601)"),
    _p("importance", "string", "Task importance", enum=("low", "normal", "high")),
)

# =============================================================================
# Catalogue
# =============================================================================

TOOL_CATALOGUE: tuple[ToolDefinition, ...] = (
    # ----- mail -----
    ToolDefinition(
        "getInbox", "mail", "Fetch messages from the signed-in user's inbox", ("GET",), "/mail",
        (_top(), _p("filter", "string", "OData filter expression"),
         _p("unreadOnly", "boolean", "Only return unread messages", default=False)),
    ),
    ToolDefinition(
        "sendEmail", "mail", "Send an email", ("POST",), "/mail/send",
        (_p("to", "array", "Recipient addresses (list or comma-separated string)", required=True),
         _p("subject", "string", "Subject line", required=True, min_length=1),
         _p("body", "string", "Message body", required=True, min_length=1),
         _p("cc", "array", "CC recipients"),
         _p("bcc", "array", "BCC recipients"),
         _p("contentType", "string", "Body format", enum=("Text", "HTML"), default="Text"),
         _p("attachments", "array", "Attachments ({name, contentBytes, contentType})", items="object")),
    ),
    ToolDefinition(
        "searchEmails", "mail", "Search mail with KQL (for example from:ann subject:report)", ("GET",), "/mail/search",
        (_p("query", "string", "KQL query", required=True, min_length=1, aliases=("q",)), _top()),
    ),
    ToolDefinition(
        "flagEmail", "mail", "Flag or unflag a message", ("POST",), "/mail/flag",
        (_id("id", "Message"), _p("flag", "boolean", "True to flag, false to clear", default=True)),
    ),
    ToolDefinition(
        "getMailAttachments", "mail", "List attachments of a message", ("GET",), "/mail/attachments",
        (_id("id", "Message"),),
    ),
    ToolDefinition(
        "markAsRead", "mail", "Mark a message read or unread", ("PATCH",), "/mail/{id}/read",
        (_id("id", "Message"), _p("isRead", "boolean", "True for read, false for unread", default=True)),
    ),
    ToolDefinition(
        "replyToMail", "mail", "Reply to a message", ("POST",), "/mail/{id}/reply",
        (_id("id", "Message"), _p("comment", "string", "Reply text", required=True, min_length=1),
         _p("replyAll", "boolean", "Reply to all recipients", default=False)),
    ),
    ToolDefinition(
        "addMailAttachment", "mail", "Attach a file to a message", ("POST",), "/mail/{id}/attachments",
        (_id("id", "Message"), *_ATTACHMENT_FIELDS), success_status=201,
    ),
    ToolDefinition(
        "removeMailAttachment", "mail", "Remove an attachment from a message", ("DELETE",),
        "/mail/{id}/attachments/{attachmentId}",
        (_id("id", "Message"), _id("attachmentId", "Attachment")),
    ),
    ToolDefinition(
        "getEmailDetails", "mail", "Get one message with its full body", ("GET",), "/mail/{id}",
        (_id("id", "Message"),),
    ),
    # ----- calendar -----
    ToolDefinition(
        "getEvents", "calendar", "List calendar events in a date range", ("GET",), "/calendar",
        (_p("start", "string", "Range start (ISO 8601); defaults to now"),
         _p("end", "string", "Range end (ISO 8601); defaults to start + 7 days"),
         _top(50),
         _p("subject", "string", "Only events whose subject contains this text"),
         _p("organizer", "string", "Only events organized by this address"),
         _p("attendee", "string", "Only events with this attendee")),
    ),
    ToolDefinition(
        "createEvent", "calendar", "Create a calendar event", ("POST",), "/calendar/events",
        (_p("subject", "string", "Event title", required=True, min_length=1),
         _p("start", "string", "Start (ISO 8601)", required=True),
         _p("end", "string", "End (ISO 8601)", required=True),
         _p("timeZone", "string", "IANA or Windows time zone", default="UTC"),
         _p("attendees", "array", "Attendee addresses"),
         _p("body", "string", "Event description"),
         _p("location", "string", "Location display name"),
         _p("isOnlineMeeting", "boolean", "Create a Teams meeting link", default=False)),
    ),
    ToolDefinition(
        "updateEvent", "calendar", "Update a calendar event", ("PUT",), "/calendar/events/{id}",
        (_id("id", "Event"),
         _p("subject", "string", "Event title"),
         _p("start", "string", "Start (ISO 8601)"),
         _p("end", "string", "End (ISO 8601)"),
         _p("timeZone", "string", "Time zone for start and end", default="UTC"),
         _p("attendees", "array", "Attendee addresses"),
         _p("body", "string", "Event description"),
         _p("location", "string", "Location display name")),
    ),
    ToolDefinition(
        "acceptEvent", "calendar", "Accept a meeting invitation", ("POST",), "/calendar/events/{id}/accept",
        (_id("id", "Event"), _COMMENT, _SEND_RESPONSE),
    ),
    ToolDefinition(
        "tentativelyAcceptEvent", "calendar", "Tentatively accept a meeting invitation", ("POST",),
        "/calendar/events/{id}/tentativelyAccept",
        (_id("id", "Event"), _COMMENT, _SEND_RESPONSE),
    ),
    ToolDefinition(
        "declineEvent", "calendar", "Decline a meeting invitation", ("POST",), "/calendar/events/{id}/decline",
        (_id("id", "Event"), _COMMENT, _SEND_RESPONSE),
    ),
    ToolDefinition(
        "cancelEvent", "calendar", "Cancel a meeting you organize", ("POST",), "/calendar/events/{id}/cancel",
        (_id("id", "Event"), _COMMENT),
    ),
    ToolDefinition(
        "getAvailability", "calendar", "Free/busy schedule for a set of users", ("POST",), "/calendar/availability",
        (_p("users", "array", "Addresses to check", required=True),
         _p("start", "string", "Window start (ISO 8601)", required=True),
         _p("end", "string", "Window end (ISO 8601)", required=True),
         _p("timeZone", "string", "Time zone of the window", default="UTC"),
         _p("interval", "integer", "Slot length in minutes", default=30, minimum=5, maximum=1440)),
    ),
    ToolDefinition(
        "findMeetingTimes", "calendar", "Suggest meeting times for attendees", ("POST",), "/calendar/findMeetingTimes",
        (_p("attendees", "array", "Attendee addresses", required=True),
         _p("start", "string", "Earliest start (ISO 8601)"),
         _p("end", "string", "Latest end (ISO 8601)"),
         _p("timeZone", "string", "Time zone of the window", default="UTC"),
         _p("duration", "integer", "Meeting length in minutes", default=30, minimum=5, maximum=1440),
         _p("maxCandidates", "integer", "Maximum suggestions", default=10, minimum=1, maximum=50)),
    ),
    ToolDefinition("getRooms", "calendar", "List meeting rooms", ("GET",), "/calendar/rooms", (_top(50),)),
    ToolDefinition("getCalendars", "calendar", "List the user's calendars", ("GET",), "/calendar/calendars", ()),
    ToolDefinition(
        "addAttachment", "calendar", "Attach a file to an event", ("POST",), "/calendar/events/{id}/attachments",
        (_id("id", "Event"), *_ATTACHMENT_FIELDS), success_status=201,
    ),
    ToolDefinition(
        "removeAttachment", "calendar", "Remove an attachment from an event", ("DELETE",),
        "/calendar/events/{id}/attachments/{attachmentId}",
        (_id("id", "Event"), _id("attachmentId", "Attachment")),
    ),
    # ----- files -----
    ToolDefinition(
        "listFiles", "files", "List files in OneDrive root or a folder", ("GET",), "/files",
        (_p("parentId", "string", "Folder id; root when omitted"), _top(50)),
    ),
    ToolDefinition(
        "searchFiles", "files", "Search OneDrive by name or content", ("GET",), "/files/search",
        (_p("query", "string", "Search text", required=True, min_length=1, aliases=("q",)), _top()),
    ),
    ToolDefinition(
        "uploadFile", "files", "Upload a small text file", ("POST",), "/files/upload",
        (_p("name", "string", "File name", required=True, min_length=1),
         _p("content", "string", "File content", required=True),
         _p("parentId", "string", "Folder id; root when omitted")),
        success_status=201,
    ),
    ToolDefinition(
        "getFileMetadata", "files", "Get file metadata", ("GET",), "/files/metadata", (_id("id", "File"),),
    ),
    ToolDefinition(
        "getFileContent", "files", "Read a file's content", ("GET",), "/files/content", (_id("id", "File"),),
    ),
    ToolDefinition(
        "downloadFile", "files", "Download a file (base64 for binary content)", ("GET",), "/files/download",
        (_id("id", "File"),),
    ),
    ToolDefinition(
        "setFileContent", "files", "Replace a file's content", ("POST",), "/files/content",
        (_id("id", "File"), _p("content", "string", "New content", required=True)),
    ),
    ToolDefinition(
        "updateFileContent", "files", "Update a file's content", ("POST",), "/files/content/update",
        (_id("id", "File"), _p("content", "string", "New content", required=True)),
    ),
    ToolDefinition(
        "createSharingLink", "files", "Create a sharing link for a file", ("POST",), "/files/share",
        (_id("id", "File"),
         _p("type", "string", "Link type", enum=("view", "edit"), default="view"),
         _p("scope", "string", "Link audience", enum=("anonymous", "organization"), default="organization")),
    ),
    ToolDefinition(
        "getSharingLinks", "files", "List sharing permissions of a file", ("GET",), "/files/sharing",
        (_id("id", "File"),),
    ),
    ToolDefinition(
        "removeSharingPermission", "files", "Remove a sharing permission", ("POST",), "/files/sharing/remove",
        (_id("fileId", "File"), _id("permissionId", "Permission")),
    ),
    # ----- people -----
    ToolDefinition(
        "getRelevantPeople", "people", "People the user works with most", ("GET",), "/people", (_top(),),
    ),
    ToolDefinition(
        "findPeople", "people", "Find people by name or address", ("GET",), "/people/find",
        (_p("query", "string", "Name or address fragment", required=True, min_length=1, aliases=("name", "q")),
         _top(10)),
    ),
    ToolDefinition("getPersonById", "people", "Get one person", ("GET",), "/people/{id}", (_id("id", "Person"),)),
    ToolDefinition("getProfile", "people", "Profile of the signed-in user", ("GET",), "/profile", ()),
    # ----- search -----
    ToolDefinition(
        "search", "search", "Unified search across mail, events, files and people", ("GET", "POST"), "/search",
        (_p("query", "string", "Search text (KQL supported)", required=True, min_length=1, aliases=("q",)),
         _p("entityTypes", "array", "message, event, driveItem, person, chatMessage, site, list, listItem"),
         _top(25)),
    ),
    # ----- teams -----
    ToolDefinition("listChats", "teams", "List the user's chats", ("GET",), "/teams/chats", (_top(),)),
    ToolDefinition(
        "getChatMessages", "teams", "Messages in a chat", ("GET",), "/teams/chats/{chatId}/messages",
        (_id("chatId", "Chat"), _top()),
    ),
    ToolDefinition(
        "sendChatMessage", "teams", "Send a chat message", ("POST",), "/teams/chats/{chatId}/messages",
        (_id("chatId", "Chat"), _CONTENT, _CONTENT_TYPE),
    ),
    ToolDefinition(
        "listOnlineMeetings", "teams", "List online meetings", ("GET",), "/teams/meetings",
        (_top(),),
    ),
    ToolDefinition(
        "createOnlineMeeting", "teams", "Create an online meeting", ("POST",), "/teams/meetings",
        (_p("subject", "string", "Meeting subject", required=True, min_length=1),
         _p("startDateTime", "string", "Start (ISO 8601)", required=True),
         _p("endDateTime", "string", "End (ISO 8601)", required=True)),
    ),
    ToolDefinition(
        "getMeetingByJoinUrl", "teams", "Find an online meeting by its join URL", ("GET",),
        "/teams/meetings/findByJoinUrl",
        (_p("joinUrl", "string", "Meeting join URL", required=True, min_length=1),),
    ),
    ToolDefinition(
        "getOnlineMeeting", "teams", "Get an online meeting", ("GET",), "/teams/meetings/{meetingId}",
        (_id("meetingId", "Meeting"),),
    ),
    ToolDefinition(
        "getMeetingTranscripts", "teams", "List transcripts of a meeting", ("GET",),
        "/teams/meetings/{meetingId}/transcripts",
        (_id("meetingId", "Meeting"),),
    ),
    ToolDefinition(
        "getMeetingTranscriptContent", "teams", "Transcript text (WebVTT)", ("GET",),
        "/teams/meetings/{meetingId}/transcripts/{transcriptId}",
        (_id("meetingId", "Meeting"), _id("transcriptId", "Transcript")),
    ),
    ToolDefinition("listJoinedTeams", "teams", "Teams the user belongs to", ("GET",), "/teams", ()),
    ToolDefinition(
        "listTeamChannels", "teams", "Channels of a team", ("GET",), "/teams/{teamId}/channels",
        (_id("teamId", "Team"),),
    ),
    ToolDefinition(
        "getChannelMessages", "teams", "Messages in a channel", ("GET",),
        "/teams/{teamId}/channels/{channelId}/messages",
        (_id("teamId", "Team"), _id("channelId", "Channel"), _top()),
    ),
    ToolDefinition(
        "sendChannelMessage", "teams", "Post to a channel", ("POST",), "/teams/{teamId}/channels/{channelId}/messages",
        (_id("teamId", "Team"), _id("channelId", "Channel"), _CONTENT, _CONTENT_TYPE),
    ),
    ToolDefinition(
        "replyToMessage", "teams", "Reply to a channel message", ("POST",),
        "/teams/{teamId}/channels/{channelId}/messages/{messageId}/replies",
        (_id("teamId", "Team"), _id("channelId", "Channel"), _id("messageId", "Message"), _CONTENT, _CONTENT_TYPE),
    ),
    # ----- todo -----
    ToolDefinition("listTaskLists", "todo", "List To Do task lists", ("GET",), "/todo/lists", (_top(),)),
    ToolDefinition(
        "createTaskList", "todo", "Create a task list", ("POST",), "/todo/lists",
        (_p("displayName", "string", "List name", required=True, min_length=1),),
    ),
    ToolDefinition("getTaskList", "todo", "Get a task list", ("GET",), "/todo/lists/{listId}", (_id("listId", "List"),)),
    ToolDefinition(
        "updateTaskList", "todo", "Rename a task list", ("PATCH",), "/todo/lists/{listId}",
        (_id("listId", "List"), _p("displayName", "string", "New name", required=True, min_length=1)),
    ),
    ToolDefinition(
        "deleteTaskList", "todo", "Delete a task list", ("DELETE",), "/todo/lists/{listId}", (_id("listId", "List"),),
    ),
    ToolDefinition(
        "listTasks", "todo", "Tasks in a list", ("GET",), "/todo/lists/{listId}/tasks",
        (_id("listId", "List"), _top(),
         _p("status", "string", "Only tasks with this status",
            enum=("notStarted", "inProgress", "completed", "waitingOnOthers", "deferred"))),
    ),
    ToolDefinition(
        "createTask", "todo", "Create a task", ("POST",), "/todo/lists/{listId}/tasks",
        (_id("listId", "List"), _p("title", "string", "Task title", required=True, min_length=1), *_TASK_FIELDS),
    ),
    ToolDefinition(
        "getTask", "todo", "Get a task", ("GET",), "/todo/lists/{listId}/tasks/{taskId}",
        (_id("listId", "List"), _id("taskId", "Task")),
    ),
    ToolDefinition(
        "updateTask", "todo", "Update a task", ("PATCH",), "/todo/lists/{listId}/tasks/{taskId}",
        (_id("listId", "List"), _id("taskId", "Task"), _p("title", "string", "Task title"), *_TASK_FIELDS,
         _p("status", "string", "Task status",
            enum=("notStarted", "inProgress", "completed", "waitingOnOthers", "deferred"))),
    ),
    ToolDefinition(
        "deleteTask", "todo", "Delete a task", ("DELETE",), "/todo/lists/{listId}/tasks/{taskId}",
        (_id("listId", "List"), _id("taskId", "Task")),
    ),
    ToolDefinition(
        "completeTask", "todo", "Mark a task completed", ("POST",), "/todo/lists/{listId}/tasks/{taskId}/complete",
        (_id("listId", "List"), _id("taskId", "Task")),
    ),
    # ----- contacts -----
    ToolDefinition("listContacts", "contacts", "List personal contacts", ("GET",), "/contacts", (_top(50),)),
    ToolDefinition(
        "searchContacts", "contacts", "Search personal contacts", ("GET",), "/contacts/search",
        (_p("query", "string", "Search text", required=True, min_length=1, aliases=("q",)), _top()),
    ),
    ToolDefinition(
        "createContact", "contacts", "Create a contact", ("POST",), "/contacts", _CONTACT_FIELDS, success_status=201,
    ),
    ToolDefinition(
        "getContact", "contacts", "Get a contact", ("GET",), "/contacts/{contactId}", (_id("contactId", "Contact"),),
    ),
    ToolDefinition(
        "updateContact", "contacts", "Update a contact", ("PATCH",), "/contacts/{contactId}",
        (_id("contactId", "Contact"), *_CONTACT_FIELDS),
    ),
    ToolDefinition(
        "deleteContact", "contacts", "Delete a contact", ("DELETE",), "/contacts/{contactId}",
        (_id("contactId", "Contact"),),
    ),
    # ----- groups -----
    ToolDefinition(
        "listGroups", "groups", "List groups in the organization", ("GET",), "/groups",
        (_top(50), _p("filter", "string", "OData filter expression")),
    ),
    ToolDefinition("listMyGroups", "groups", "Groups the user is a member of", ("GET",), "/groups/my", (_top(50),)),
    ToolDefinition("getGroup", "groups", "Get a group", ("GET",), "/groups/{groupId}", (_id("groupId", "Group"),)),
    ToolDefinition(
        "listGroupMembers", "groups", "Members of a group", ("GET",), "/groups/{groupId}/members",
        (_id("groupId", "Group"), _top(50)),
    ),
)

_BY_NAME: dict[str, ToolDefinition] = {tool.name: tool for tool in TOOL_CATALOGUE}


def get_tool(name: str) -> ToolDefinition | None:
    """Catalogue entry by canonical name (aliases are resolved elsewhere)."""
    return _BY_NAME.get(name)


def tools_by_module() -> dict[str, list[ToolDefinition]]:
    grouped: dict[str, list[ToolDefinition]] = {}
    for tool in TOOL_CATALOGUE:
        grouped.setdefault(tool.module, []).append(tool)
    return grouped
