"""Scope-to-capability projection.

Maps delegated Graph scopes to the tools they unlock. The available-tool
set for a caller is the union over the scopes in their upstream token;
scopes missing from the map contribute nothing.

The unified `search` tool is unlocked by any read scope whose content it
can search.
"""

from __future__ import annotations

__all__ = [
    "SCOPE_TOOL_MAP",
    "available_tools",
]

from typing import Iterable

_MAIL_READ = ("getInbox", "searchEmails", "getEmailDetails", "getMailAttachments", "search")
_CALENDAR_READ = ("getEvents", "getAvailability", "getCalendars", "getRooms", "search")
_FILES_READ = ("listFiles", "searchFiles", "downloadFile", "getFileMetadata", "getFileContent", "getSharingLinks", "search")
_ONLINE_MEETINGS_READ = ("listOnlineMeetings", "getOnlineMeeting", "getMeetingByJoinUrl")
_TASKS_READ = ("listTaskLists", "getTaskList", "listTasks", "getTask")
_CONTACTS_READ = ("listContacts", "getContact", "searchContacts")

SCOPE_TOOL_MAP: dict[str, frozenset[str]] = {
    # mail
    "Mail.Read": frozenset(_MAIL_READ),
    "Mail.ReadWrite": frozenset(
        _MAIL_READ + ("markAsRead", "flagEmail", "addMailAttachment", "removeMailAttachment")
    ),
    "Mail.Send": frozenset({"sendEmail", "replyToMail"}),
    # calendar
    "Calendars.Read": frozenset(_CALENDAR_READ),
    "Calendars.ReadWrite": frozenset(
        _CALENDAR_READ
        + (
            "createEvent",
            "updateEvent",
            "cancelEvent",
            "acceptEvent",
            "tentativelyAcceptEvent",
            "declineEvent",
            "findMeetingTimes",
            "addAttachment",
            "removeAttachment",
        )
    ),
    # files
    "Files.Read": frozenset(_FILES_READ),
    "Files.ReadWrite": frozenset(
        _FILES_READ
        + ("uploadFile", "createSharingLink", "setFileContent", "updateFileContent", "removeSharingPermission")
    ),
    # people
    "People.Read": frozenset({"findPeople", "getRelevantPeople", "getPersonById", "search"}),
    # teams and chat
    "Chat.Read": frozenset({"listChats", "getChatMessages", "search"}),
    "Chat.ReadWrite": frozenset({"listChats", "getChatMessages", "sendChatMessage", "search"}),
    "OnlineMeetings.Read": frozenset(_ONLINE_MEETINGS_READ),
    "OnlineMeetings.ReadWrite": frozenset(_ONLINE_MEETINGS_READ + ("createOnlineMeeting",)),
    "OnlineMeetingTranscript.Read.All": frozenset({"getMeetingTranscripts", "getMeetingTranscriptContent"}),
    "Team.ReadBasic.All": frozenset({"listJoinedTeams"}),
    "Channel.ReadBasic.All": frozenset({"listTeamChannels", "getChannelMessages"}),
    "ChannelMessage.Send": frozenset({"sendChannelMessage", "replyToMessage"}),
    # tasks
    "Tasks.Read": frozenset(_TASKS_READ),
    "Tasks.ReadWrite": frozenset(
        _TASKS_READ
        + ("createTaskList", "updateTaskList", "deleteTaskList", "createTask", "updateTask", "deleteTask", "completeTask")
    ),
    # contacts
    "Contacts.Read": frozenset(_CONTACTS_READ),
    "Contacts.ReadWrite": frozenset(_CONTACTS_READ + ("createContact", "updateContact", "deleteContact")),
    # groups
    "Group.Read.All": frozenset({"listGroups", "getGroup", "listGroupMembers", "listMyGroups"}),
    # user
    "User.Read": frozenset({"getProfile"}),
}


def available_tools(scopes: Iterable[str]) -> list[str]:
    """Sorted, de-duplicated tool names unlocked by the given scopes."""
    unlocked: set[str] = set()
    for scope in scopes:
        unlocked |= SCOPE_TOOL_MAP.get(scope, frozenset())
    return sorted(unlocked)
