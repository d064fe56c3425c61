"""Calendar tools (events, responses, scheduling)."""

from __future__ import annotations

__all__ = [
    "CalendarModule",
]

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from ms365_gateway.exceptions import InvalidRequestError
from ms365_gateway.tools.modules.base import GraphModule, email_address, require_token
from ms365_gateway.tools.registry import ToolContext, ToolHandler

DEFAULT_RANGE_DAYS = 7


def _parse_instant(value: str, field: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidRequestError(
            f"{field} must be an ISO 8601 date or datetime",
            details=[{"field": field, "message": "must be an ISO 8601 date or datetime"}],
        ) from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _graph_time(value: str, time_zone: str) -> dict[str, str]:
    return {"dateTime": value, "timeZone": time_zone}


def _attendees(addresses: list[str] | None) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": a}, "type": "required"} for a in addresses or [] if a]


def _event(event: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": event.get("id"),
        "subject": event.get("subject"),
        "start": event.get("start"),
        "end": event.get("end"),
        "location": (event.get("location") or {}).get("displayName"),
        "organizer": email_address(event.get("organizer")),
        "attendees": [
            {**(email_address(a) or {}), "response": (a.get("status") or {}).get("response")}
            for a in event.get("attendees") or []
        ],
        "isAllDay": event.get("isAllDay"),
        "isCancelled": event.get("isCancelled"),
        "isOnlineMeeting": event.get("isOnlineMeeting"),
        "onlineMeetingUrl": (event.get("onlineMeeting") or {}).get("joinUrl"),
        "webLink": event.get("webLink"),
    }


def _matches(event: Mapping[str, Any], args: Mapping[str, Any]) -> bool:
    # Graph rejects most organizer/attendee $filter expressions, so filter locally
    subject = args.get("subject")
    if subject and subject.lower() not in (event.get("subject") or "").lower():
        return False
    organizer = args.get("organizer")
    if organizer:
        org = (email_address(event.get("organizer")) or {}).get("email") or ""
        if organizer.lower() not in org.lower():
            return False
    attendee = args.get("attendee")
    if attendee:
        addresses = [((email_address(a) or {}).get("email") or "").lower() for a in event.get("attendees") or []]
        if not any(attendee.lower() in addr for addr in addresses):
            return False
    return True


class CalendarModule(GraphModule):
    name = "calendar"

    def handlers(self) -> Mapping[str, ToolHandler]:
        return {
            "getEvents": self.get_events,
            "createEvent": self.create_event,
            "updateEvent": self.update_event,
            "acceptEvent": self.accept_event,
            "tentativelyAcceptEvent": self.tentatively_accept_event,
            "declineEvent": self.decline_event,
            "cancelEvent": self.cancel_event,
            "getAvailability": self.get_availability,
            "findMeetingTimes": self.find_meeting_times,
            "getRooms": self.get_rooms,
            "getCalendars": self.get_calendars,
            "addAttachment": self.add_attachment,
            "removeAttachment": self.remove_attachment,
        }

    async def get_events(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        start = _parse_instant(args["start"], "start") if args.get("start") else datetime.now(timezone.utc)
        end = _parse_instant(args["end"], "end") if args.get("end") else start + timedelta(days=DEFAULT_RANGE_DAYS)
        if end <= start:
            raise InvalidRequestError(
                "end must be after start", details=[{"field": "end", "message": "must be after start"}]
            )
        events = await self._graph.get_collection(
            "/me/calendarView",
            require_token(args),
            params={
                "startDateTime": start.isoformat(),
                "endDateTime": end.isoformat(),
                "$top": args.get("top", 50),
                "$orderby": "start/dateTime",
            },
        )
        return [_event(e) for e in events if _matches(e, args)]

    def _event_body(self, args: Mapping[str, Any]) -> dict[str, Any]:
        time_zone = args.get("timeZone", "UTC")
        body: dict[str, Any] = {}
        if args.get("subject") is not None:
            body["subject"] = args["subject"]
        if args.get("start"):
            body["start"] = _graph_time(args["start"], time_zone)
        if args.get("end"):
            body["end"] = _graph_time(args["end"], time_zone)
        if args.get("attendees") is not None:
            body["attendees"] = _attendees(args["attendees"])
        if args.get("body") is not None:
            body["body"] = {"contentType": "HTML", "content": args["body"]}
        if args.get("location") is not None:
            body["location"] = {"displayName": args["location"]}
        return body

    async def create_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        if _parse_instant(args["end"], "end") <= _parse_instant(args["start"], "start"):
            raise InvalidRequestError(
                "end must be after start", details=[{"field": "end", "message": "must be after start"}]
            )
        body = self._event_body(args)
        if args.get("isOnlineMeeting"):
            body["isOnlineMeeting"] = True
            body["onlineMeetingProvider"] = "teamsForBusiness"
        created = await self._graph.post("/me/events", require_token(args), body)
        return _event(created or {})

    async def update_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        body = self._event_body(args)
        if not body:
            raise InvalidRequestError(
                "Nothing to update", details=[{"field": "subject", "message": "provide at least one field to change"}]
            )
        updated = await self._graph.patch(f"/me/events/{args['id']}", require_token(args), body)
        return _event(updated or {"id": args["id"]})

    async def _respond(self, args: dict[str, Any], action: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"sendResponse": args.get("sendResponse", True)}
        if args.get("comment"):
            payload["comment"] = args["comment"]
        await self._graph.post(f"/me/events/{args['id']}/{action}", require_token(args), payload)
        return {"success": True, "id": args["id"], "response": action}

    async def accept_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return await self._respond(args, "accept")

    async def tentatively_accept_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return await self._respond(args, "tentativelyAccept")

    async def decline_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return await self._respond(args, "decline")

    async def cancel_event(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = {"comment": args["comment"]} if args.get("comment") else {}
        await self._graph.post(f"/me/events/{args['id']}/cancel", require_token(args), payload)
        return {"success": True, "id": args["id"], "cancelled": True}

    async def get_availability(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        time_zone = args.get("timeZone", "UTC")
        data = await self._graph.post(
            "/me/calendar/getSchedule",
            require_token(args),
            {
                "schedules": args["users"],
                "startTime": _graph_time(args["start"], time_zone),
                "endTime": _graph_time(args["end"], time_zone),
                "availabilityViewInterval": args.get("interval", 30),
            },
        )
        schedules = (data or {}).get("value") or []
        return [
            {
                "user": s.get("scheduleId"),
                "availabilityView": s.get("availabilityView"),
                "busy": [
                    {"start": item.get("start"), "end": item.get("end"), "status": item.get("status")}
                    for item in s.get("scheduleItems") or []
                ],
                "error": (s.get("error") or {}).get("message"),
            }
            for s in schedules
        ]

    async def find_meeting_times(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "attendees": _attendees(args["attendees"]),
            "meetingDuration": f"PT{args.get('duration', 30)}M",
            "maxCandidates": args.get("maxCandidates", 10),
        }
        if args.get("start") and args.get("end"):
            time_zone = args.get("timeZone", "UTC")
            payload["timeConstraint"] = {
                "timeslots": [{"start": _graph_time(args["start"], time_zone), "end": _graph_time(args["end"], time_zone)}]
            }
        data = await self._graph.post("/me/findMeetingTimes", require_token(args), payload) or {}
        return {
            "suggestions": [
                {
                    "start": (s.get("meetingTimeSlot") or {}).get("start"),
                    "end": (s.get("meetingTimeSlot") or {}).get("end"),
                    "confidence": s.get("confidence"),
                    "organizerAvailability": s.get("organizerAvailability"),
                }
                for s in data.get("meetingTimeSuggestions") or []
            ],
            "emptySuggestionsReason": data.get("emptySuggestionsReason") or None,
        }

    async def get_rooms(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        rooms = await self._graph.get_collection(
            "/places/microsoft.graph.room", require_token(args), params={"$top": args.get("top", 50)}
        )
        return [
            {
                "id": r.get("id"),
                "name": r.get("displayName"),
                "email": r.get("emailAddress"),
                "capacity": r.get("capacity"),
                "building": r.get("building"),
            }
            for r in rooms
        ]

    async def get_calendars(self, args: dict[str, Any], context: ToolContext) -> list[dict[str, Any]]:
        calendars = await self._graph.get_collection("/me/calendars", require_token(args))
        return [
            {
                "id": c.get("id"),
                "name": c.get("name"),
                "owner": (c.get("owner") or {}).get("address"),
                "canEdit": c.get("canEdit"),
                "isDefault": c.get("isDefaultCalendar"),
            }
            for c in calendars
        ]

    async def add_attachment(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        created = await self._graph.post(
            f"/me/events/{args['id']}/attachments",
            require_token(args),
            {
                "@odata.type": "#microsoft.graph.fileAttachment",
                "name": args["name"],
                "contentBytes": args["contentBytes"],
                "contentType": args.get("contentType") or "application/octet-stream",
                "isInline": args.get("isInline", False),
            },
        ) or {}
        return {"id": created.get("id"), "name": created.get("name"), "size": created.get("size")}

    async def remove_attachment(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        await self._graph.delete(f"/me/events/{args['id']}/attachments/{args['attachmentId']}", require_token(args))
        return {"success": True, "id": args["id"], "attachmentId": args["attachmentId"]}
