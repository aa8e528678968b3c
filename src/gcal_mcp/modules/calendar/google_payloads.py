"""Translation between Google Calendar REST payloads and calendar models.

Inbound: ``parse_google_event`` turns an API event resource into a
``CalendarEvent``. Outbound: ``event_to_payload`` and friends build the
camelCase dictionaries returned to tool callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from gcal_mcp.modules.calendar.errors import CalendarApiError, CalendarValidationError
from gcal_mcp.modules.calendar.models import (
    AttendeeInfo,
    AttendeeResponseStatus,
    CalendarEvent,
    ConflictReport,
    DuplicateGroup,
    EventInstant,
    EventStatus,
    format_rfc3339,
)

VALID_SEND_UPDATES = ("all", "externalOnly", "none")


def safe_google_error_details(response: httpx.Response) -> tuple[str, str | None]:
    """Return ``(message, reason)`` from a Google error response, whitespace-normalised."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    reason: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            errors = error_payload.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason_raw = errors[0].get("reason")
                if isinstance(reason_raw, str) and reason_raw.strip():
                    reason = reason_raw.strip()
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200], reason
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200], reason

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200], reason
    return "Request failed without an error payload", reason


def api_error_from_response(response: httpx.Response) -> CalendarApiError:
    message, reason = safe_google_error_details(response)
    return CalendarApiError(status_code=response.status_code, message=message, reason=reason)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return EventInstant.parse({"dateTime": value}).as_utc()
    except CalendarValidationError:
        return None


def _extract_google_attendees(payload: Any) -> list[AttendeeInfo]:
    """Parse a Google attendees array (objects or bare email strings)."""
    if not isinstance(payload, list):
        return []

    attendees: list[AttendeeInfo] = []
    for entry in payload:
        if isinstance(entry, dict):
            email = _normalize_optional_text(entry.get("email"))
            if email is None:
                continue
            response_status = AttendeeResponseStatus.needs_action
            response_status_raw = entry.get("responseStatus")
            if isinstance(response_status_raw, str):
                try:
                    response_status = AttendeeResponseStatus(response_status_raw.strip())
                except ValueError:
                    pass
            attendees.append(
                AttendeeInfo(
                    email=email,
                    display_name=_normalize_optional_text(entry.get("displayName")),
                    response_status=response_status,
                    optional=entry.get("optional") is True,
                    organizer=entry.get("organizer") is True,
                    self_=entry.get("self") is True,
                )
            )
        elif isinstance(entry, str) and entry.strip():
            attendees.append(AttendeeInfo(email=entry.strip()))
    return attendees


def _parse_event_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.confirmed


def _extract_email(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _normalize_optional_text(payload.get("email"))


def _parse_optional_instant(payload: Any) -> EventInstant | None:
    if not isinstance(payload, dict):
        return None
    if not payload.get("dateTime") and not payload.get("date"):
        return None
    return EventInstant.parse(payload)


def parse_google_event(payload: dict[str, Any], *, calendar_id: str) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise CalendarApiError(
            status_code=200,
            message="Google Calendar event payload is missing a non-empty id",
        )

    recurrence_raw = payload.get("recurrence")
    recurrence = (
        [rule for rule in recurrence_raw if isinstance(rule, str) and rule.strip()]
        if isinstance(recurrence_raw, list)
        else None
    )
    attachments = payload.get("attachments")

    return CalendarEvent(
        event_id=event_id,
        calendar_id=calendar_id,
        summary=payload.get("summary") or "",
        description=payload.get("description") or "",
        location=payload.get("location") or "",
        start=_parse_optional_instant(payload.get("start")),
        end=_parse_optional_instant(payload.get("end")),
        status=_parse_event_status(payload.get("status")),
        attendees=_extract_google_attendees(payload.get("attendees")),
        recurrence=recurrence or None,
        recurring_event_id=_normalize_optional_text(payload.get("recurringEventId")),
        original_start=_parse_optional_instant(payload.get("originalStartTime")),
        created=_parse_rfc3339_optional(payload.get("created")),
        updated=_parse_rfc3339_optional(payload.get("updated")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
        organizer=_extract_email(payload.get("organizer")),
        creator=_extract_email(payload.get("creator")),
        has_attachments=isinstance(attachments, list) and len(attachments) > 0,
    )


def attendees_to_google(emails: list[str]) -> list[dict[str, str]]:
    return [
        {"email": email.strip()} for email in emails if isinstance(email, str) and email.strip()
    ]


def normalize_send_updates(value: Any) -> str | None:
    """Return ``value`` when it is a recognised ``sendUpdates`` policy, else ``None``."""
    if isinstance(value, str) and value in VALID_SEND_UPDATES:
        return value
    return None


def _format_optional_datetime(value: datetime | None) -> str | None:
    return format_rfc3339(value) if value is not None else None


def _attendee_to_payload(attendee: AttendeeInfo) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "email": attendee.email,
        "responseStatus": attendee.response_status.value,
    }
    if attendee.display_name is not None:
        payload["displayName"] = attendee.display_name
    if attendee.optional:
        payload["optional"] = True
    if attendee.organizer:
        payload["organizer"] = True
    if attendee.self_:
        payload["self"] = True
    return payload


def event_to_payload(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "calendarId": event.calendar_id,
        "summary": event.summary,
        "description": event.description,
        "start": event.start.to_google() if event.start is not None else None,
        "end": event.end.to_google() if event.end is not None else None,
        "location": event.location,
        "htmlLink": event.html_link,
        "created": _format_optional_datetime(event.created),
        "updated": _format_optional_datetime(event.updated),
        "status": event.status.value,
        "recurrence": event.recurrence,
        "recurringEventId": event.recurring_event_id,
        "originalStartTime": (
            event.original_start.to_google() if event.original_start is not None else None
        ),
        "isRecurringEvent": event.is_recurring_master,
        "isRecurringInstance": event.is_recurring_instance,
        "attendees": [_attendee_to_payload(attendee) for attendee in event.attendees],
        "organizer": event.organizer,
        "hasAttachments": event.has_attachments,
    }


def duplicate_member_to_payload(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "calendarId": event.calendar_id,
        "summary": event.summary,
        "description": event.description,
        "start": event.start.to_google() if event.start is not None else None,
        "end": event.end.to_google() if event.end is not None else None,
        "location": event.location,
        "created": _format_optional_datetime(event.created),
        "creator": event.creator,
        "htmlLink": event.html_link,
    }


def duplicate_group_to_payload(group: DuplicateGroup) -> dict[str, Any]:
    return {"events": [duplicate_member_to_payload(event) for event in group.events]}


def _conflict_entry(event: CalendarEvent, conflict_type: str) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "summary": event.summary,
        "start": event.start.to_google() if event.start is not None else None,
        "end": event.end.to_google() if event.end is not None else None,
        "conflictType": conflict_type,
    }


def conflict_report_to_payload(report: ConflictReport | None) -> dict[str, Any]:
    """Serialise a conflict report; ``None`` becomes the empty, conflict-free shape."""
    if report is None:
        return {
            "hasConflicts": False,
            "timeConflicts": [],
            "attendeeConflicts": [],
            "summary": {"timeConflictsCount": 0, "attendeeConflictsCount": 0},
        }

    attendee_conflicts = []
    for conflict in report.attendee_conflicts:
        entry = _conflict_entry(conflict.event, "attendee_double_booking")
        entry["conflictingAttendees"] = list(conflict.conflicting_attendees)
        attendee_conflicts.append(entry)

    return {
        "hasConflicts": report.has_conflicts,
        "timeConflicts": [
            _conflict_entry(event, "time_overlap") for event in report.time_conflicts
        ],
        "attendeeConflicts": attendee_conflicts,
        "summary": {
            "timeConflictsCount": len(report.time_conflicts),
            "attendeeConflictsCount": len(report.attendee_conflicts),
        },
    }


def calendar_entry_to_payload(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": entry.get("id"),
        "summary": entry.get("summary") or "",
        "description": entry.get("description") or "",
        "primary": entry.get("primary") or False,
        "accessRole": entry.get("accessRole") or "",
        "backgroundColor": entry.get("backgroundColor") or "#000000",
        "foregroundColor": entry.get("foregroundColor") or "#FFFFFF",
        "timeZone": entry.get("timeZone") or "UTC",
        "selected": entry.get("selected") or False,
    }
