"""Calendar action implementations.

Every action is ``async def action(session, params) -> result`` where
``params`` is the camelCase argument mapping received from the tool caller.
Actions fetch from the provider, run the engines, and return JSON-ready
payloads. They raise ``CalendarError`` subclasses; mapping those onto the
user-facing error envelope is the dispatcher's job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from gcal_mcp.core.state import StateStore
from gcal_mcp.modules.calendar.conflicts import (
    DEFAULT_SEARCH_BUFFER,
    conflict_search_window,
    detect_conflicts,
)
from gcal_mcp.modules.calendar.duplicates import (
    DEFAULT_DUPLICATE_THRESHOLD,
    find_duplicate_groups,
    validate_threshold,
)
from gcal_mcp.modules.calendar.errors import (
    CalendarNotFoundError,
    CalendarValidationError,
    SchedulingConflictError,
)
from gcal_mcp.modules.calendar.google_payloads import (
    attendees_to_google,
    calendar_entry_to_payload,
    conflict_report_to_payload,
    duplicate_group_to_payload,
    event_to_payload,
    normalize_send_updates,
)
from gcal_mcp.modules.calendar.models import (
    CalendarEvent,
    ConflictReport,
    EventInstant,
    EventStatus,
    TimeSpan,
    format_rfc3339,
)
from gcal_mcp.modules.calendar.provider import MAX_PAGE_SIZE, CalendarProvider, EventListQuery
from gcal_mcp.modules.calendar.recurrence import (
    INSTANCE_PAGE_SIZE,
    ensure_recurring,
    find_instance,
)
from gcal_mcp.modules.calendar.search import (
    DEFAULT_SEARCH_MAX_RESULTS,
    SearchFilters,
    search_events,
)

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_LIST_MAX_RESULTS = 10
DEFAULT_DUPLICATE_WINDOW = timedelta(days=30)
CONFLICT_CANDIDATE_LIMIT = 250
UPDATE_FIELDS = ("summary", "description", "start", "end", "location", "recurrence", "attendees")
CLEARABLE_FIELDS = ("recurrence", "attendees")
EXCEPTION_FIELDS = ("summary", "description", "location")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CalendarSession:
    """Per-server context handed to every action.

    Holds the gateway, the state store and the defaults that used to live
    in module-level globals.
    """

    provider: CalendarProvider
    store: StateStore
    calendar_id: str = DEFAULT_CALENDAR_ID
    timezone: str = "UTC"
    conflict_buffer: timedelta = DEFAULT_SEARCH_BUFFER
    duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD
    clock: Callable[[], datetime] = field(default=_utcnow)

    def now(self) -> datetime:
        return self.clock()

    def resolve_calendar_id(self, params: Mapping[str, Any]) -> str:
        value = params.get("calendarId")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return self.calendar_id


# ---------------------------------------------------------------------------
# Parameter coercion
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any, field_name: str) -> datetime | None:
    """Parse an optional ISO 8601 string (date or date-time) to aware UTC."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return EventInstant.parse(value).as_utc()
    except CalendarValidationError as exc:
        raise CalendarValidationError(
            f"Invalid {field_name} format. Use ISO 8601 format."
        ) from exc


def parse_event_time(value: Any, field_name: str) -> EventInstant:
    """Parse an event boundary object (``{"dateTime": ...}`` or ``{"date": ...}``)."""
    if not isinstance(value, Mapping):
        raise CalendarValidationError(
            f"Invalid {field_name} time format. Use ISO 8601 format in a dateTime or date property."
        )
    try:
        instant = EventInstant.parse(dict(value))
    except CalendarValidationError as exc:
        raise CalendarValidationError(
            f"Invalid {field_name} time format. Use ISO 8601 format in a dateTime or date property."
        ) from exc
    return instant


def coerce_threshold(value: Any, default: float) -> float:
    """Accept numbers and numeric strings; anything else fails threshold validation."""
    if value is None:
        return validate_threshold(default)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError as exc:
            raise CalendarValidationError(
                "similarityThreshold must be a number between 0 and 1"
            ) from exc
    return validate_threshold(value)


def coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def coerce_email_list(value: Any, field_name: str = "attendees") -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise CalendarValidationError(f"{field_name} must be an array of email addresses")
    return [email.strip() for email in value if isinstance(email, str) and email.strip()]


def _flag(params: Mapping[str, Any], key: str, default: bool) -> bool:
    value = params.get(key)
    if isinstance(value, bool):
        return value
    return default


def _require_event_id(params: Mapping[str, Any], key: str = "eventId") -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise CalendarValidationError(f"Missing required parameters: {key}")
    return value.strip()


def _instant_with_default_zone(instant: EventInstant, timezone: str) -> EventInstant:
    if (
        instant.date_time_value is not None
        and instant.date_time_value.tzinfo is None
        and instant.time_zone is None
    ):
        return instant.model_copy(update={"time_zone": timezone})
    return instant


def _event_time(params: Mapping[str, Any], name: str, timezone: str) -> EventInstant:
    return _instant_with_default_zone(parse_event_time(params.get(name), name), timezone)


async def _get_existing_event(
    session: CalendarSession, calendar_id: str, event_id: str
) -> CalendarEvent:
    event = await session.provider.get_event(calendar_id=calendar_id, event_id=event_id)
    if event is None:
        raise CalendarNotFoundError(
            f"Event not found with ID: {event_id} in calendar: {calendar_id}"
        )
    return event


async def check_conflicts(
    session: CalendarSession,
    *,
    calendar_id: str,
    span: TimeSpan,
    attendees: list[str],
    exclude_event_id: str | None = None,
    check_attendees: bool = True,
) -> ConflictReport | None:
    """Fetch candidates around ``span`` and run the conflict engine."""
    time_min, time_max = conflict_search_window(span, session.conflict_buffer)
    page = await session.provider.list_events(
        EventListQuery(
            calendar_id=calendar_id,
            time_min=time_min,
            time_max=time_max,
            max_results=CONFLICT_CANDIDATE_LIMIT,
            single_events=True,
            order_by="startTime",
        )
    )
    return detect_conflicts(
        span,
        attendees,
        page.events,
        exclude_event_id=exclude_event_id,
        check_attendees=check_attendees,
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


async def list_calendars(session: CalendarSession, params: Mapping[str, Any]) -> list[dict]:
    entries = await session.provider.list_calendars()
    return [calendar_entry_to_payload(entry) for entry in entries]


async def list_events(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    sync_token = params.get("syncToken") or None
    time_min = parse_timestamp(params.get("timeMin"), "timeMin")
    if time_min is None and sync_token is None:
        time_min = session.now()

    query = EventListQuery(
        calendar_id=calendar_id,
        time_min=time_min,
        time_max=parse_timestamp(params.get("timeMax"), "timeMax"),
        max_results=coerce_int(params.get("maxResults"), DEFAULT_LIST_MAX_RESULTS),
        q=params.get("q") or None,
        order_by=params.get("orderBy") or "startTime",
        page_token=params.get("pageToken") or None,
        sync_token=sync_token,
        time_zone=params.get("timeZone") or None,
        show_deleted=params.get("showDeleted") is True,
        show_hidden_invitations=params.get("showHiddenInvitations") is True,
        single_events=params.get("singleEvents") is not False,
        updated_min=parse_timestamp(params.get("updatedMin"), "updatedMin"),
        ical_uid=params.get("iCalUID") or None,
    )
    page = await session.provider.list_events(query)
    return {
        "events": [event_to_payload(event) for event in page.events],
        "nextPageToken": page.next_page_token,
        "syncToken": page.next_sync_token,
    }


async def list_recurring_instances(
    session: CalendarSession, params: Mapping[str, Any]
) -> list[dict[str, Any]]:
    calendar_id = session.resolve_calendar_id(params)
    event_id = _require_event_id(params)
    master = await _get_existing_event(session, calendar_id, event_id)

    if not master.is_recurring_master:
        payload = event_to_payload(master)
        payload["recurrence"] = None
        payload["message"] = "This is not a recurring event"
        return [payload]

    instances = await session.provider.list_instances(
        calendar_id=calendar_id,
        event_id=event_id,
        max_results=coerce_int(params.get("maxResults"), DEFAULT_LIST_MAX_RESULTS),
        time_min=parse_timestamp(params.get("timeMin"), "timeMin"),
        time_max=parse_timestamp(params.get("timeMax"), "timeMax"),
    )
    return [event_to_payload(instance) for instance in instances]


async def create_event(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    summary = params.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise CalendarValidationError("summary must be a non-empty string")

    start = _event_time(params, "start", session.timezone)
    end = _event_time(params, "end", session.timezone)
    span = TimeSpan.from_instants(start, end)
    attendees = coerce_email_list(params.get("attendees"))

    if _flag(params, "checkConflicts", True):
        report = await check_conflicts(
            session, calendar_id=calendar_id, span=span, attendees=attendees
        )
        if report is not None:
            if not _flag(params, "allowConflicts", False):
                raise SchedulingConflictError(report)
            logger.info(
                "Creating event despite %d conflict(s) on %s",
                len(report.time_conflicts),
                calendar_id,
            )

    body: dict[str, Any] = {
        "summary": summary,
        "description": params.get("description") or "",
        "start": start.to_google(),
        "end": end.to_google(),
        "location": params.get("location") or "",
    }
    recurrence = params.get("recurrence")
    if isinstance(recurrence, list):
        body["recurrence"] = [rule for rule in recurrence if isinstance(rule, str)]
    if attendees:
        body["attendees"] = attendees_to_google(attendees)
    reminders = params.get("reminders")
    if isinstance(reminders, Mapping):
        body["reminders"] = dict(reminders)

    created = await session.provider.insert_event(
        calendar_id=calendar_id,
        body=body,
        send_updates=normalize_send_updates(params.get("sendUpdates")),
    )
    logger.info("Created event %s on %s", created.event_id, calendar_id)
    return {
        "id": created.event_id,
        "calendarId": calendar_id,
        "htmlLink": created.html_link,
        "status": created.status.value,
        "created": format_rfc3339(created.created) if created.created else None,
        "recurrence": created.recurrence,
        "recurringEventId": created.recurring_event_id,
    }


async def get_event(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    event = await _get_existing_event(session, calendar_id, _require_event_id(params))
    return event_to_payload(event)


def has_update_fields(params: Mapping[str, Any]) -> bool:
    if any(params.get(name) for name in UPDATE_FIELDS):
        return True
    # An explicit null clears recurrence or attendees.
    return any(name in params and params[name] is None for name in CLEARABLE_FIELDS)


async def update_event(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    event_id = _require_event_id(params)
    if not has_update_fields(params):
        raise CalendarValidationError("At least one field to update must be provided")

    existing = await _get_existing_event(session, calendar_id, event_id)

    body: dict[str, Any] = {}
    for name in ("summary", "description", "location"):
        if name in params and params[name] is not None:
            body[name] = params[name]

    start = existing.start
    end = existing.end
    if params.get("start") is not None:
        start = _event_time(params, "start", session.timezone)
        body["start"] = start.to_google()
    if params.get("end") is not None:
        end = _event_time(params, "end", session.timezone)
        body["end"] = end.to_google()

    if "recurrence" in params:
        recurrence = params["recurrence"]
        if recurrence is None:
            body["recurrence"] = []
        elif isinstance(recurrence, list):
            body["recurrence"] = [rule for rule in recurrence if isinstance(rule, str)]

    attendees = existing.attendee_emails()
    if "attendees" in params:
        if params["attendees"] is None:
            attendees = []
            body["attendees"] = []
        else:
            attendees = coerce_email_list(params["attendees"])
            body["attendees"] = attendees_to_google(attendees)

    time_changed = "start" in body or "end" in body
    if time_changed and start is not None and end is not None:
        span = TimeSpan.from_instants(start, end)
        if _flag(params, "checkConflicts", True):
            report = await check_conflicts(
                session,
                calendar_id=calendar_id,
                span=span,
                attendees=attendees,
                exclude_event_id=event_id,
            )
            if report is not None and not _flag(params, "allowConflicts", False):
                raise SchedulingConflictError(report)

    updated = await session.provider.update_event(
        calendar_id=calendar_id,
        event_id=event_id,
        body=body,
        send_updates=normalize_send_updates(params.get("sendUpdates")),
    )
    logger.info("Updated event %s on %s", event_id, calendar_id)
    return event_to_payload(updated)


async def delete_event(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    event_id = _require_event_id(params)
    existing = await _get_existing_event(session, calendar_id, event_id)

    await session.provider.delete_event(
        calendar_id=calendar_id,
        event_id=event_id,
        send_updates=normalize_send_updates(params.get("sendUpdates")),
    )
    logger.info("Deleted event %s on %s", event_id, calendar_id)
    return {
        "eventId": event_id,
        "calendarId": calendar_id,
        "deleted": True,
        "wasRecurring": existing.is_recurring_master or existing.is_recurring_instance,
        "timestamp": format_rfc3339(session.now()),
    }


async def find_duplicates(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    threshold = coerce_threshold(params.get("similarityThreshold"), session.duplicate_threshold)

    now = session.now()
    time_min = parse_timestamp(params.get("timeMin"), "timeMin") or now
    time_max = parse_timestamp(params.get("timeMax"), "timeMax") or now + DEFAULT_DUPLICATE_WINDOW

    page = await session.provider.list_events(
        EventListQuery(
            calendar_id=calendar_id,
            time_min=time_min,
            time_max=time_max,
            max_results=MAX_PAGE_SIZE,
            single_events=True,
            order_by="startTime",
        )
    )
    if not page.events:
        return {
            "duplicateGroups": [],
            "message": "No events found in the specified time range",
            "calendarId": calendar_id,
        }

    groups = find_duplicate_groups(page.events, threshold)
    return {
        "duplicateGroups": [duplicate_group_to_payload(group) for group in groups],
        "count": len(groups),
        "calendarId": calendar_id,
        "timeRange": {"from": format_rfc3339(time_min), "to": format_rfc3339(time_max)},
    }


def _build_search_filters(params: Mapping[str, Any]) -> SearchFilters:
    status: EventStatus | None = None
    status_raw = params.get("status")
    if isinstance(status_raw, str):
        try:
            status = EventStatus(status_raw)
        except ValueError:
            # Unknown statuses do not narrow the result.
            status = None

    has_attachments = params.get("hasAttachments")
    is_recurring = params.get("isRecurring")
    return SearchFilters(
        location=params.get("location") or None,
        attendees=coerce_email_list(params.get("attendees")),
        status=status,
        created_after=parse_timestamp(params.get("createdAfter"), "createdAfter"),
        has_attachments=has_attachments if isinstance(has_attachments, bool) else None,
        is_recurring=is_recurring if isinstance(is_recurring, bool) else None,
    )


async def advanced_search_events(
    session: CalendarSession, params: Mapping[str, Any]
) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    time_range = params.get("timeRange")
    if time_range is not None and not isinstance(time_range, Mapping):
        raise CalendarValidationError(
            "timeRange must be an object with start and/or end properties"
        )

    if time_range:
        time_min = parse_timestamp(time_range.get("start"), "timeRange.start")
        time_max = parse_timestamp(time_range.get("end"), "timeRange.end")
    else:
        time_min = session.now()
        time_max = None

    filters = _build_search_filters(params)
    page = await session.provider.list_events(
        EventListQuery(
            calendar_id=calendar_id,
            time_min=time_min,
            time_max=time_max,
            max_results=MAX_PAGE_SIZE,
            q=params.get("textSearch") or None,
            updated_min=parse_timestamp(params.get("updatedAfter"), "updatedAfter"),
            single_events=True,
            order_by="startTime",
        )
    )
    result = search_events(
        page.events,
        filters,
        max_results=coerce_int(params.get("maxResults"), DEFAULT_SEARCH_MAX_RESULTS),
    )
    return {
        "events": [event_to_payload(event) for event in result.events],
        "totalMatches": result.total_matches,
        "limitApplied": result.limit_applied,
    }


async def detect_conflicts_action(
    session: CalendarSession, params: Mapping[str, Any]
) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    start = _event_time(params, "start", session.timezone)
    end = _event_time(params, "end", session.timezone)
    span = TimeSpan.from_instants(start, end)
    exclude = params.get("eventId")

    report = await check_conflicts(
        session,
        calendar_id=calendar_id,
        span=span,
        attendees=coerce_email_list(params.get("attendees")),
        exclude_event_id=exclude if isinstance(exclude, str) and exclude else None,
        check_attendees=_flag(params, "checkAttendees", True),
    )
    return conflict_report_to_payload(report)


async def _resolve_instance(
    session: CalendarSession, calendar_id: str, recurring_event_id: str, original_start: Any
) -> CalendarEvent:
    instances = await session.provider.list_instances(
        calendar_id=calendar_id,
        event_id=recurring_event_id,
        max_results=INSTANCE_PAGE_SIZE,
    )
    return find_instance(instances, original_start)


async def create_event_exception(
    session: CalendarSession, params: Mapping[str, Any]
) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    recurring_event_id = _require_event_id(params, "recurringEventId")
    original_start = params.get("originalStartTime")

    master = await _get_existing_event(session, calendar_id, recurring_event_id)
    ensure_recurring(master)
    instance = await _resolve_instance(session, calendar_id, recurring_event_id, original_start)

    body: dict[str, Any] = {}
    for name in EXCEPTION_FIELDS:
        if params.get(name) is not None:
            body[name] = params[name]
    if params.get("start") is not None:
        body["start"] = _event_time(params, "start", session.timezone).to_google()
    if params.get("end") is not None:
        body["end"] = _event_time(params, "end", session.timezone).to_google()
    if params.get("attendees") is not None:
        body["attendees"] = attendees_to_google(coerce_email_list(params["attendees"]))
    if isinstance(params.get("reminders"), Mapping):
        body["reminders"] = dict(params["reminders"])

    updated = await session.provider.update_event(
        calendar_id=calendar_id,
        event_id=instance.event_id,
        body=body,
        send_updates=normalize_send_updates(params.get("sendUpdates")),
    )
    logger.info(
        "Created exception %s for recurring event %s", instance.event_id, recurring_event_id
    )
    payload = event_to_payload(updated)
    return {
        "id": payload["id"],
        "recurringEventId": updated.recurring_event_id or recurring_event_id,
        "calendarId": calendar_id,
        "summary": payload["summary"],
        "description": payload["description"],
        "start": payload["start"],
        "end": payload["end"],
        "location": payload["location"],
        "htmlLink": payload["htmlLink"],
        "updated": payload["updated"],
        "status": payload["status"],
        "originalStartTime": payload["originalStartTime"],
        "isRecurringException": True,
    }


async def delete_event_instance(
    session: CalendarSession, params: Mapping[str, Any]
) -> dict[str, Any]:
    calendar_id = session.resolve_calendar_id(params)
    recurring_event_id = _require_event_id(params, "recurringEventId")
    original_start = params.get("originalStartTime")

    instance = await _resolve_instance(session, calendar_id, recurring_event_id, original_start)
    await session.provider.delete_event(
        calendar_id=calendar_id,
        event_id=instance.event_id,
        send_updates=normalize_send_updates(params.get("sendUpdates")),
    )
    logger.info(
        "Deleted instance %s of recurring event %s", instance.event_id, recurring_event_id
    )
    return {
        "eventId": instance.event_id,
        "recurringEventId": recurring_event_id,
        "calendarId": calendar_id,
        "deleted": True,
        "originalStartTime": original_start,
        "timestamp": format_rfc3339(session.now()),
    }
