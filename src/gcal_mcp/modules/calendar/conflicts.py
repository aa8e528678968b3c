"""Interval/conflict engine.

Pure functions over already-fetched events. The gateway query that gathers
``existing_events`` is the caller's job; use :func:`conflict_search_window`
to size it so that events starting before the candidate but still running
are included.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from gcal_mcp.modules.calendar.errors import CalendarValidationError
from gcal_mcp.modules.calendar.models import (
    AttendeeConflict,
    CalendarEvent,
    ConflictReport,
    EventStatus,
    TimeSpan,
)

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_BUFFER = timedelta(hours=1)


def spans_overlap(first: TimeSpan, second: TimeSpan) -> bool:
    """Half-open overlap test; touching endpoints are not an overlap."""
    return first.overlaps(second)


def conflict_search_window(
    span: TimeSpan, buffer: timedelta = DEFAULT_SEARCH_BUFFER
) -> tuple[datetime, datetime]:
    """Return the ``(time_min, time_max)`` window to query for conflict candidates."""
    if buffer < timedelta(0):
        raise CalendarValidationError("search buffer must not be negative")
    return span.start, span.end + buffer


def _normalize_emails(emails: Iterable[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for email in emails:
        if not isinstance(email, str):
            continue
        value = email.strip().lower()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def _event_span(event: CalendarEvent) -> TimeSpan | None:
    if event.start is None or event.end is None:
        return None
    start = event.start.as_utc()
    end = event.end.as_utc()
    if end <= start:
        return None
    return TimeSpan(start=start, end=end)


def detect_conflicts(
    candidate_span: TimeSpan,
    candidate_attendees: Iterable[str],
    existing_events: Sequence[CalendarEvent],
    *,
    exclude_event_id: str | None = None,
    check_attendees: bool = True,
) -> ConflictReport | None:
    """Check ``candidate_span`` against ``existing_events``.

    Returns ``None`` both when ``existing_events`` is empty and when nothing
    conflicts; callers must treat the two identically. Otherwise returns a
    report whose ``attendee_conflicts`` are always a subset of the events in
    ``time_conflicts``.
    """
    if candidate_span.end <= candidate_span.start:
        raise CalendarValidationError("end must be after start")
    if not existing_events:
        return None

    attendees = set(_normalize_emails(candidate_attendees))
    time_conflicts: list[CalendarEvent] = []
    attendee_conflicts: list[AttendeeConflict] = []

    for event in existing_events:
        if exclude_event_id is not None and event.event_id == exclude_event_id:
            continue
        if event.status == EventStatus.cancelled:
            continue
        span = _event_span(event)
        if span is None:
            logger.debug("Skipping event %s without a usable span", event.event_id)
            continue
        if not spans_overlap(candidate_span, span):
            continue

        time_conflicts.append(event)
        if check_attendees and attendees:
            shared = [email for email in event.attendee_emails() if email in attendees]
            if shared:
                attendee_conflicts.append(
                    AttendeeConflict(event=event, conflicting_attendees=_normalize_emails(shared))
                )

    if not time_conflicts:
        return None
    return ConflictReport(
        has_conflicts=True,
        time_conflicts=time_conflicts,
        attendee_conflicts=attendee_conflicts,
    )
