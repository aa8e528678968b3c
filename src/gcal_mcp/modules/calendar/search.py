"""Client-side filters for advanced event search.

The provider handles free-text (``q``) and ``updatedMin`` natively; the
filters here cover the criteria it cannot express.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from gcal_mcp.modules.calendar.models import CalendarEvent, EventStatus

DEFAULT_SEARCH_MAX_RESULTS = 100


@dataclass
class SearchFilters:
    location: str | None = None
    attendees: list[str] = field(default_factory=list)
    status: EventStatus | None = None
    created_after: datetime | None = None
    # Only ``True`` narrows the result; ``False`` and ``None`` keep every event.
    has_attachments: bool | None = None
    is_recurring: bool | None = None

    def matches(self, event: CalendarEvent) -> bool:
        if self.location:
            if self.location.lower() not in event.location.lower():
                return False
        if self.attendees:
            wanted = {email.strip().lower() for email in self.attendees if email.strip()}
            if not wanted.intersection(event.attendee_emails()):
                return False
        if self.status is not None and event.status != self.status:
            return False
        if self.created_after is not None:
            if event.created is None or event.created < self.created_after:
                return False
        if self.has_attachments is True and not event.has_attachments:
            return False
        if self.is_recurring is not None:
            recurring = event.is_recurring_master or event.is_recurring_instance
            if recurring != self.is_recurring:
                return False
        return True


@dataclass
class SearchResult:
    events: list[CalendarEvent]
    total_matches: int
    limit_applied: bool


def filter_events(events: Iterable[CalendarEvent], filters: SearchFilters) -> list[CalendarEvent]:
    return [event for event in events if filters.matches(event)]


def search_events(
    events: Sequence[CalendarEvent],
    filters: SearchFilters,
    *,
    max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
) -> SearchResult:
    """Filter ``events`` and cap the result, reporting the pre-cap match count."""
    matched = filter_events(events, filters)
    limit = max(max_results, 0)
    return SearchResult(
        events=matched[:limit],
        total_matches=len(matched),
        limit_applied=len(matched) > limit,
    )
