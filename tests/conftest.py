"""Shared fixtures: in-memory state, a recording provider double and a fixed-clock session."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from gcal_mcp.core.state import InMemoryStateStore
from gcal_mcp.modules.calendar.actions import CalendarSession
from gcal_mcp.modules.calendar.models import CalendarEvent, EventInstant
from gcal_mcp.modules.calendar.provider import CalendarProvider, EventListQuery, EventPage

FIXED_NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def make_event(
    event_id: str,
    start: str | None = "2025-03-10T10:00:00Z",
    end: str | None = "2025-03-10T11:00:00Z",
    **fields: Any,
) -> CalendarEvent:
    """Build a ``CalendarEvent`` from ISO strings (10 characters means all-day)."""
    return CalendarEvent(
        event_id=event_id,
        start=EventInstant.parse(start) if start is not None else None,
        end=EventInstant.parse(end) if end is not None else None,
        **fields,
    )


class FakeCalendarProvider(CalendarProvider):
    """Provider double that serves canned events and records every call."""

    def __init__(self) -> None:
        self.calendars: list[dict[str, Any]] = []
        self.events: list[CalendarEvent] = []
        self.instances: list[CalendarEvent] = []
        self.stored: dict[str, CalendarEvent] = {}
        self.next_page_token: str | None = None
        self.next_sync_token: str | None = None
        self.list_queries: list[EventListQuery] = []
        self.instance_calls: list[dict[str, Any]] = []
        self.insert_calls: list[dict[str, Any]] = []
        self.update_calls: list[dict[str, Any]] = []
        self.delete_calls: list[dict[str, Any]] = []
        self.shutdown_called = False

    @property
    def name(self) -> str:
        return "fake"

    async def list_calendars(self) -> list[dict[str, Any]]:
        return list(self.calendars)

    async def list_events(self, query: EventListQuery) -> EventPage:
        self.list_queries.append(query)
        return EventPage(
            events=list(self.events),
            next_page_token=self.next_page_token,
            next_sync_token=self.next_sync_token,
        )

    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        return self.stored.get(event_id)

    async def list_instances(
        self,
        *,
        calendar_id: str,
        event_id: str,
        max_results: int,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[CalendarEvent]:
        self.instance_calls.append(
            {
                "calendar_id": calendar_id,
                "event_id": event_id,
                "max_results": max_results,
                "time_min": time_min,
                "time_max": time_max,
            }
        )
        return list(self.instances)

    async def insert_event(
        self,
        *,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        self.insert_calls.append(
            {"calendar_id": calendar_id, "body": body, "send_updates": send_updates}
        )
        return CalendarEvent(
            event_id="evt-new",
            calendar_id=calendar_id,
            summary=body.get("summary", ""),
            start=EventInstant.parse(body["start"]),
            end=EventInstant.parse(body["end"]),
            recurrence=body.get("recurrence") or None,
            html_link="https://calendar.google.com/event?eid=evt-new",
            created=FIXED_NOW,
        )

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        self.update_calls.append(
            {
                "calendar_id": calendar_id,
                "event_id": event_id,
                "body": body,
                "send_updates": send_updates,
            }
        )
        base = self.stored.get(event_id) or next(
            (instance for instance in self.instances if instance.event_id == event_id),
            CalendarEvent(event_id=event_id, calendar_id=calendar_id),
        )
        changes: dict[str, Any] = {}
        for name in ("summary", "description", "location"):
            if name in body:
                changes[name] = body[name]
        if "start" in body:
            changes["start"] = EventInstant.parse(body["start"])
        if "end" in body:
            changes["end"] = EventInstant.parse(body["end"])
        return base.model_copy(update=changes)

    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: str | None = None,
    ) -> None:
        self.delete_calls.append(
            {"calendar_id": calendar_id, "event_id": event_id, "send_updates": send_updates}
        )

    async def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def session(provider: FakeCalendarProvider, store: InMemoryStateStore) -> CalendarSession:
    return CalendarSession(provider=provider, store=store, clock=lambda: FIXED_NOW)
