"""Unit tests for client-side advanced search filters."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import make_event

from gcal_mcp.modules.calendar.models import AttendeeInfo, EventStatus
from gcal_mcp.modules.calendar.search import SearchFilters, filter_events, search_events

pytestmark = pytest.mark.unit


def _ids(events) -> list[str]:
    return [event.event_id for event in events]


@pytest.fixture
def events():
    return [
        make_event(
            "office",
            location="HQ Conference Room",
            attendees=[AttendeeInfo(email="Alice@example.com")],
            created=datetime(2025, 1, 1, tzinfo=UTC),
            has_attachments=True,
        ),
        make_event(
            "remote",
            location="Zoom",
            status=EventStatus.tentative,
            attendees=[AttendeeInfo(email="bob@example.com")],
            created=datetime(2025, 2, 1, tzinfo=UTC),
        ),
        make_event(
            "series",
            recurrence=["RRULE:FREQ=DAILY"],
            created=datetime(2025, 3, 1, tzinfo=UTC),
        ),
        make_event("occurrence", recurring_event_id="series"),
    ]


class TestSearchFilters:
    def test_no_filters_match_everything(self, events):
        assert _ids(filter_events(events, SearchFilters())) == [
            "office",
            "remote",
            "series",
            "occurrence",
        ]

    def test_location_substring_is_case_insensitive(self, events):
        assert _ids(filter_events(events, SearchFilters(location="conference"))) == ["office"]

    def test_any_attendee_matches(self, events):
        filters = SearchFilters(attendees=["alice@example.com", "nobody@example.com"])
        assert _ids(filter_events(events, filters)) == ["office"]

    def test_status(self, events):
        filters = SearchFilters(status=EventStatus.tentative)
        assert _ids(filter_events(events, filters)) == ["remote"]

    def test_created_after_is_inclusive_and_drops_unknown(self, events):
        filters = SearchFilters(created_after=datetime(2025, 2, 1, tzinfo=UTC))
        assert _ids(filter_events(events, filters)) == ["remote", "series"]

    def test_has_attachments_true_narrows(self, events):
        assert _ids(filter_events(events, SearchFilters(has_attachments=True))) == ["office"]

    def test_has_attachments_false_keeps_everything(self, events):
        assert len(filter_events(events, SearchFilters(has_attachments=False))) == len(events)

    def test_is_recurring_covers_masters_and_instances(self, events):
        recurring = filter_events(events, SearchFilters(is_recurring=True))
        one_off = filter_events(events, SearchFilters(is_recurring=False))
        assert _ids(recurring) == ["series", "occurrence"]
        assert _ids(one_off) == ["office", "remote"]

    def test_filters_combine_with_and(self, events):
        filters = SearchFilters(location="zoom", status=EventStatus.confirmed)
        assert filter_events(events, filters) == []


class TestSearchEvents:
    def test_reports_total_before_limit(self, events):
        result = search_events(events, SearchFilters(), max_results=2)
        assert _ids(result.events) == ["office", "remote"]
        assert result.total_matches == 4
        assert result.limit_applied is True

    def test_limit_not_applied_when_under_cap(self, events):
        result = search_events(events, SearchFilters(location="zoom"))
        assert result.total_matches == 1
        assert result.limit_applied is False
