"""Unit tests for the recurrence instance resolver."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from conftest import make_event

from gcal_mcp.modules.calendar.errors import (
    CalendarNotFoundError,
    CalendarNotRecurringError,
    CalendarValidationError,
)
from gcal_mcp.modules.calendar.models import CalendarEvent, EventInstant
from gcal_mcp.modules.calendar.recurrence import (
    INSTANCE_NOT_FOUND_MESSAGE,
    NOT_RECURRING_MESSAGE,
    ensure_recurring,
    find_instance,
    target_date_key,
)

pytestmark = pytest.mark.unit


def _instance(event_id: str, original_start: str | dict) -> CalendarEvent:
    return make_event(
        event_id,
        recurring_event_id="series-1",
        original_start=EventInstant.parse(original_start),
    )


class TestTargetDateKey:
    def test_string_uses_day_prefix(self):
        assert target_date_key("2025-03-15T10:00:00Z") == "2025-03-15"

    def test_date_only_string(self):
        assert target_date_key("2025-03-15") == "2025-03-15"

    def test_datetime_and_date(self):
        assert target_date_key(datetime(2025, 3, 15, 23, 30, tzinfo=UTC)) == "2025-03-15"
        assert target_date_key(date(2025, 3, 15)) == "2025-03-15"

    def test_provider_shape(self):
        assert target_date_key({"dateTime": "2025-03-15T10:00:00-07:00"}) == "2025-03-15"
        assert target_date_key({"date": "2025-03-15"}) == "2025-03-15"

    def test_unparseable_shape_rejected(self):
        with pytest.raises(CalendarValidationError):
            target_date_key({"unexpected": "value"})


class TestFindInstance:
    def test_matches_on_calendar_day(self):
        instances = [
            _instance("instance1", {"dateTime": "2025-03-08T10:00:00Z"}),
            _instance("instance2", {"dateTime": "2025-03-15T10:00:00Z"}),
        ]
        assert find_instance(instances, "2025-03-15T10:00:00Z").event_id == "instance2"

    def test_ignores_time_of_day(self):
        instances = [_instance("instance1", {"dateTime": "2025-03-15T10:00:00Z"})]
        assert find_instance(instances, "2025-03-15T18:45:00Z").event_id == "instance1"

    def test_compares_day_in_instance_representation(self):
        # 23:00-08:00 is the next day in UTC, but the instance's own day is the 15th.
        instances = [_instance("instance1", {"dateTime": "2025-03-15T23:00:00-08:00"})]
        assert find_instance(instances, "2025-03-15").event_id == "instance1"

    def test_all_day_instances(self):
        instances = [
            _instance("day1", {"date": "2025-03-14"}),
            _instance("day2", {"date": "2025-03-15"}),
        ]
        assert find_instance(instances, date(2025, 3, 15)).event_id == "day2"

    def test_same_day_returns_first_in_scan_order(self):
        instances = [
            _instance("morning", {"dateTime": "2025-03-15T09:00:00Z"}),
            _instance("evening", {"dateTime": "2025-03-15T18:00:00Z"}),
        ]
        assert find_instance(instances, "2025-03-15T18:00:00Z").event_id == "morning"

    def test_instances_without_original_start_are_skipped(self):
        instances = [
            make_event("orphan"),
            _instance("instance1", {"dateTime": "2025-03-15T10:00:00Z"}),
        ]
        assert find_instance(instances, "2025-03-15").event_id == "instance1"

    def test_no_match_raises_not_found(self):
        instances = [_instance("instance1", {"dateTime": "2025-03-08T10:00:00Z"})]
        with pytest.raises(CalendarNotFoundError, match=INSTANCE_NOT_FOUND_MESSAGE):
            find_instance(instances, "2025-04-15T10:00:00Z")

    def test_empty_series_raises_not_found(self):
        with pytest.raises(CalendarNotFoundError):
            find_instance([], "2025-03-15")


class TestEnsureRecurring:
    def test_master_with_rule_passes(self):
        ensure_recurring(make_event("series-1", recurrence=["RRULE:FREQ=WEEKLY;COUNT=5"]))

    def test_plain_event_rejected(self):
        with pytest.raises(CalendarNotRecurringError, match=NOT_RECURRING_MESSAGE):
            ensure_recurring(make_event("single"))

    def test_empty_rule_list_rejected(self):
        with pytest.raises(CalendarNotRecurringError):
            ensure_recurring(make_event("single", recurrence=[]))
