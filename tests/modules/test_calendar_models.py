"""Unit tests for calendar model parsing and normalisation."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from conftest import make_event
from pydantic import ValidationError

from gcal_mcp.modules.calendar.errors import CalendarValidationError
from gcal_mcp.modules.calendar.models import (
    AttendeeInfo,
    CalendarEvent,
    EventInstant,
    TimeSpan,
    format_rfc3339,
)

pytestmark = pytest.mark.unit


class TestEventInstantParse:
    def test_date_time_object(self):
        instant = EventInstant.parse(
            {"dateTime": "2025-03-10T10:00:00-05:00", "timeZone": "America/New_York"}
        )
        assert instant.is_all_day is False
        assert instant.time_zone == "America/New_York"
        assert instant.as_utc() == datetime(2025, 3, 10, 15, tzinfo=UTC)

    def test_date_object(self):
        instant = EventInstant.parse({"date": "2025-03-10"})
        assert instant.is_all_day is True
        assert instant.date_value == date(2025, 3, 10)

    def test_date_time_wins_over_date(self):
        instant = EventInstant.parse({"dateTime": "2025-03-10T10:00:00Z", "date": "2025-03-11"})
        assert instant.date_time_value is not None

    def test_z_suffix(self):
        instant = EventInstant.parse("2025-03-10T10:00:00Z")
        assert instant.as_utc() == datetime(2025, 3, 10, 10, tzinfo=UTC)

    def test_ten_character_string_is_a_date(self):
        assert EventInstant.parse("2025-03-10").is_all_day is True

    def test_passthrough_and_python_values(self):
        instant = EventInstant.parse(date(2025, 3, 10))
        assert EventInstant.parse(instant) is instant
        assert EventInstant.parse(datetime(2025, 3, 10, 9, tzinfo=UTC)).is_all_day is False

    @pytest.mark.parametrize(
        "value",
        [
            {"dateTime": "not-a-time"},
            {"date": "2025-13-45"},
            {"timeZone": "UTC"},
            "",
            42,
        ],
    )
    def test_invalid_values_rejected(self, value):
        with pytest.raises(CalendarValidationError):
            EventInstant.parse(value)

    def test_exactly_one_representation_required(self):
        with pytest.raises(ValidationError):
            EventInstant()
        with pytest.raises(ValidationError):
            EventInstant(date_value=date(2025, 3, 10), date_time_value=datetime(2025, 3, 10))


class TestEventInstantNormalisation:
    def test_naive_date_time_uses_time_zone(self):
        instant = EventInstant.parse(
            {"dateTime": "2025-07-01T09:00:00", "timeZone": "Europe/Berlin"}
        )
        assert instant.as_utc() == datetime(2025, 7, 1, 7, tzinfo=UTC)

    def test_naive_date_time_without_zone_is_utc(self):
        instant = EventInstant.parse({"dateTime": "2025-07-01T09:00:00"})
        assert instant.as_utc() == datetime(2025, 7, 1, 9, tzinfo=UTC)

    def test_all_day_is_midnight_in_its_zone(self):
        instant = EventInstant.parse({"date": "2025-07-01", "timeZone": "Asia/Tokyo"})
        assert instant.as_utc() == datetime(2025, 6, 30, 15, tzinfo=UTC)

    def test_unknown_zone_falls_back_to_utc(self):
        instant = EventInstant.parse({"date": "2025-07-01", "timeZone": "Mars/Olympus"})
        assert instant.as_utc() == datetime(2025, 7, 1, tzinfo=UTC)

    def test_date_key_keeps_own_representation(self):
        instant = EventInstant.parse({"dateTime": "2025-07-01T23:30:00-04:00"})
        assert instant.date_key() == "2025-07-01"

    def test_to_google_shapes(self):
        assert EventInstant.parse({"date": "2025-07-01"}).to_google() == {"date": "2025-07-01"}
        assert EventInstant.parse(
            {"dateTime": "2025-07-01T09:00:00+00:00", "timeZone": "UTC"}
        ).to_google() == {"dateTime": "2025-07-01T09:00:00Z", "timeZone": "UTC"}
        assert EventInstant.parse({"dateTime": "2025-07-01T09:00:00"}).to_google() == {
            "dateTime": "2025-07-01T09:00:00"
        }

    def test_format_rfc3339(self):
        assert format_rfc3339(datetime(2025, 7, 1, 9, tzinfo=UTC)) == "2025-07-01T09:00:00Z"
        assert format_rfc3339(datetime(2025, 7, 1, 9)) == "2025-07-01T09:00:00Z"


class TestCalendarEvent:
    def test_span_from_instants(self):
        event = make_event("a")
        assert event.span == TimeSpan(
            start=datetime(2025, 3, 10, 10, tzinfo=UTC),
            end=datetime(2025, 3, 10, 11, tzinfo=UTC),
        )

    def test_span_requires_bounds(self):
        with pytest.raises(CalendarValidationError, match="missing start/end"):
            _ = make_event("a", None, None).span

    def test_kind_flags(self):
        assert make_event("m", recurrence=["RRULE:FREQ=DAILY"]).is_recurring_master
        assert make_event("i", recurring_event_id="m").is_recurring_instance
        plain = make_event("p")
        assert not plain.is_recurring_master
        assert not plain.is_recurring_instance

    def test_master_and_instance_are_exclusive(self):
        with pytest.raises(ValidationError):
            CalendarEvent(event_id="x", recurrence=["RRULE:FREQ=DAILY"], recurring_event_id="m")

    def test_attendee_emails_are_normalised(self):
        event = make_event("a", attendees=[AttendeeInfo(email=" Alice@Example.com ")])
        assert event.attendee_emails() == ["alice@example.com"]

    def test_attendee_self_alias(self):
        attendee = AttendeeInfo.model_validate({"email": "me@example.com", "self": True})
        assert attendee.self_ is True
