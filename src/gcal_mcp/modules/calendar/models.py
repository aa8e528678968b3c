"""Provider-neutral data model for calendar events and engine results.

Defines:
- ``EventInstant``: the provider's two point-in-time shapes (date vs date-time)
- ``TimeSpan``: a validated half-open ``[start, end)`` interval in UTC
- ``CalendarEvent``: canonical event shape shared by actions and engines
- ``ConflictReport`` / ``AttendeeConflict`` / ``DuplicateGroup``: engine outputs
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, tzinfo
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gcal_mcp.modules.calendar.errors import CalendarValidationError


class EventStatus(StrEnum):
    """Event lifecycle states as tracked by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for a calendar event attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_iso_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise CalendarValidationError(
            f"Invalid dateTime value: {value!r}. Use ISO 8601 format."
        ) from exc


def _parse_iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise CalendarValidationError(
            f"Invalid date value: {value!r}. Use YYYY-MM-DD format."
        ) from exc


def format_rfc3339(value: datetime) -> str:
    """Format an aware datetime the way Google does (``Z`` suffix for UTC)."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    text = normalized.isoformat()
    if normalized.utcoffset() == UTC.utcoffset(None):
        text = text.replace("+00:00", "Z")
    return text


class EventInstant(BaseModel):
    """A point in time as the provider represents it: whole-day or date-time.

    Exactly one of ``date_value`` / ``date_time_value`` is set.  Comparisons
    must go through :meth:`as_utc` so that date-only and offset-bearing
    values are normalised to one absolute representation first.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    date_value: date | None = None
    date_time_value: datetime | None = None
    time_zone: str | None = None

    @model_validator(mode="after")
    def _validate_shape(self) -> EventInstant:
        has_date = self.date_value is not None
        has_date_time = self.date_time_value is not None
        if has_date == has_date_time:
            raise ValueError("exactly one of date_value or date_time_value must be provided")
        return self

    @classmethod
    def of(cls, value: date | datetime, time_zone: str | None = None) -> EventInstant:
        if isinstance(value, datetime):
            return cls(date_time_value=value, time_zone=time_zone)
        return cls(date_value=value, time_zone=time_zone)

    @classmethod
    def parse(cls, value: Any) -> EventInstant:
        """Parse the provider shape (``{"dateTime": ...}`` / ``{"date": ...}``) or an ISO string."""
        if isinstance(value, EventInstant):
            return value
        if isinstance(value, datetime | date):
            return cls.of(value)
        if isinstance(value, str):
            text = value.strip()
            if not text:
                raise CalendarValidationError("Time value must be a non-empty string")
            if len(text) == 10:
                return cls(date_value=_parse_iso_date(text))
            return cls(date_time_value=_parse_iso_datetime(text))
        if isinstance(value, dict):
            time_zone_raw = value.get("timeZone")
            time_zone = (
                time_zone_raw.strip()
                if isinstance(time_zone_raw, str) and time_zone_raw.strip()
                else None
            )
            date_time = value.get("dateTime")
            if isinstance(date_time, str) and date_time.strip():
                return cls(date_time_value=_parse_iso_datetime(date_time), time_zone=time_zone)
            date_raw = value.get("date")
            if isinstance(date_raw, str) and date_raw.strip():
                return cls(date_value=_parse_iso_date(date_raw), time_zone=time_zone)
            raise CalendarValidationError(
                "Invalid time format. Use ISO 8601 format in a dateTime or date property."
            )
        raise CalendarValidationError(
            f"Unsupported time value of type {type(value).__name__}; "
            "expected an object with dateTime or date"
        )

    @property
    def is_all_day(self) -> bool:
        return self.date_value is not None

    def as_utc(self) -> datetime:
        """Return the absolute instant as an aware UTC datetime."""
        zone = _coerce_zoneinfo(self.time_zone)
        if self.date_value is not None:
            day = self.date_value
            return datetime(day.year, day.month, day.day, tzinfo=zone).astimezone(UTC)
        assert self.date_time_value is not None
        value = self.date_time_value
        if value.tzinfo is None or value.utcoffset() is None:
            value = value.replace(tzinfo=zone)
        return value.astimezone(UTC)

    def date_key(self) -> str:
        """Calendar day (``YYYY-MM-DD``) in the instant's own representation."""
        if self.date_value is not None:
            return self.date_value.isoformat()
        assert self.date_time_value is not None
        return self.date_time_value.date().isoformat()

    def to_google(self) -> dict[str, str]:
        if self.date_value is not None:
            return {"date": self.date_value.isoformat()}
        assert self.date_time_value is not None
        value = self.date_time_value
        text = format_rfc3339(value) if value.tzinfo is not None else value.isoformat()
        payload = {"dateTime": text}
        if self.time_zone:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass(frozen=True)
class TimeSpan:
    """Half-open interval ``[start, end)`` in absolute UTC time."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise CalendarValidationError("TimeSpan bounds must be timezone-aware")
        if self.end <= self.start:
            raise CalendarValidationError("end must be after start")

    @classmethod
    def from_instants(cls, start: EventInstant, end: EventInstant) -> TimeSpan:
        return cls(start=start.as_utc(), end=end.as_utc())

    def overlaps(self, other: TimeSpan) -> bool:
        return self.start < other.end and self.end > other.start


class AttendeeInfo(BaseModel):
    """Structured attendee representation with RSVP tracking."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    email: str
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action
    optional: bool = False
    organizer: bool = False
    self_: bool = Field(default=False, alias="self")


class CalendarEvent(BaseModel):
    """Canonical event shape: standalone event, recurrence master, or instance."""

    event_id: str
    calendar_id: str = "primary"
    summary: str = ""
    description: str = ""
    location: str = ""
    # Cancelled recurrence instances come back from the provider without bounds.
    start: EventInstant | None = None
    end: EventInstant | None = None
    status: EventStatus = EventStatus.confirmed
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    recurrence: list[str] | None = None
    recurring_event_id: str | None = None
    original_start: EventInstant | None = None
    created: datetime | None = None
    updated: datetime | None = None
    html_link: str | None = None
    organizer: str | None = None
    creator: str | None = None
    has_attachments: bool = False

    @model_validator(mode="after")
    def _validate_kind(self) -> CalendarEvent:
        if self.recurrence and self.recurring_event_id is not None:
            raise ValueError(
                "an event cannot be both a recurrence master and a recurrence instance"
            )
        return self

    @property
    def is_recurring_master(self) -> bool:
        return bool(self.recurrence)

    @property
    def is_recurring_instance(self) -> bool:
        return self.recurring_event_id is not None

    @property
    def span(self) -> TimeSpan:
        if self.start is None or self.end is None:
            raise CalendarValidationError(f"Event '{self.event_id}' is missing start/end")
        return TimeSpan.from_instants(self.start, self.end)

    def attendee_emails(self) -> list[str]:
        return [attendee.email.strip().lower() for attendee in self.attendees]


@dataclass
class AttendeeConflict:
    """An overlapping event that also shares attendees with the candidate."""

    event: CalendarEvent
    conflicting_attendees: list[str] = field(default_factory=list)


@dataclass
class ConflictReport:
    """Result of a conflict check for one candidate span."""

    has_conflicts: bool
    time_conflicts: list[CalendarEvent] = field(default_factory=list)
    attendee_conflicts: list[AttendeeConflict] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    """Events judged likely to describe the same real-world event."""

    events: list[CalendarEvent]

    def __post_init__(self) -> None:
        if len(self.events) < 2:
            raise ValueError("a duplicate group needs at least two events")

    @property
    def anchor(self) -> CalendarEvent:
        return self.events[0]
