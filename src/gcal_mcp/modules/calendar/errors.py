"""Error hierarchy for the calendar module.

Engines raise these; the action dispatcher maps them onto the user-facing
error taxonomy (see ``dispatcher.categorize_error``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gcal_mcp.modules.calendar.models import ConflictReport


class CalendarError(RuntimeError):
    """Base error for every calendar failure."""


class CalendarValidationError(CalendarError, ValueError):
    """Raised for malformed input: bad time spans, thresholds, parameters."""


class CalendarNotFoundError(CalendarError):
    """Raised when a requested event or recurrence instance does not exist."""


class CalendarNotRecurringError(CalendarError):
    """Raised when an instance operation targets a non-recurring event."""


class CalendarApiError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str, reason: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.reason = reason
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarAuthError(CalendarError):
    """Base error raised by OAuth helpers."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when OAuth client credentials or stored tokens are missing or invalid."""


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when refresh-token exchange fails."""


class SchedulingConflictError(CalendarError):
    """Raised when a write would collide with existing events and overlaps are not allowed."""

    def __init__(self, report: ConflictReport) -> None:
        self.report = report
        super().__init__("Scheduling conflict detected")


class NotificationDeliveryError(CalendarError):
    """Raised when a webhook notification cannot be delivered."""
