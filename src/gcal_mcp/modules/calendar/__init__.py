"""Calendar module: conflict, duplicate and recurrence engines over Google Calendar."""

from gcal_mcp.modules.calendar.conflicts import (
    DEFAULT_SEARCH_BUFFER,
    conflict_search_window,
    detect_conflicts,
    spans_overlap,
)
from gcal_mcp.modules.calendar.duplicates import (
    DEFAULT_DUPLICATE_THRESHOLD,
    duplicate_score,
    find_duplicate_groups,
    levenshtein_distance,
    score_similarity,
)
from gcal_mcp.modules.calendar.errors import (
    CalendarApiError,
    CalendarAuthError,
    CalendarCredentialError,
    CalendarError,
    CalendarNotFoundError,
    CalendarNotRecurringError,
    CalendarTokenRefreshError,
    CalendarValidationError,
    NotificationDeliveryError,
    SchedulingConflictError,
)
from gcal_mcp.modules.calendar.models import (
    AttendeeConflict,
    AttendeeInfo,
    CalendarEvent,
    ConflictReport,
    DuplicateGroup,
    EventInstant,
    EventStatus,
    TimeSpan,
)
from gcal_mcp.modules.calendar.recurrence import ensure_recurring, find_instance
from gcal_mcp.modules.calendar.search import SearchFilters, SearchResult, search_events

__all__ = [
    "AttendeeConflict",
    "AttendeeInfo",
    "CalendarApiError",
    "CalendarAuthError",
    "CalendarCredentialError",
    "CalendarError",
    "CalendarEvent",
    "CalendarNotFoundError",
    "CalendarNotRecurringError",
    "CalendarTokenRefreshError",
    "CalendarValidationError",
    "ConflictReport",
    "DEFAULT_DUPLICATE_THRESHOLD",
    "DEFAULT_SEARCH_BUFFER",
    "DuplicateGroup",
    "EventInstant",
    "EventStatus",
    "NotificationDeliveryError",
    "SchedulingConflictError",
    "SearchFilters",
    "SearchResult",
    "TimeSpan",
    "conflict_search_window",
    "detect_conflicts",
    "duplicate_score",
    "ensure_recurring",
    "find_duplicate_groups",
    "find_instance",
    "levenshtein_distance",
    "score_similarity",
    "search_events",
    "spans_overlap",
]
