"""Action dispatcher: name -> handler routing, validation and result envelopes.

``ActionDispatcher.execute`` never raises for action failures. Every call
resolves to either::

    {"status": "success", "data": ...}
    {"status": "error", "error_type": ..., "error": ...}

Scheduling conflicts additionally carry the serialised report under
``conflicts``. Error messages are credential-redacted, whitespace-normalised
and truncated before they leave the process.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from gcal_mcp.core.logging import set_action_context
from gcal_mcp.modules.calendar import actions
from gcal_mcp.modules.calendar.actions import CalendarSession
from gcal_mcp.modules.calendar.errors import (
    CalendarApiError,
    CalendarAuthError,
    CalendarNotFoundError,
    CalendarNotRecurringError,
    CalendarValidationError,
    NotificationDeliveryError,
    SchedulingConflictError,
)
from gcal_mcp.modules.calendar.google_payloads import conflict_report_to_payload
from gcal_mcp.modules.calendar.notifications import manage_webhooks

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "validation_error"
NOT_FOUND_ERROR = "not_found_error"
NOT_RECURRING_ERROR = "not_recurring_error"
AUTHENTICATION_ERROR = "authentication_error"
SCHEDULING_CONFLICT = "scheduling_conflict"
RATE_LIMIT_ERROR = "rate_limit_error"
API_ERROR = "api_error"
SERVER_ERROR = "server_error"

ERROR_TYPES = (
    VALIDATION_ERROR,
    NOT_FOUND_ERROR,
    NOT_RECURRING_ERROR,
    AUTHENTICATION_ERROR,
    SCHEDULING_CONFLICT,
    RATE_LIMIT_ERROR,
    API_ERROR,
    SERVER_ERROR,
)

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
QUOTA_REASON = "quotaExceeded"
RATE_LIMIT_MESSAGE = "Google Calendar API rate limit exceeded. Please try again later."
QUOTA_MESSAGE = "Google Calendar API quota exceeded for today. Please try again tomorrow."
MAX_ERROR_MESSAGE_LENGTH = 200

BATCH_ACTIONS = ("create_event", "update_event", "delete_event", "get_event")

ActionHandler = Callable[[CalendarSession, dict[str, Any]], Awaitable[Any]]
ParamCheck = Callable[[Mapping[str, Any]], str | None]


def validate_params(params: Mapping[str, Any] | None, required: tuple[str, ...]) -> str | None:
    """Return an error message when ``params`` is absent or misses a required key."""
    if params is None:
        return "No parameters provided"
    missing = [name for name in required if params.get(name) is None]
    if missing:
        return f"Missing required parameters: {', '.join(missing)}"
    return None


def _redact_credential_values(message: str) -> str:
    """Redact credential values that provider errors may echo back."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Authorization headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    redacted = _redact_credential_values(message)
    return " ".join(redacted.split())[:MAX_ERROR_MESSAGE_LENGTH]


def categorize_error(exc: BaseException) -> tuple[str, str]:
    """Map an exception onto ``(error_type, message)``."""
    if isinstance(exc, SchedulingConflictError):
        return SCHEDULING_CONFLICT, str(exc)
    if isinstance(exc, CalendarValidationError):
        return VALIDATION_ERROR, str(exc)
    if isinstance(exc, CalendarNotFoundError):
        return NOT_FOUND_ERROR, str(exc)
    if isinstance(exc, CalendarNotRecurringError):
        return NOT_RECURRING_ERROR, str(exc)
    if isinstance(exc, CalendarAuthError):
        return AUTHENTICATION_ERROR, str(exc)
    if isinstance(exc, CalendarApiError):
        # Google reports quota and rate limits as 403 with a reason code.
        if exc.reason == QUOTA_REASON:
            return RATE_LIMIT_ERROR, QUOTA_MESSAGE
        if exc.status_code == 429 or exc.reason in RATE_LIMIT_REASONS:
            return RATE_LIMIT_ERROR, RATE_LIMIT_MESSAGE
        if exc.status_code == 404:
            return NOT_FOUND_ERROR, exc.message
        if exc.status_code in (401, 403):
            return AUTHENTICATION_ERROR, exc.message
        if exc.status_code == 400:
            return VALIDATION_ERROR, exc.message
        if exc.status_code == 409:
            return SCHEDULING_CONFLICT, exc.message
        return API_ERROR, exc.message
    if isinstance(exc, NotificationDeliveryError):
        return API_ERROR, str(exc)
    return SERVER_ERROR, str(exc) or "An unexpected error occurred"


def build_error_envelope(exc: BaseException) -> dict[str, Any]:
    error_type, message = categorize_error(exc)
    envelope: dict[str, Any] = {
        "status": "error",
        "error_type": error_type,
        "error": sanitize_error_message(message),
    }
    if isinstance(exc, SchedulingConflictError):
        envelope["conflicts"] = conflict_report_to_payload(exc.report)
    return envelope


def _validation_envelope(message: str) -> dict[str, Any]:
    return {"status": "error", "error_type": VALIDATION_ERROR, "error": message}


# ---------------------------------------------------------------------------
# Action-specific parameter checks
# ---------------------------------------------------------------------------


def _check_update_fields(params: Mapping[str, Any]) -> str | None:
    if not actions.has_update_fields(params):
        return "At least one field to update must be provided"
    return None


def _check_threshold(params: Mapping[str, Any]) -> str | None:
    if params.get("similarityThreshold") is None:
        return None
    try:
        actions.coerce_threshold(params["similarityThreshold"], actions.DEFAULT_DUPLICATE_THRESHOLD)
    except CalendarValidationError as exc:
        return str(exc)
    return None


def _check_operations(params: Mapping[str, Any]) -> str | None:
    if not isinstance(params.get("operations"), list):
        return "operations must be an array"
    return None


def _check_search(params: Mapping[str, Any]) -> str | None:
    time_range = params.get("timeRange")
    if time_range and not isinstance(time_range, Mapping):
        return "timeRange must be an object with start and/or end properties"
    if params.get("attendees") and not isinstance(params["attendees"], list):
        return "attendees must be an array of email addresses"
    return None


def _check_conflict_times(params: Mapping[str, Any]) -> str | None:
    for name in ("start", "end"):
        try:
            actions.parse_event_time(params.get(name), name)
        except CalendarValidationError as exc:
            return str(exc)
    return None


@dataclass(frozen=True)
class ActionSpec:
    """Registration of one dispatchable action."""

    name: str
    handler: ActionHandler
    description: str
    required: tuple[str, ...] = ()
    parameters: dict[str, str] = field(default_factory=dict)
    check: ParamCheck | None = None

    @property
    def needs_params(self) -> bool:
        return bool(self.required)

    def to_definition(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "parameters": dict(self.parameters),
            "required_parameters": list(self.required),
        }


@dataclass
class BatchItemResult:
    """Outcome of one batch operation."""

    action: str
    success: bool
    data: Any = None
    error: str | None = None
    error_type: str | None = None

    def to_payload(self) -> dict[str, Any]:
        if self.success:
            return {"action": self.action, "success": True, "data": self.data}
        return {
            "action": self.action,
            "success": False,
            "error": self.error,
            "error_type": self.error_type,
        }


_CALENDAR_ID_PARAM = {"calendarId": "ID of the calendar to use (defaults to 'primary')"}
_SEND_UPDATES_PARAM = {"sendUpdates": "Who receives update emails: all, externalOnly or none"}


class ActionDispatcher:
    """Route action names to handlers and wrap results in status envelopes."""

    def __init__(self, session: CalendarSession) -> None:
        self._session = session
        self._actions: dict[str, ActionSpec] = {}
        for spec in self._default_actions():
            self.register(spec)

    @property
    def session(self) -> CalendarSession:
        return self._session

    def register(self, spec: ActionSpec) -> None:
        self._actions[spec.name] = spec

    def validate(self, spec: ActionSpec, params: Mapping[str, Any] | None) -> str | None:
        if spec.needs_params or params is not None:
            error = validate_params(params, spec.required)
            if error is not None:
                return error
        if spec.check is not None:
            return spec.check(params or {})
        return None

    async def execute(
        self, action: str | None, params: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        if not action:
            return _validation_envelope("Missing required field: action")
        spec = self._actions.get(action)
        if spec is None:
            return _validation_envelope(f"Unknown action: {action}")

        set_action_context(action)
        try:
            error = self.validate(spec, params)
            if error is not None:
                logger.info("Rejected %s: %s", action, error)
                return _validation_envelope(error)
            data = await spec.handler(self._session, dict(params or {}))
        except Exception as exc:
            envelope = build_error_envelope(exc)
            if envelope["error_type"] == SERVER_ERROR:
                logger.exception("Calendar action %s failed", action)
            else:
                logger.warning(
                    "Calendar action %s failed (%s): %s",
                    action,
                    envelope["error_type"],
                    envelope["error"],
                )
            return envelope
        finally:
            set_action_context(None)
        return {"status": "success", "data": data}

    async def batch_operations(
        self, session: CalendarSession, params: dict[str, Any]
    ) -> dict[str, Any]:
        """Run create/update/delete/get operations sequentially.

        Structural problems (empty list, an item without ``action`` or
        ``parameters``) reject the whole batch before anything runs. After
        that each item succeeds or fails on its own and nothing is rolled
        back.
        """
        operations = params.get("operations")
        if not isinstance(operations, list) or not operations:
            raise CalendarValidationError("No operations provided for batch processing")
        for operation in operations:
            if not isinstance(operation, Mapping) or not operation.get("action"):
                raise CalendarValidationError("Each operation must have an action property")
            if not operation.get("parameters"):
                raise CalendarValidationError("Each operation must have parameters")

        results: list[BatchItemResult] = []
        for operation in operations:
            results.append(await self._run_batch_item(session, operation))

        success_count = sum(1 for result in results if result.success)
        return {
            "operations_count": len(operations),
            "results": [result.to_payload() for result in results],
            "success_count": success_count,
            "error_count": len(results) - success_count,
        }

    async def _run_batch_item(
        self, session: CalendarSession, operation: Mapping[str, Any]
    ) -> BatchItemResult:
        action = operation["action"]
        spec = self._actions.get(action) if action in BATCH_ACTIONS else None
        if spec is None:
            return BatchItemResult(
                action=action,
                success=False,
                error=f"Unsupported action in batch operation: {action}",
                error_type=VALIDATION_ERROR,
            )

        parameters = operation["parameters"]
        if not isinstance(parameters, Mapping):
            return BatchItemResult(
                action=action,
                success=False,
                error="Each operation must have parameters",
                error_type=VALIDATION_ERROR,
            )
        error = self.validate(spec, parameters)
        if error is not None:
            return BatchItemResult(
                action=action, success=False, error=error, error_type=VALIDATION_ERROR
            )

        try:
            data = await spec.handler(session, dict(parameters))
        except Exception as exc:
            error_type, message = categorize_error(exc)
            logger.warning("Batch operation %s failed (%s): %s", action, error_type, message)
            return BatchItemResult(
                action=action,
                success=False,
                error=sanitize_error_message(message),
                error_type=error_type,
            )
        return BatchItemResult(action=action, success=True, data=data)

    def describe_actions(self) -> dict[str, Any]:
        """Return the action catalogue advertised to clients."""
        return {
            "name": "Google Calendar MCP",
            "description": "MCP server for Google Calendar access",
            "actions": {name: spec.to_definition() for name, spec in self._actions.items()},
            "response": {
                "status": "success or error",
                "data": "Action result (if successful)",
                "error": "Error message (if failed)",
                "error_type": "Type of error that occurred (if failed)",
            },
            "error_types": list(ERROR_TYPES),
        }

    def _default_actions(self) -> list[ActionSpec]:
        return [
            ActionSpec(
                name="list_calendars",
                handler=actions.list_calendars,
                description="List available calendars the user has access to",
            ),
            ActionSpec(
                name="list_events",
                handler=actions.list_events,
                description="List calendar events based on specified criteria",
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "timeMin": "Start time in ISO format (defaults to now)",
                    "timeMax": "End time in ISO format",
                    "maxResults": "Maximum number of events to return (default 10)",
                    "q": "Free text search terms",
                    "orderBy": "startTime or updated",
                    "pageToken": "Token for the next page of results",
                    "syncToken": "Token from a previous list for incremental sync",
                },
            ),
            ActionSpec(
                name="list_recurring_instances",
                handler=actions.list_recurring_instances,
                description="List instances of a recurring event",
                required=("eventId",),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "eventId": "ID of the recurring event",
                    "timeMin": "Start time in ISO format",
                    "timeMax": "End time in ISO format",
                    "maxResults": "Maximum number of instances to return (default 10)",
                },
            ),
            ActionSpec(
                name="create_event",
                handler=actions.create_event,
                description="Create a new calendar event",
                required=("summary", "start", "end"),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "summary": "Event title",
                    "description": "Event description",
                    "start": "Object with dateTime or date (and optional timeZone)",
                    "end": "Object with dateTime or date (and optional timeZone)",
                    "location": "Event location",
                    "attendees": "Array of attendee email addresses",
                    "recurrence": "Array of RRULE, EXRULE, RDATE or EXDATE strings",
                    "reminders": "Reminder overrides in Google's reminders shape",
                    "checkConflicts": "Check for conflicts before creating (default true)",
                    "allowConflicts": "Create even when conflicts exist (default false)",
                    **_SEND_UPDATES_PARAM,
                },
            ),
            ActionSpec(
                name="get_event",
                handler=actions.get_event,
                description="Get details of a specific event",
                required=("eventId",),
                parameters={**_CALENDAR_ID_PARAM, "eventId": "ID of the event"},
            ),
            ActionSpec(
                name="update_event",
                handler=actions.update_event,
                description="Update an existing calendar event",
                required=("eventId",),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "eventId": "ID of the event to update",
                    "summary": "New event title",
                    "description": "New event description",
                    "start": "New start object with dateTime or date",
                    "end": "New end object with dateTime or date",
                    "location": "New event location",
                    "attendees": "Replacement attendee emails (null removes all)",
                    "recurrence": "Replacement recurrence rules (null removes them)",
                    "checkConflicts": "Check for conflicts when times change (default true)",
                    "allowConflicts": "Update even when conflicts exist (default false)",
                    **_SEND_UPDATES_PARAM,
                },
                check=_check_update_fields,
            ),
            ActionSpec(
                name="delete_event",
                handler=actions.delete_event,
                description="Delete a calendar event",
                required=("eventId",),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "eventId": "ID of the event to delete",
                    **_SEND_UPDATES_PARAM,
                },
            ),
            ActionSpec(
                name="find_duplicates",
                handler=actions.find_duplicates,
                description="Find potential duplicate events in a time window",
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "timeMin": "Start time in ISO format (defaults to now)",
                    "timeMax": "End time in ISO format (defaults to 30 days from now)",
                    "similarityThreshold": "Number between 0 and 1 (default 0.7)",
                },
                check=_check_threshold,
            ),
            ActionSpec(
                name="batch_operations",
                handler=self.batch_operations,
                description="Run multiple create/update/delete/get operations in one call",
                required=("operations",),
                parameters={
                    "operations": "Array of {action, parameters} objects",
                },
                check=_check_operations,
            ),
            ActionSpec(
                name="advanced_search_events",
                handler=actions.advanced_search_events,
                description="Search events with filters beyond free text",
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "timeRange": "Object with start and/or end in ISO format",
                    "textSearch": "Free text search terms",
                    "location": "Case-insensitive location substring",
                    "attendees": "Array of attendee emails; any match qualifies",
                    "status": "confirmed, tentative or cancelled",
                    "createdAfter": "Only events created at or after this ISO time",
                    "updatedAfter": "Only events updated after this ISO time",
                    "hasAttachments": "Only events with attachments when true",
                    "isRecurring": "Filter to recurring (true) or one-off (false) events",
                    "maxResults": "Maximum number of events to return (default 100)",
                },
                check=_check_search,
            ),
            ActionSpec(
                name="detect_conflicts",
                handler=actions.detect_conflicts_action,
                description="Check a proposed time span for overlapping events",
                required=("start", "end"),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "start": "Object with dateTime or date",
                    "end": "Object with dateTime or date",
                    "attendees": "Array of attendee emails to check for double booking",
                    "eventId": "Event to exclude from the check (when rescheduling)",
                    "checkAttendees": "Report attendee double bookings (default true)",
                },
                check=_check_conflict_times,
            ),
            ActionSpec(
                name="create_event_exception",
                handler=actions.create_event_exception,
                description="Modify a single instance of a recurring event",
                required=("recurringEventId", "originalStartTime"),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "recurringEventId": "ID of the recurring event",
                    "originalStartTime": "Original start of the instance (ISO date or date-time)",
                    "summary": "New title for this instance",
                    "description": "New description for this instance",
                    "location": "New location for this instance",
                    "start": "New start object for this instance",
                    "end": "New end object for this instance",
                    "attendees": "Attendee emails for this instance",
                    "reminders": "Reminder overrides for this instance",
                    **_SEND_UPDATES_PARAM,
                },
            ),
            ActionSpec(
                name="delete_event_instance",
                handler=actions.delete_event_instance,
                description="Delete a single instance of a recurring event",
                required=("recurringEventId", "originalStartTime"),
                parameters={
                    **_CALENDAR_ID_PARAM,
                    "recurringEventId": "ID of the recurring event",
                    "originalStartTime": "Original start of the instance (ISO date or date-time)",
                    **_SEND_UPDATES_PARAM,
                },
            ),
            ActionSpec(
                name="manage_webhooks",
                handler=manage_webhooks,
                description="Create, list or delete reminder webhooks",
                required=("operation",),
                parameters={
                    "operation": "create, list or delete",
                    "address": "http(s) URL receiving notifications (create)",
                    "webhookId": "ID of the webhook to delete (delete)",
                },
            ),
        ]
