"""Unit tests for the action dispatcher: routing, validation, envelopes and batches."""

from __future__ import annotations

import logging

import pytest
from conftest import make_event

from gcal_mcp.core.logging import get_action_context
from gcal_mcp.modules.calendar.dispatcher import (
    API_ERROR,
    AUTHENTICATION_ERROR,
    ERROR_TYPES,
    NOT_FOUND_ERROR,
    NOT_RECURRING_ERROR,
    QUOTA_MESSAGE,
    RATE_LIMIT_ERROR,
    RATE_LIMIT_MESSAGE,
    SCHEDULING_CONFLICT,
    SERVER_ERROR,
    VALIDATION_ERROR,
    ActionDispatcher,
    ActionSpec,
    build_error_envelope,
    categorize_error,
    sanitize_error_message,
    validate_params,
)
from gcal_mcp.modules.calendar.errors import (
    CalendarApiError,
    CalendarCredentialError,
    CalendarNotFoundError,
    CalendarNotRecurringError,
    CalendarValidationError,
    NotificationDeliveryError,
    SchedulingConflictError,
)
from gcal_mcp.modules.calendar.models import ConflictReport

pytestmark = pytest.mark.unit

_START = {"dateTime": "2025-03-10T10:00:00Z"}
_END = {"dateTime": "2025-03-10T11:00:00Z"}


@pytest.fixture
def dispatcher(session) -> ActionDispatcher:
    return ActionDispatcher(session)


class TestValidateParams:
    def test_missing_params(self):
        assert validate_params(None, ("eventId",)) == "No parameters provided"

    def test_lists_missing_keys(self):
        assert (
            validate_params({"summary": "x"}, ("summary", "start", "end"))
            == "Missing required parameters: start, end"
        )

    def test_all_present(self):
        assert validate_params({"eventId": "evt-1"}, ("eventId",)) is None


class TestCategorizeError:
    @pytest.mark.parametrize(
        ("exc", "expected_type"),
        [
            (CalendarValidationError("bad"), VALIDATION_ERROR),
            (CalendarNotFoundError("missing"), NOT_FOUND_ERROR),
            (CalendarNotRecurringError("single"), NOT_RECURRING_ERROR),
            (CalendarCredentialError("no creds"), AUTHENTICATION_ERROR),
            (SchedulingConflictError(ConflictReport(has_conflicts=True)), SCHEDULING_CONFLICT),
            (CalendarApiError(status_code=404, message="Not Found"), NOT_FOUND_ERROR),
            (CalendarApiError(status_code=401, message="Unauthorized"), AUTHENTICATION_ERROR),
            (CalendarApiError(status_code=403, message="Forbidden"), AUTHENTICATION_ERROR),
            (CalendarApiError(status_code=400, message="Bad Request"), VALIDATION_ERROR),
            (CalendarApiError(status_code=409, message="Conflict"), SCHEDULING_CONFLICT),
            (CalendarApiError(status_code=500, message="Backend Error"), API_ERROR),
            (NotificationDeliveryError("down"), API_ERROR),
            (RuntimeError("boom"), SERVER_ERROR),
        ],
    )
    def test_error_types(self, exc, expected_type):
        error_type, _ = categorize_error(exc)
        assert error_type == expected_type
        assert error_type in ERROR_TYPES

    def test_rate_limit_by_status(self):
        exc = CalendarApiError(status_code=429, message="Too Many Requests")
        assert categorize_error(exc) == (RATE_LIMIT_ERROR, RATE_LIMIT_MESSAGE)

    def test_rate_limit_reason_on_403(self):
        exc = CalendarApiError(status_code=403, message="slow", reason="userRateLimitExceeded")
        assert categorize_error(exc) == (RATE_LIMIT_ERROR, RATE_LIMIT_MESSAGE)

    def test_quota_reason(self):
        exc = CalendarApiError(status_code=403, message="quota", reason="quotaExceeded")
        assert categorize_error(exc) == (RATE_LIMIT_ERROR, QUOTA_MESSAGE)

    def test_api_error_uses_provider_message(self):
        exc = CalendarApiError(status_code=500, message="Backend Error")
        assert categorize_error(exc) == (API_ERROR, "Backend Error")

    def test_empty_message_gets_fallback(self):
        assert categorize_error(RuntimeError()) == (SERVER_ERROR, "An unexpected error occurred")


class TestSanitizeErrorMessage:
    def test_redacts_credentials(self):
        message = sanitize_error_message(
            "refresh failed: refresh_token=abc123 client_secret=shh "
            "Authorization: Bearer ya29.token {'access_token': 'tok'}"
        )
        assert "abc123" not in message
        assert "shh" not in message
        assert "ya29.token" not in message
        assert "'tok'" not in message
        assert "[REDACTED]" in message

    def test_collapses_whitespace_and_truncates(self):
        message = sanitize_error_message("a  b\n\nc " + "x" * 500)
        assert message.startswith("a b c ")
        assert len(message) == 200


class TestBuildErrorEnvelope:
    def test_scheduling_conflict_includes_report(self):
        report = ConflictReport(has_conflicts=True, time_conflicts=[make_event("busy")])
        envelope = build_error_envelope(SchedulingConflictError(report))
        assert envelope["status"] == "error"
        assert envelope["error_type"] == SCHEDULING_CONFLICT
        assert envelope["error"] == "Scheduling conflict detected"
        assert envelope["conflicts"]["timeConflicts"][0]["id"] == "busy"

    def test_plain_error_has_no_conflicts(self):
        envelope = build_error_envelope(CalendarValidationError("bad input"))
        assert envelope == {
            "status": "error",
            "error_type": VALIDATION_ERROR,
            "error": "bad input",
        }


class TestExecute:
    async def test_missing_action(self, dispatcher):
        result = await dispatcher.execute(None, {})
        assert result == {
            "status": "error",
            "error_type": VALIDATION_ERROR,
            "error": "Missing required field: action",
        }

    async def test_unknown_action(self, dispatcher):
        result = await dispatcher.execute("teleport", {})
        assert result["error"] == "Unknown action: teleport"

    async def test_success_envelope(self, dispatcher, provider):
        provider.calendars = [{"id": "primary"}]
        result = await dispatcher.execute("list_calendars")
        assert result["status"] == "success"
        assert result["data"][0]["id"] == "primary"

    async def test_required_params_missing(self, dispatcher, provider):
        result = await dispatcher.execute("create_event", {"summary": "Planning"})
        assert result["error_type"] == VALIDATION_ERROR
        assert result["error"] == "Missing required parameters: start, end"
        assert provider.insert_calls == []

    async def test_no_params_for_action_that_needs_them(self, dispatcher):
        result = await dispatcher.execute("get_event", None)
        assert result["error"] == "No parameters provided"

    async def test_update_without_fields(self, dispatcher):
        result = await dispatcher.execute("update_event", {"eventId": "evt-1"})
        assert result["error"] == "At least one field to update must be provided"

    async def test_invalid_threshold_rejected_before_fetch(self, dispatcher, provider):
        result = await dispatcher.execute("find_duplicates", {"similarityThreshold": 2})
        assert result["error_type"] == VALIDATION_ERROR
        assert provider.list_queries == []

    async def test_detect_conflicts_rejects_bad_times(self, dispatcher):
        result = await dispatcher.execute(
            "detect_conflicts", {"start": {"dateTime": "soon"}, "end": _END}
        )
        assert result["error_type"] == VALIDATION_ERROR
        assert result["error"].startswith("Invalid start time format")

    async def test_not_found_envelope(self, dispatcher):
        result = await dispatcher.execute("get_event", {"eventId": "nope"})
        assert result["error_type"] == NOT_FOUND_ERROR
        assert result["error"] == "Event not found with ID: nope in calendar: primary"

    async def test_scheduling_conflict_envelope(self, dispatcher, provider):
        provider.events = [make_event("busy")]
        result = await dispatcher.execute(
            "create_event", {"summary": "Planning", "start": _START, "end": _END}
        )
        assert result["error_type"] == SCHEDULING_CONFLICT
        assert result["conflicts"]["hasConflicts"] is True
        assert result["conflicts"]["summary"]["timeConflictsCount"] == 1

    async def test_unexpected_error_logged_as_server_error(self, session, caplog):
        async def explode(session, params):
            raise RuntimeError("kaboom")

        dispatcher = ActionDispatcher(session)
        dispatcher.register(ActionSpec(name="explode", handler=explode, description="Fails"))

        with caplog.at_level(logging.ERROR, logger="gcal_mcp.modules.calendar.dispatcher"):
            result = await dispatcher.execute("explode", {})

        assert result == {"status": "error", "error_type": SERVER_ERROR, "error": "kaboom"}
        assert "Calendar action explode failed" in caplog.text

    async def test_action_context_set_during_handler(self, session):
        seen: list[str | None] = []

        async def record(session, params):
            seen.append(get_action_context())
            return {}

        dispatcher = ActionDispatcher(session)
        dispatcher.register(ActionSpec(name="record", handler=record, description="Records"))
        await dispatcher.execute("record", {})

        assert seen == ["record"]
        assert get_action_context() is None


class TestBatchOperations:
    async def test_runs_sequentially_and_continues_past_failures(self, dispatcher, provider):
        provider.stored["evt-1"] = make_event("evt-1", summary="Existing")

        result = await dispatcher.execute(
            "batch_operations",
            {
                "operations": [
                    {"action": "get_event", "parameters": {"eventId": "evt-1"}},
                    {"action": "get_event", "parameters": {"eventId": "missing"}},
                    {
                        "action": "create_event",
                        "parameters": {"summary": "New", "start": _START, "end": _END},
                    },
                    {"action": "delete_event", "parameters": {"eventId": "evt-1"}},
                ]
            },
        )

        assert result["status"] == "success"
        data = result["data"]
        assert data["operations_count"] == 4
        assert data["success_count"] == 3
        assert data["error_count"] == 1
        assert [item["success"] for item in data["results"]] == [True, False, True, True]
        assert data["results"][0]["data"]["summary"] == "Existing"
        assert data["results"][1]["error_type"] == NOT_FOUND_ERROR
        assert len(provider.insert_calls) == 1
        assert provider.delete_calls[-1]["event_id"] == "evt-1"

    async def test_conflicting_create_fails_only_that_item(self, dispatcher, provider):
        provider.events = [make_event("busy")]
        provider.stored["busy"] = provider.events[0]

        result = await dispatcher.execute(
            "batch_operations",
            {
                "operations": [
                    {
                        "action": "create_event",
                        "parameters": {"summary": "Clash", "start": _START, "end": _END},
                    },
                    {"action": "get_event", "parameters": {"eventId": "busy"}},
                ]
            },
        )

        results = result["data"]["results"]
        assert results[0]["success"] is False
        assert results[0]["error_type"] == SCHEDULING_CONFLICT
        assert results[1]["success"] is True

    async def test_unsupported_action_in_batch(self, dispatcher):
        result = await dispatcher.execute(
            "batch_operations",
            {"operations": [{"action": "find_duplicates", "parameters": {"timeMin": "x"}}]},
        )
        item = result["data"]["results"][0]
        assert item["success"] is False
        assert item["error"] == "Unsupported action in batch operation: find_duplicates"

    async def test_item_validation_error(self, dispatcher):
        result = await dispatcher.execute(
            "batch_operations",
            {"operations": [{"action": "update_event", "parameters": {"eventId": "evt-1"}}]},
        )
        item = result["data"]["results"][0]
        assert item["error_type"] == VALIDATION_ERROR
        assert item["error"] == "At least one field to update must be provided"

    @pytest.mark.parametrize(
        ("operations", "message"),
        [
            ([], "No operations provided for batch processing"),
            ([{"parameters": {"eventId": "x"}}], "Each operation must have an action property"),
            ([{"action": "get_event"}], "Each operation must have parameters"),
        ],
    )
    async def test_structural_errors_reject_whole_batch(
        self, dispatcher, provider, operations, message
    ):
        result = await dispatcher.execute("batch_operations", {"operations": operations})
        assert result == {"status": "error", "error_type": VALIDATION_ERROR, "error": message}

    async def test_operations_must_be_a_list(self, dispatcher):
        result = await dispatcher.execute("batch_operations", {"operations": "all of them"})
        assert result["error"] == "operations must be an array"


class TestDescribeActions:
    def test_catalogue(self, dispatcher):
        description = dispatcher.describe_actions()
        assert set(description["actions"]) == {
            "list_calendars",
            "list_events",
            "list_recurring_instances",
            "create_event",
            "get_event",
            "update_event",
            "delete_event",
            "find_duplicates",
            "batch_operations",
            "advanced_search_events",
            "detect_conflicts",
            "create_event_exception",
            "delete_event_instance",
            "manage_webhooks",
        }
        assert description["actions"]["create_event"]["required_parameters"] == [
            "summary",
            "start",
            "end",
        ]
        assert description["error_types"] == list(ERROR_TYPES)
