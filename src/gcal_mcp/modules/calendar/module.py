"""Calendar module: configuration, provider lifecycle and MCP tool registration.

Every calendar tool funnels into :class:`ActionDispatcher`, so tools return
the same ``{"status": ...}`` envelope whether they succeed or fail. The
provider is created lazily from stored OAuth tokens, which lets the server
start before the user has authorized and pick up tokens saved later by
``gcal-mcp authorize``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gcal_mcp.config import GoogleConfig
from gcal_mcp.core.state import StateStore
from gcal_mcp.google_oauth import (
    GoogleOAuthCredentials,
    build_auth_url,
    load_tokens,
)
from gcal_mcp.modules.base import Module
from gcal_mcp.modules.calendar.actions import CalendarSession
from gcal_mcp.modules.calendar.dispatcher import (
    AUTHENTICATION_ERROR,
    ActionDispatcher,
    build_error_envelope,
)
from gcal_mcp.modules.calendar.duplicates import DEFAULT_DUPLICATE_THRESHOLD
from gcal_mcp.modules.calendar.errors import CalendarCredentialError
from gcal_mcp.modules.calendar.notifications import ReminderService
from gcal_mcp.modules.calendar.provider import CalendarProvider, GoogleCalendarProvider

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_BUFFER_MINUTES = 60
DEFAULT_REMINDER_INTERVAL_MINUTES = 5


class CalendarReminderConfig(BaseModel):
    """Periodic reminder sweep configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    interval_minutes: int = Field(default=DEFAULT_REMINDER_INTERVAL_MINUTES, ge=1)


class CalendarConfig(BaseModel):
    """Configuration for the Calendar module."""

    model_config = ConfigDict(extra="forbid")

    provider: str = "google"
    calendar_id: str = "primary"
    timezone: str = "UTC"
    conflict_buffer_minutes: int = Field(default=DEFAULT_CONFLICT_BUFFER_MINUTES, ge=0)
    duplicate_threshold: float = Field(default=DEFAULT_DUPLICATE_THRESHOLD, ge=0.0, le=1.0)
    reminders: CalendarReminderConfig = Field(default_factory=CalendarReminderConfig)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must be a non-empty string")
        return normalized

    @field_validator("calendar_id", "timezone")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _params(**kwargs: Any) -> dict[str, Any]:
    """Build camelCase action parameters from tool arguments, dropping unset ones."""
    return {_to_camel(key): value for key, value in kwargs.items() if value is not None}


class CalendarModule(Module):
    """Calendar module with provider selection and validated config."""

    _PROVIDER_CLASSES: dict[str, type[GoogleCalendarProvider]] = {
        "google": GoogleCalendarProvider,
    }

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._config: CalendarConfig | None = None
        self._store: StateStore | None = None
        self._google: GoogleConfig | None = None
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._provider: CalendarProvider | None = None
        self._dispatcher: ActionDispatcher | None = None
        self._reminders: ReminderService | None = None
        self._dispatcher_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "calendar"

    @property
    def config_schema(self) -> type[BaseModel]:
        return CalendarConfig

    @property
    def dispatcher(self) -> ActionDispatcher | None:
        return self._dispatcher

    @staticmethod
    def _coerce_config(config: Any) -> CalendarConfig:
        return config if isinstance(config, CalendarConfig) else CalendarConfig(**(config or {}))

    def _require_config(self) -> CalendarConfig:
        if self._config is None:
            raise RuntimeError("CalendarModule is not configured")
        return self._config

    def _require_store(self) -> StateStore:
        if self._store is None:
            raise RuntimeError("CalendarModule has no state store; call on_startup first")
        return self._store

    def _require_google(self) -> GoogleConfig:
        if self._google is None or not self._google.configured:
            raise CalendarCredentialError(
                "Google OAuth client is not configured (set google.client_id and "
                "google.client_secret)"
            )
        return self._google

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
            self._owns_http_client = True
        return self._http_client

    def set_provider(self, provider: CalendarProvider) -> None:
        """Install an already-built provider (tests, alternative backends)."""
        self._provider = provider
        self._dispatcher = ActionDispatcher(self._build_session(provider))

    def _build_session(self, provider: CalendarProvider) -> CalendarSession:
        config = self._require_config()
        return CalendarSession(
            provider=provider,
            store=self._require_store(),
            calendar_id=config.calendar_id,
            timezone=config.timezone,
            conflict_buffer=timedelta(minutes=config.conflict_buffer_minutes),
            duplicate_threshold=config.duplicate_threshold,
        )

    async def _ensure_dispatcher(self) -> ActionDispatcher | None:
        """Build the provider from stored tokens on first use; ``None`` if unauthorized.

        Reminders start with the first dispatcher, so tokens saved after
        startup still enable the sweep.
        """
        if self._dispatcher is None:
            async with self._dispatcher_lock:
                if self._dispatcher is None:
                    await self._connect_provider()
        if self._dispatcher is not None:
            self._start_reminders(self._dispatcher)
        return self._dispatcher

    async def _connect_provider(self) -> None:
        if self._google is None or not self._google.configured:
            return

        tokens = await load_tokens(self._require_store())
        if tokens is None or not tokens.refresh_token:
            return

        config = self._require_config()
        provider_cls = self._PROVIDER_CLASSES.get(config.provider)
        if provider_cls is None:
            supported = ", ".join(sorted(self._PROVIDER_CLASSES))
            raise RuntimeError(
                f"Unsupported calendar provider '{config.provider}'. "
                f"Supported providers: {supported}"
            )

        credentials = GoogleOAuthCredentials(
            client_id=self._google.client_id,
            client_secret=self._google.client_secret,
            refresh_token=tokens.refresh_token,
        )
        self.set_provider(provider_cls(credentials, http_client=self._get_http_client()))
        logger.info(
            "Calendar provider %s connected (calendar_id=%s)", config.provider, config.calendar_id
        )

    def _start_reminders(self, dispatcher: ActionDispatcher) -> None:
        if self._reminders is not None or self._config is None:
            return
        if not self._config.reminders.enabled:
            return
        self._reminders = ReminderService(
            dispatcher.session,
            self._get_http_client(),
            interval_seconds=self._config.reminders.interval_minutes * 60,
        )
        self._reminders.start()

    def _not_authenticated(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "status": "error",
            "error_type": AUTHENTICATION_ERROR,
            "error": "Not authenticated",
        }
        if self._google is not None and self._google.configured:
            envelope["auth_url"] = build_auth_url(
                client_id=self._google.client_id,
                redirect_uri=self._google.redirect_uri,
            )
        return envelope

    async def execute(self, action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a calendar action and return its status envelope."""
        try:
            dispatcher = await self._ensure_dispatcher()
        except Exception as exc:
            logger.warning("Calendar provider setup failed: %s", exc)
            return build_error_envelope(exc)
        if dispatcher is None:
            return self._not_authenticated()
        return await dispatcher.execute(action, params)

    async def auth_url(self) -> dict[str, Any]:
        try:
            google = self._require_google()
        except CalendarCredentialError as exc:
            return build_error_envelope(exc)
        return {
            "auth_url": build_auth_url(
                client_id=google.client_id, redirect_uri=google.redirect_uri
            )
        }

    async def auth_status(self) -> dict[str, Any]:
        tokens = await load_tokens(self._require_store())
        return {
            "authenticated": tokens is not None and bool(tokens.refresh_token),
            "token_status": tokens.status() if tokens is not None else None,
        }

    async def register_tools(self, mcp: Any, config: Any, store: Any) -> None:
        self._config = self._coerce_config(config)
        if store is not None:
            self._store = store
        module = self

        @mcp.tool()
        async def list_calendars() -> dict[str, Any]:
            """List available calendars the user has access to."""
            return await module.execute("list_calendars", {})

        @mcp.tool()
        async def list_events(
            calendar_id: str | None = None,
            time_min: str | None = None,
            time_max: str | None = None,
            max_results: int | None = None,
            q: str | None = None,
            order_by: str | None = None,
            page_token: str | None = None,
            sync_token: str | None = None,
            time_zone: str | None = None,
            single_events: bool | None = None,
            show_deleted: bool | None = None,
        ) -> dict[str, Any]:
            """List calendar events. ``time_min`` defaults to now."""
            return await module.execute(
                "list_events",
                _params(
                    calendar_id=calendar_id,
                    time_min=time_min,
                    time_max=time_max,
                    max_results=max_results,
                    q=q,
                    order_by=order_by,
                    page_token=page_token,
                    sync_token=sync_token,
                    time_zone=time_zone,
                    single_events=single_events,
                    show_deleted=show_deleted,
                ),
            )

        @mcp.tool()
        async def list_recurring_instances(
            event_id: str,
            calendar_id: str | None = None,
            time_min: str | None = None,
            time_max: str | None = None,
            max_results: int | None = None,
        ) -> dict[str, Any]:
            """List instances of a recurring event."""
            return await module.execute(
                "list_recurring_instances",
                _params(
                    event_id=event_id,
                    calendar_id=calendar_id,
                    time_min=time_min,
                    time_max=time_max,
                    max_results=max_results,
                ),
            )

        @mcp.tool()
        async def create_event(
            summary: str,
            start: dict[str, Any],
            end: dict[str, Any],
            calendar_id: str | None = None,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            recurrence: list[str] | None = None,
            reminders: dict[str, Any] | None = None,
            check_conflicts: bool | None = None,
            allow_conflicts: bool | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Create an event.

            ``start``/``end`` take Google's shape: ``{"dateTime": ..., "timeZone": ...}``
            or ``{"date": "YYYY-MM-DD"}``. Overlaps are rejected unless
            ``allow_conflicts`` is true.
            """
            return await module.execute(
                "create_event",
                _params(
                    summary=summary,
                    start=start,
                    end=end,
                    calendar_id=calendar_id,
                    description=description,
                    location=location,
                    attendees=attendees,
                    recurrence=recurrence,
                    reminders=reminders,
                    check_conflicts=check_conflicts,
                    allow_conflicts=allow_conflicts,
                    send_updates=send_updates,
                ),
            )

        @mcp.tool()
        async def get_event(event_id: str, calendar_id: str | None = None) -> dict[str, Any]:
            """Get details of a specific event."""
            return await module.execute(
                "get_event", _params(event_id=event_id, calendar_id=calendar_id)
            )

        @mcp.tool()
        async def update_event(
            event_id: str,
            calendar_id: str | None = None,
            summary: str | None = None,
            description: str | None = None,
            start: dict[str, Any] | None = None,
            end: dict[str, Any] | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            recurrence: list[str] | None = None,
            clear_attendees: bool = False,
            clear_recurrence: bool = False,
            check_conflicts: bool | None = None,
            allow_conflicts: bool | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Update an existing event; only provided fields change."""
            params = _params(
                event_id=event_id,
                calendar_id=calendar_id,
                summary=summary,
                description=description,
                start=start,
                end=end,
                location=location,
                attendees=attendees,
                recurrence=recurrence,
                check_conflicts=check_conflicts,
                allow_conflicts=allow_conflicts,
                send_updates=send_updates,
            )
            if clear_attendees:
                params["attendees"] = None
            if clear_recurrence:
                params["recurrence"] = None
            return await module.execute("update_event", params)

        @mcp.tool()
        async def delete_event(
            event_id: str,
            calendar_id: str | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Delete an event."""
            return await module.execute(
                "delete_event",
                _params(event_id=event_id, calendar_id=calendar_id, send_updates=send_updates),
            )

        @mcp.tool()
        async def find_duplicates(
            calendar_id: str | None = None,
            time_min: str | None = None,
            time_max: str | None = None,
            similarity_threshold: float | None = None,
        ) -> dict[str, Any]:
            """Find groups of likely duplicate events (window defaults to the next 30 days)."""
            return await module.execute(
                "find_duplicates",
                _params(
                    calendar_id=calendar_id,
                    time_min=time_min,
                    time_max=time_max,
                    similarity_threshold=similarity_threshold,
                ),
            )

        @mcp.tool()
        async def batch_operations(operations: list[dict[str, Any]]) -> dict[str, Any]:
            """Run create/update/delete/get operations sequentially.

            Each operation is ``{"action": ..., "parameters": {...}}`` with
            camelCase parameter names.
            """
            return await module.execute("batch_operations", {"operations": operations})

        @mcp.tool()
        async def advanced_search_events(
            calendar_id: str | None = None,
            time_range: dict[str, str] | None = None,
            text_search: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            status: str | None = None,
            created_after: str | None = None,
            updated_after: str | None = None,
            has_attachments: bool | None = None,
            is_recurring: bool | None = None,
            max_results: int | None = None,
        ) -> dict[str, Any]:
            """Search events with filters on location, attendees, status and more."""
            return await module.execute(
                "advanced_search_events",
                _params(
                    calendar_id=calendar_id,
                    time_range=time_range,
                    text_search=text_search,
                    location=location,
                    attendees=attendees,
                    status=status,
                    created_after=created_after,
                    updated_after=updated_after,
                    has_attachments=has_attachments,
                    is_recurring=is_recurring,
                    max_results=max_results,
                ),
            )

        @mcp.tool()
        async def detect_conflicts(
            start: dict[str, Any],
            end: dict[str, Any],
            calendar_id: str | None = None,
            attendees: list[str] | None = None,
            event_id: str | None = None,
            check_attendees: bool | None = None,
        ) -> dict[str, Any]:
            """Report events overlapping a proposed time span."""
            return await module.execute(
                "detect_conflicts",
                _params(
                    start=start,
                    end=end,
                    calendar_id=calendar_id,
                    attendees=attendees,
                    event_id=event_id,
                    check_attendees=check_attendees,
                ),
            )

        @mcp.tool()
        async def create_event_exception(
            recurring_event_id: str,
            original_start_time: str,
            calendar_id: str | None = None,
            summary: str | None = None,
            description: str | None = None,
            location: str | None = None,
            start: dict[str, Any] | None = None,
            end: dict[str, Any] | None = None,
            attendees: list[str] | None = None,
            reminders: dict[str, Any] | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Modify one instance of a recurring event, identified by its original start."""
            return await module.execute(
                "create_event_exception",
                _params(
                    recurring_event_id=recurring_event_id,
                    original_start_time=original_start_time,
                    calendar_id=calendar_id,
                    summary=summary,
                    description=description,
                    location=location,
                    start=start,
                    end=end,
                    attendees=attendees,
                    reminders=reminders,
                    send_updates=send_updates,
                ),
            )

        @mcp.tool()
        async def delete_event_instance(
            recurring_event_id: str,
            original_start_time: str,
            calendar_id: str | None = None,
            send_updates: str | None = None,
        ) -> dict[str, Any]:
            """Delete one instance of a recurring event, identified by its original start."""
            return await module.execute(
                "delete_event_instance",
                _params(
                    recurring_event_id=recurring_event_id,
                    original_start_time=original_start_time,
                    calendar_id=calendar_id,
                    send_updates=send_updates,
                ),
            )

        @mcp.tool()
        async def manage_webhooks(
            operation: str,
            address: str | None = None,
            webhook_id: str | None = None,
        ) -> dict[str, Any]:
            """Create, list or delete webhooks that receive upcoming-event reminders."""
            return await module.execute(
                "manage_webhooks",
                _params(operation=operation, address=address, webhook_id=webhook_id),
            )

        @mcp.tool()
        async def get_auth_url() -> dict[str, Any]:
            """Return the Google consent URL for authorizing calendar access."""
            return await module.auth_url()

        @mcp.tool()
        async def check_auth_status() -> dict[str, Any]:
            """Report whether OAuth tokens are stored and when they expire."""
            return await module.auth_status()

    async def on_startup(self, config: Any, store: Any, credentials: Any = None) -> None:
        """Store configuration and start the reminder sweep when enabled.

        The provider itself is connected on first use; see ``_ensure_dispatcher``.
        """
        self._config = self._coerce_config(config)
        self._store = store
        self._google = credentials

        if self._config.reminders.enabled and await self._ensure_dispatcher() is None:
            logger.warning("Reminder service not started yet: calendar is not authorized")

    async def on_shutdown(self) -> None:
        if self._reminders is not None:
            await self._reminders.stop()
        self._reminders = None

        if self._provider is not None:
            await self._provider.shutdown()
        self._provider = None
        self._dispatcher = None

        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
        self._http_client = None
