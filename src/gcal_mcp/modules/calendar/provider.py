"""Calendar gateway: provider interface and the Google Calendar REST implementation."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from gcal_mcp.google_oauth import GoogleOAuthClient, GoogleOAuthCredentials
from gcal_mcp.modules.calendar.errors import CalendarApiError, CalendarValidationError
from gcal_mcp.modules.calendar.google_payloads import (
    api_error_from_response,
    normalize_send_updates,
    parse_google_event,
)
from gcal_mcp.modules.calendar.models import CalendarEvent, format_rfc3339

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Google caps events.list pages at 2500 items.
MAX_PAGE_SIZE = 2500
VALID_ORDER_BY = ("startTime", "updated")


@dataclass
class EventListQuery:
    """Parameters for one ``events.list`` page."""

    calendar_id: str = "primary"
    time_min: datetime | None = None
    time_max: datetime | None = None
    max_results: int = 10
    q: str | None = None
    order_by: str = "startTime"
    page_token: str | None = None
    sync_token: str | None = None
    time_zone: str | None = None
    show_deleted: bool = False
    show_hidden_invitations: bool = False
    single_events: bool = True
    updated_min: datetime | None = None
    ical_uid: str | None = None

    def __post_init__(self) -> None:
        if self.max_results < 1:
            raise CalendarValidationError("maxResults must be at least 1")
        if self.order_by not in VALID_ORDER_BY:
            self.order_by = "startTime"

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "maxResults": min(self.max_results, MAX_PAGE_SIZE),
            "singleEvents": self.single_events,
        }
        # Google rejects orderBy with a syncToken, and orderBy=startTime unless
        # recurring events are expanded.
        if self.sync_token is None and (self.single_events or self.order_by == "updated"):
            params["orderBy"] = self.order_by
        if self.time_min is not None:
            params["timeMin"] = format_rfc3339(self.time_min)
        if self.time_max is not None:
            params["timeMax"] = format_rfc3339(self.time_max)
        if self.q:
            params["q"] = self.q
        if self.page_token:
            params["pageToken"] = self.page_token
        if self.sync_token:
            params["syncToken"] = self.sync_token
        if self.time_zone:
            params["timeZone"] = self.time_zone
        if self.show_deleted:
            params["showDeleted"] = True
        if self.show_hidden_invitations:
            params["showHiddenInvitations"] = True
        if self.updated_min is not None:
            params["updatedMin"] = format_rfc3339(self.updated_min)
        if self.ical_uid:
            params["iCalUID"] = self.ical_uid
        return params


@dataclass
class EventPage:
    events: list[CalendarEvent] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


class CalendarProvider(abc.ABC):
    """Gateway abstraction used by calendar actions."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[dict[str, Any]]:
        """Return raw calendar-list entries."""
        ...

    @abc.abstractmethod
    async def list_events(self, query: EventListQuery) -> EventPage:
        """Return one page of events matching ``query``."""
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        """Fetch a single event by id; ``None`` when it does not exist."""
        ...

    @abc.abstractmethod
    async def list_instances(
        self,
        *,
        calendar_id: str,
        event_id: str,
        max_results: int,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[CalendarEvent]:
        """Return expanded instances of a recurring event."""
        ...

    @abc.abstractmethod
    async def insert_event(
        self,
        *,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        """Create an event from a Google-shaped body."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        """Apply a partial update; fields absent from ``body`` are left untouched."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: str | None = None,
    ) -> None:
        """Delete an event or a single recurrence instance."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = GoogleOAuthClient(credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise api_error_from_response(response)

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarApiError(
                status_code=503,
                message=f"Google Calendar request failed: {exc}",
            ) from exc

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        normalized_calendar_id = quote(calendar_id, safe="")
        if event_id is None:
            return f"/calendars/{normalized_calendar_id}/events"
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise CalendarValidationError("eventId must be a non-empty string")
        return f"/calendars/{normalized_calendar_id}/events/{quote(normalized_event_id, safe='')}"

    @staticmethod
    def _send_updates_params(send_updates: str | None) -> dict[str, Any] | None:
        normalized = normalize_send_updates(send_updates)
        return {"sendUpdates": normalized} if normalized is not None else None

    def _parse_items(self, payload: dict[str, Any], calendar_id: str) -> list[CalendarEvent]:
        items = payload.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise CalendarApiError(
                status_code=200,
                message="Google Calendar list response has a non-list items field",
            )
        return [
            parse_google_event(item, calendar_id=calendar_id)
            for item in items
            if isinstance(item, dict)
        ]

    async def list_calendars(self) -> list[dict[str, Any]]:
        payload = await self._request_google_json("GET", "/users/me/calendarList")
        items = payload.get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    async def list_events(self, query: EventListQuery) -> EventPage:
        payload = await self._request_google_json(
            "GET",
            self._event_path(query.calendar_id),
            params=query.to_params(),
        )
        next_page_token = payload.get("nextPageToken")
        next_sync_token = payload.get("nextSyncToken")
        return EventPage(
            events=self._parse_items(payload, query.calendar_id),
            next_page_token=next_page_token if isinstance(next_page_token, str) else None,
            next_sync_token=next_sync_token if isinstance(next_sync_token, str) else None,
        )

    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        response = await self._request_with_bearer(
            method="GET",
            path=self._event_path(calendar_id, event_id),
        )
        if response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise api_error_from_response(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for get_event",
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarApiError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected get_event payload",
            )
        return parse_google_event(payload, calendar_id=calendar_id)

    async def list_instances(
        self,
        *,
        calendar_id: str,
        event_id: str,
        max_results: int,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[CalendarEvent]:
        if max_results < 1:
            raise CalendarValidationError("maxResults must be at least 1")
        params: dict[str, Any] = {"maxResults": min(max_results, MAX_PAGE_SIZE)}
        if time_min is not None:
            params["timeMin"] = format_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = format_rfc3339(time_max)

        payload = await self._request_google_json(
            "GET",
            f"{self._event_path(calendar_id, event_id)}/instances",
            params=params,
        )
        return self._parse_items(payload, calendar_id)

    async def insert_event(
        self,
        *,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        payload = await self._request_google_json(
            "POST",
            self._event_path(calendar_id),
            params=self._send_updates_params(send_updates),
            json_body=body,
        )
        return parse_google_event(payload, calendar_id=calendar_id)

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> CalendarEvent:
        payload = await self._request_google_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            params=self._send_updates_params(send_updates),
            json_body=body,
        )
        return parse_google_event(payload, calendar_id=calendar_id)

    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: str | None = None,
    ) -> None:
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._event_path(calendar_id, event_id),
            params=self._send_updates_params(send_updates),
        )
        # 404 or 410 means the event is already gone.
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise api_error_from_response(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
