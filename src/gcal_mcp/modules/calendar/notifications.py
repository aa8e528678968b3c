"""Webhook registrations, notification delivery and upcoming-event reminders.

Registrations and sent-reminder markers live in the ``StateStore``:

- ``calendar::webhook::{id}``: one ``WebhookRegistration`` per key
- ``calendar::reminder_sent::{webhook_id}::{event_id}``: when that webhook was
  reminded about that event

``ReminderService`` drives ``process_all_reminders`` on a fixed interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict

from gcal_mcp.core.state import StateStore
from gcal_mcp.modules.calendar.actions import CalendarSession
from gcal_mcp.modules.calendar.errors import (
    CalendarNotFoundError,
    CalendarValidationError,
    NotificationDeliveryError,
)
from gcal_mcp.modules.calendar.models import CalendarEvent, format_rfc3339
from gcal_mcp.modules.calendar.provider import EventListQuery

logger = logging.getLogger(__name__)

WEBHOOK_KEY_PREFIX = "calendar::webhook::"
REMINDER_SENT_KEY_PREFIX = "calendar::reminder_sent::"

WEBHOOK_LIFETIME = timedelta(days=7)
REMINDER_LOOKAHEAD = timedelta(hours=1)
REMINDER_MAX_EVENTS = 50
DEFAULT_REMINDER_INTERVAL_SECONDS = 300.0

NOTIFICATION_TIMEOUT_SECONDS = 10.0
NOTIFICATION_MAX_RETRIES = 3
NOTIFICATION_RETRY_DELAY_SECONDS = 2.0

WEBHOOK_OPERATIONS = ("create", "list", "delete")


class WebhookRegistration(BaseModel):
    """A callback address that receives reminder notifications."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    address: str
    created_at: datetime
    expiration: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expiration

    def to_payload(self) -> dict[str, Any]:
        return {
            "webhookId": self.webhook_id,
            "address": self.address,
            "createdAt": format_rfc3339(self.created_at),
            "expiration": format_rfc3339(self.expiration),
        }


def _webhook_key(webhook_id: str) -> str:
    return f"{WEBHOOK_KEY_PREFIX}{webhook_id}"


def _reminder_key(webhook_id: str, event_id: str) -> str:
    return f"{REMINDER_SENT_KEY_PREFIX}{webhook_id}::{event_id}"


def _validate_address(address: Any) -> str:
    if not isinstance(address, str) or not address.strip():
        raise CalendarValidationError("address is required to create a webhook")
    parsed = urlparse(address.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CalendarValidationError("address must be an http(s) URL")
    return address.strip()


async def get_webhook(store: StateStore, webhook_id: str) -> WebhookRegistration | None:
    raw = await store.get(_webhook_key(webhook_id))
    if not isinstance(raw, dict):
        return None
    return WebhookRegistration.model_validate(raw)


async def list_webhooks(store: StateStore) -> list[WebhookRegistration]:
    registrations = []
    for key in await store.list_keys(WEBHOOK_KEY_PREFIX):
        raw = await store.get(key)
        if isinstance(raw, dict):
            registrations.append(WebhookRegistration.model_validate(raw))
    return registrations


async def create_webhook(
    store: StateStore, address: Any, *, now: datetime | None = None
) -> WebhookRegistration:
    created_at = now or datetime.now(UTC)
    registration = WebhookRegistration(
        webhook_id=uuid.uuid4().hex,
        address=_validate_address(address),
        created_at=created_at,
        expiration=created_at + WEBHOOK_LIFETIME,
    )
    await store.set(_webhook_key(registration.webhook_id), registration.model_dump(mode="json"))
    logger.info("Registered webhook %s -> %s", registration.webhook_id, registration.address)
    return registration


async def delete_webhook(store: StateStore, webhook_id: Any) -> None:
    if not isinstance(webhook_id, str) or not webhook_id.strip():
        raise CalendarValidationError("webhookId is required to delete a webhook")
    if await get_webhook(store, webhook_id) is None:
        raise CalendarNotFoundError(f"Webhook not found: {webhook_id}")
    await store.delete(_webhook_key(webhook_id))
    for key in await store.list_keys(f"{REMINDER_SENT_KEY_PREFIX}{webhook_id}::"):
        await store.delete(key)
    logger.info("Deleted webhook %s", webhook_id)


async def manage_webhooks(session: CalendarSession, params: Mapping[str, Any]) -> dict[str, Any]:
    """Create, list or delete webhook registrations."""
    operation = params.get("operation")
    if operation not in WEBHOOK_OPERATIONS:
        raise CalendarValidationError(
            f"operation must be one of: {', '.join(WEBHOOK_OPERATIONS)}"
        )

    if operation == "create":
        registration = await create_webhook(session.store, params.get("address"), now=session.now())
        return registration.to_payload()
    if operation == "list":
        registrations = await list_webhooks(session.store)
        return {
            "webhooks": [registration.to_payload() for registration in registrations],
            "count": len(registrations),
        }

    webhook_id = params.get("webhookId")
    await delete_webhook(session.store, webhook_id)
    return {"webhookId": webhook_id, "deleted": True}


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def send_notification(
    http_client: httpx.AsyncClient,
    address: str,
    payload: dict[str, Any],
    *,
    max_retries: int = NOTIFICATION_MAX_RETRIES,
    retry_delay: float = NOTIFICATION_RETRY_DELAY_SECONDS,
    timeout: float = NOTIFICATION_TIMEOUT_SECONDS,
) -> httpx.Response:
    """POST ``payload`` to ``address``.

    Server errors are retried after a fixed delay. Connection failures and
    timeouts back off exponentially. Client errors fail immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            response = await http_client.post(
                address,
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "X-Retry-Attempt": str(attempt),
                },
                timeout=timeout,
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            if attempt >= max_retries:
                raise NotificationDeliveryError(
                    f"Failed to send notification: {exc}"
                ) from exc
            backoff = retry_delay * 2 ** (attempt - 1)
            logger.warning(
                "Notification to %s failed (%s); retrying in %.1fs", address, exc, backoff
            )
            await asyncio.sleep(backoff)
            continue
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(f"Failed to send notification: {exc}") from exc

        if 200 <= response.status_code < 300:
            return response

        if response.status_code >= 500 and attempt < max_retries:
            logger.warning(
                "Notification to %s returned %d; retrying in %.1fs",
                address,
                response.status_code,
                retry_delay,
            )
            await asyncio.sleep(retry_delay)
            continue

        raise NotificationDeliveryError(
            f"Failed to send notification: {response.status_code} {response.reason_phrase}"
        )


def _reminder_event_payload(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "summary": event.summary,
        "start": event.start.to_google() if event.start is not None else None,
        "end": event.end.to_google() if event.end is not None else None,
        "location": event.location,
        "status": event.status.value,
    }


async def process_reminders(
    session: CalendarSession, http_client: httpx.AsyncClient, webhook_id: str
) -> dict[str, Any]:
    """Send one reminder batch for events starting within the next hour."""
    registration = await get_webhook(session.store, webhook_id)
    if registration is None:
        return {"success": False, "error": f"Webhook not found: {webhook_id}"}

    now = session.now()
    page = await session.provider.list_events(
        EventListQuery(
            calendar_id=session.calendar_id,
            time_min=now,
            time_max=now + REMINDER_LOOKAHEAD,
            max_results=REMINDER_MAX_EVENTS,
            single_events=True,
            order_by="startTime",
        )
    )

    pending = []
    for event in page.events:
        if await session.store.get(_reminder_key(webhook_id, event.event_id)) is None:
            pending.append(event)

    if not pending:
        return {"success": True, "remindersSent": 0}

    await send_notification(
        http_client,
        registration.address,
        {
            "type": "event_reminder",
            "events": [_reminder_event_payload(event) for event in pending],
            "timestamp": format_rfc3339(now),
        },
    )
    sent_at = format_rfc3339(now)
    for event in pending:
        await session.store.set(_reminder_key(webhook_id, event.event_id), sent_at)

    logger.info("Sent %d reminder(s) to webhook %s", len(pending), webhook_id)
    return {"success": True, "remindersSent": len(pending)}


async def process_all_reminders(
    session: CalendarSession, http_client: httpx.AsyncClient
) -> dict[str, Any]:
    """Run ``process_reminders`` for every live webhook; one failure does not stop the rest."""
    now = session.now()
    results: dict[str, Any] = {}
    for registration in await list_webhooks(session.store):
        if registration.is_expired(now):
            logger.debug("Skipping expired webhook %s", registration.webhook_id)
            continue
        try:
            results[registration.webhook_id] = await process_reminders(
                session, http_client, registration.webhook_id
            )
        except Exception as exc:
            logger.error(
                "Reminder processing failed for webhook %s: %s", registration.webhook_id, exc
            )
            results[registration.webhook_id] = {"success": False, "error": str(exc)}
    return results


class ReminderService:
    """Background task that processes reminders immediately and then on an interval."""

    def __init__(
        self,
        session: CalendarSession,
        http_client: httpx.AsyncClient,
        *,
        interval_seconds: float = DEFAULT_REMINDER_INTERVAL_SECONDS,
    ) -> None:
        self._session = session
        self._http_client = http_client
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="calendar-reminders")
        logger.info("Reminder service started (interval=%.0fs)", self._interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Reminder service stopped")

    async def _run(self) -> None:
        while True:
            try:
                await process_all_reminders(self._session, self._http_client)
            except Exception:
                logger.exception("Reminder sweep failed")
            await asyncio.sleep(self._interval_seconds)
