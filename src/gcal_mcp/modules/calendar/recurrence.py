"""Locate a single occurrence inside an expanded recurrence series.

Instances are matched on calendar day only (``YYYY-MM-DD`` of the original
start, in the instance's own representation). Series producing two
occurrences on the same day resolve to the first one in scan order.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from gcal_mcp.modules.calendar.errors import CalendarNotFoundError, CalendarNotRecurringError
from gcal_mcp.modules.calendar.models import CalendarEvent, EventInstant

INSTANCE_PAGE_SIZE = 100

NOT_RECURRING_MESSAGE = "The specified event is not a recurring event"
INSTANCE_NOT_FOUND_MESSAGE = "Could not find the specified instance in this recurring event series"


def target_date_key(target: Any) -> str:
    """Normalise a target original start to ``YYYY-MM-DD``."""
    if isinstance(target, datetime | date):
        return target.isoformat()[:10]
    if isinstance(target, str):
        # Strings are compared on their day prefix without parsing, the same
        # way instance original starts are.
        return target.strip()[:10]
    return EventInstant.parse(target).date_key()


def ensure_recurring(master: CalendarEvent) -> None:
    if not master.is_recurring_master:
        raise CalendarNotRecurringError(NOT_RECURRING_MESSAGE)


def find_instance(instances: Iterable[CalendarEvent], target_original_start: Any) -> CalendarEvent:
    key = target_date_key(target_original_start)
    for instance in instances:
        if instance.original_start is None:
            continue
        if instance.original_start.date_key() == key:
            return instance
    raise CalendarNotFoundError(INSTANCE_NOT_FOUND_MESSAGE)
