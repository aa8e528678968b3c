"""Similarity scoring and duplicate grouping for calendar events."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta

from gcal_mcp.modules.calendar.errors import CalendarValidationError
from gcal_mcp.modules.calendar.models import CalendarEvent, DuplicateGroup

DEFAULT_DUPLICATE_THRESHOLD = 0.7
SUMMARY_WEIGHT = 0.7
PROXIMITY_WEIGHT = 0.3
PROXIMITY_WINDOW = timedelta(hours=48)


def levenshtein_distance(first: str, second: str) -> int:
    """Edit distance with unit insert/delete/substitute costs."""
    rows = len(first) + 1
    cols = len(second) + 1
    table = [[0] * cols for _ in range(rows)]
    for i in range(rows):
        table[i][0] = i
    for j in range(cols):
        table[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if first[i - 1] == second[j - 1] else 1
            table[i][j] = min(
                table[i - 1][j] + 1,
                table[i][j - 1] + 1,
                table[i - 1][j - 1] + cost,
            )
    return table[-1][-1]


def score_similarity(first: str | None, second: str | None) -> float:
    """Case-insensitive normalised similarity in ``[0, 1]``.

    Either side empty scores 0, including two empty strings.
    """
    if not first or not second:
        return 0.0
    a = first.lower()
    b = second.lower()
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein_distance(a, b) / longest


def _starts_within_window(first: CalendarEvent, second: CalendarEvent) -> bool:
    if first.start is None or second.start is None:
        return False
    delta = abs(first.start.as_utc() - second.start.as_utc())
    return delta < PROXIMITY_WINDOW


def duplicate_score(first: CalendarEvent, second: CalendarEvent) -> float:
    """Weighted pair score: summary similarity plus binary start proximity."""
    summary = score_similarity(first.summary, second.summary)
    proximity = 1.0 if _starts_within_window(first, second) else 0.0
    return SUMMARY_WEIGHT * summary + PROXIMITY_WEIGHT * proximity


def validate_threshold(threshold: float) -> float:
    if isinstance(threshold, bool) or not isinstance(threshold, int | float):
        raise CalendarValidationError("similarityThreshold must be a number between 0 and 1")
    value = float(threshold)
    if not 0.0 <= value <= 1.0:
        raise CalendarValidationError("similarityThreshold must be a number between 0 and 1")
    return value


def find_duplicate_groups(
    events: Sequence[CalendarEvent],
    threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
) -> list[DuplicateGroup]:
    """Group likely duplicates with a single anchored pass.

    Each unprocessed event anchors a group and pulls in every later
    unprocessed event scoring ``>= threshold`` against the anchor. Members
    are compared to the anchor only, so two members of a group need not be
    similar to each other. Groups are returned in first-seen anchor order.
    """
    limit = validate_threshold(threshold)
    processed: set[int] = set()
    groups: list[DuplicateGroup] = []

    for i, anchor in enumerate(events):
        if i in processed:
            continue
        members = [anchor]
        for j in range(i + 1, len(events)):
            if j in processed:
                continue
            if duplicate_score(anchor, events[j]) >= limit:
                members.append(events[j])
                processed.add(j)
        processed.add(i)
        if len(members) > 1:
            groups.append(DuplicateGroup(events=members))
    return groups
