"""Recurring event expansion into concrete occurrences for a query window.

An event contributes its original instance when its own span overlaps the
window, plus one generated repeat per recurrence step up to the expansion
ceiling. Steps are taken from the previous candidate, never from the
original start, so month-end clamping carries forward:

    Jan 31 -> Feb 29 -> Mar 29 -> Apr 29 ...   (2024, monthly)

The recurrence end is a last-day bound: repeats starting any time on the
UTC calendar day of ``recurrence_end`` are still generated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Iterator

from dateutil.relativedelta import relativedelta

from .backends.base import OCCURRENCE_ID_SEPARATOR, Event, Priority, RecurrenceType, is_generated_id
from .buckets import overlaps
from .records import to_utc

logger = logging.getLogger("shared-calendar-mcp")

_STEPS: dict[RecurrenceType, relativedelta] = {
    RecurrenceType.DAILY: relativedelta(days=1),
    RecurrenceType.WEEKLY: relativedelta(days=7),
    # relativedelta clamps to the last valid day of the target month
    RecurrenceType.MONTHLY: relativedelta(months=1),
    RecurrenceType.YEARLY: relativedelta(years=1),
}


@dataclass(frozen=True)
class OccurrenceKey:
    """Composite identity of a generated occurrence."""

    source_event_id: str
    start: datetime

    def serialize(self) -> str:
        millis = int(self.start.timestamp() * 1000)
        return f"{self.source_event_id}{OCCURRENCE_ID_SEPARATOR}{millis}"

    @classmethod
    def parse(cls, value: str) -> OccurrenceKey | None:
        """Reverse serialize(). Returns None for plain (non-generated) ids."""
        if not is_generated_id(value):
            return None
        source_id, _, millis = value.rpartition(OCCURRENCE_ID_SEPARATOR)
        try:
            start = datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return cls(source_event_id=source_id, start=start)


@dataclass(frozen=True)
class Occurrence:
    """One concrete instance of an event inside a query window."""

    event: Event
    start: datetime
    end: datetime
    is_generated: bool = False

    @property
    def source_event_id(self) -> str:
        return self.event.id

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.event.id, self.start)

    @property
    def occurrence_id(self) -> str:
        if not self.is_generated:
            return self.event.id
        return self.key.serialize()

    @property
    def title(self) -> str:
        return self.event.title

    @property
    def priority(self) -> Priority:
        return self.event.priority

    @property
    def color(self) -> str:
        return self.event.display_color

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def expansion_ceiling(event: Event, window_end: datetime) -> datetime:
    """Latest instant a repeat may start at for this query."""
    if event.recurrence_end is None:
        return window_end
    last_day = to_utc(event.recurrence_end).date()
    recurrence_limit = datetime.combine(last_day, time.max, tzinfo=timezone.utc)
    return min(recurrence_limit, window_end)


def _utc_span(event: Event) -> tuple[datetime, datetime] | None:
    if event.start is None or event.end is None:
        return None
    try:
        start, end = to_utc(event.start), to_utc(event.end)
    except (OverflowError, ValueError):
        return None
    if end < start:
        return None
    return start, end


def iter_occurrences(event: Event, window_start: datetime, window_end: datetime) -> Iterator[Occurrence]:
    """Yield the occurrences of ``event`` overlapping ``[window_start, window_end]``.

    Never raises for bad event data: unusable timestamps yield nothing and an
    unknown recurrence type yields the original instance only.
    """
    span = _utc_span(event)
    if span is None:
        logger.warning("Event '%s': skipped, unusable start/end", event.id)
        return
    start, end = span

    window_start = to_utc(window_start)
    window_end = to_utc(window_end)

    if overlaps(start, end, window_start, window_end):
        yield Occurrence(event=event, start=start, end=end)

    step = _STEPS.get(event.recurrence_type)
    if step is None:
        return
    if event.recurrence_end is not None and to_utc(event.recurrence_end) < start:
        return

    ceiling = expansion_ceiling(event, window_end)
    duration = end - start
    candidate = start
    while True:
        try:
            candidate = candidate + step
        except (OverflowError, ValueError):
            logger.warning("Event '%s': repeats stop at the datetime limit", event.id)
            break
        if candidate > ceiling:
            break
        try:
            candidate_end = candidate + duration
        except OverflowError:
            logger.warning("Event '%s': repeats stop at the datetime limit", event.id)
            break
        if overlaps(candidate, candidate_end, window_start, window_end):
            yield Occurrence(event=event, start=candidate, end=candidate_end, is_generated=True)


def expand(event: Event, window_start: datetime, window_end: datetime) -> list[Occurrence]:
    return list(iter_occurrences(event, window_start, window_end))


def expand_all(events: Iterable[Event], window_start: datetime, window_end: datetime) -> list[Occurrence]:
    """Expand a batch of events, skipping any event that fails to expand."""
    occurrences: list[Occurrence] = []
    for event in events:
        try:
            found = list(iter_occurrences(event, window_start, window_end))
        except Exception as e:
            logger.warning("Event '%s': expansion failed: %s", getattr(event, "id", "?"), e)
            continue
        occurrences.extend(found)
    occurrences.sort(key=lambda o: (o.start, o.occurrence_id))
    return occurrences
