"""Overlap test, day/hour cells and view windows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Protocol, TypeVar

VALID_VIEWS = {"day", "week", "month"}
DEFAULT_BUFFER_DAYS = 7

_TICK = timedelta(microseconds=1)


class _Span(Protocol):
    start: datetime
    end: datetime


S = TypeVar("S", bound=_Span)


def overlaps(start: datetime, end: datetime, range_start: datetime, range_end: datetime) -> bool:
    """Inclusive overlap test shared by window queries and cell bucketing."""
    return start <= range_end and end >= range_start


@dataclass(frozen=True)
class Cell:
    """A day or hour of the calendar grid. ``end`` is the cell's last instant."""

    start: datetime
    end: datetime

    @classmethod
    def spanning(cls, start: datetime, length: timedelta) -> Cell:
        return cls(start=start, end=start + length - _TICK)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_cells(first: date, last: date) -> list[Cell]:
    """One cell per day from ``first`` through ``last`` inclusive."""
    cells = []
    day = first
    while day <= last:
        cells.append(Cell.spanning(_midnight(day), timedelta(days=1)))
        day += timedelta(days=1)
    return cells


def hour_cells(day: date) -> list[Cell]:
    midnight = _midnight(day)
    return [Cell.spanning(midnight + timedelta(hours=h), timedelta(hours=1)) for h in range(24)]


def in_cell(item: _Span, cell: Cell) -> bool:
    return overlaps(item.start, item.end, cell.start, cell.end)


def bucket(items: Iterable[S], cells: Iterable[Cell]) -> list[tuple[Cell, list[S]]]:
    """Assign items to every cell they overlap. Multi-day items appear in each day."""
    items = list(items)
    return [(cell, [item for item in items if in_cell(item, cell)]) for cell in cells]


def view_range(view: str, anchor: date) -> tuple[datetime, datetime]:
    """Visible range of a day, week (Monday to Sunday) or month view."""
    if view == "day":
        first = last = anchor
    elif view == "week":
        first = anchor - timedelta(days=anchor.weekday())
        last = first + timedelta(days=6)
    elif view == "month":
        first = anchor.replace(day=1)
        next_month = (first + timedelta(days=32)).replace(day=1)
        last = next_month - timedelta(days=1)
    else:
        raise ValueError(f"Unknown view '{view}'. Must be one of: {VALID_VIEWS}")
    return _midnight(first), _midnight(last + timedelta(days=1)) - _TICK


def query_window(view: str, anchor: date, buffer_days: int = DEFAULT_BUFFER_DAYS) -> tuple[datetime, datetime]:
    """View range padded on both sides so boundary-spanning events are fetched."""
    start, end = view_range(view, anchor)
    pad = timedelta(days=buffer_days)
    return start - pad, end + pad


def view_cells(view: str, anchor: date) -> list[Cell]:
    """Day view buckets per hour, week and month views per day."""
    if view == "day":
        return hour_cells(anchor)
    start, end = view_range(view, anchor)
    return day_cells(start.date(), end.date())
