"""Tests for cell bucketing and view windows."""

from datetime import date, datetime, timedelta, timezone

import pytest

from shared_calendar_mcp.backends.base import Event, RecurrenceType
from shared_calendar_mcp.buckets import (
    bucket,
    day_cells,
    hour_cells,
    in_cell,
    overlaps,
    query_window,
    view_cells,
    view_range,
)
from shared_calendar_mcp.expander import expand


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def _occurrence(start: datetime, end: datetime, recurrence: RecurrenceType = RecurrenceType.NONE):
    event = Event(id="E1", owner_id=1, title="x", start=start, end=end, recurrence_type=recurrence)
    return expand(event, _utc(2024, 1, 1), _utc(2024, 1, 8))


class TestOverlaps:
    def test_inclusive_edges(self):
        assert overlaps(_utc(2024, 1, 1, 10), _utc(2024, 1, 1, 11), _utc(2024, 1, 1, 11), _utc(2024, 1, 1, 12))
        assert not overlaps(_utc(2024, 1, 1, 10), _utc(2024, 1, 1, 11), _utc(2024, 1, 1, 12), _utc(2024, 1, 1, 13))

    def test_containing_range(self):
        assert overlaps(_utc(2024, 1, 1), _utc(2024, 1, 31), _utc(2024, 1, 10), _utc(2024, 1, 11))


class TestCells:
    def test_day_cells_cover_inclusive_range(self):
        cells = day_cells(date(2024, 2, 1), date(2024, 2, 29))
        assert len(cells) == 29
        assert cells[0].start == _utc(2024, 2, 1)
        assert cells[0].end == _utc(2024, 2, 2) - timedelta(microseconds=1)

    def test_hour_cells(self):
        cells = hour_cells(date(2024, 1, 1))
        assert len(cells) == 24
        assert cells[10].start == _utc(2024, 1, 1, 10)

    def test_occurrence_in_each_hour_it_touches(self):
        occurrence = _occurrence(_utc(2024, 1, 1, 10, 30), _utc(2024, 1, 1, 11, 30))[0]
        hits = [cell.start.hour for cell in hour_cells(date(2024, 1, 1)) if in_cell(occurrence, cell)]
        assert hits == [10, 11]

    def test_multi_day_occurrence_in_each_day(self):
        occurrences = _occurrence(_utc(2024, 1, 2, 20), _utc(2024, 1, 4, 8))
        result = bucket(occurrences, day_cells(date(2024, 1, 1), date(2024, 1, 5)))
        counts = [len(items) for _, items in result]
        assert counts == [0, 1, 1, 1, 0]

    def test_recurring_occurrences_bucketed_per_day(self):
        occurrences = _occurrence(_utc(2024, 1, 1, 9), _utc(2024, 1, 1, 10), RecurrenceType.DAILY)
        result = bucket(occurrences, day_cells(date(2024, 1, 1), date(2024, 1, 7)))
        assert all(len(items) == 1 for _, items in result)
        assert [items[0].start.day for _, items in result] == [1, 2, 3, 4, 5, 6, 7]


class TestViewRange:
    def test_day(self):
        start, end = view_range("day", date(2024, 1, 10))
        assert start == _utc(2024, 1, 10)
        assert end == _utc(2024, 1, 11) - timedelta(microseconds=1)

    @pytest.mark.parametrize("anchor", [date(2024, 1, 8), date(2024, 1, 10), date(2024, 1, 14)])
    def test_week_is_monday_to_sunday(self, anchor):
        start, end = view_range("week", anchor)
        assert start == _utc(2024, 1, 8)
        assert end.date() == date(2024, 1, 14)

    def test_month(self):
        start, end = view_range("month", date(2024, 2, 17))
        assert start == _utc(2024, 2, 1)
        assert end.date() == date(2024, 2, 29)

    def test_december(self):
        start, end = view_range("month", date(2024, 12, 31))
        assert start == _utc(2024, 12, 1)
        assert end.date() == date(2024, 12, 31)

    def test_unknown_view(self):
        with pytest.raises(ValueError, match="Unknown view"):
            view_range("year", date(2024, 1, 1))

    def test_query_window_is_padded(self):
        start, end = query_window("month", date(2024, 1, 15))
        assert start == _utc(2023, 12, 25)
        assert end.date() == date(2024, 2, 7)

    def test_view_cells(self):
        assert len(view_cells("day", date(2024, 1, 10))) == 24
        assert len(view_cells("week", date(2024, 1, 10))) == 7
        assert len(view_cells("month", date(2024, 1, 10))) == 31
