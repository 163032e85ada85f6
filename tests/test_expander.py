"""Tests for recurring event expansion."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from shared_calendar_mcp.backends.base import Event, RecurrenceType, is_generated_id
from shared_calendar_mcp.expander import (
    Occurrence,
    OccurrenceKey,
    expand,
    expand_all,
    expansion_ceiling,
)


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def _make_event(
    id: str = "E1",
    start: datetime | None = None,
    end: datetime | None = None,
    recurrence_type: RecurrenceType = RecurrenceType.NONE,
    recurrence_end: datetime | None = None,
    owner_id: int = 1,
) -> Event:
    start = start or _utc(2024, 1, 1, 10)
    return Event(
        id=id,
        owner_id=owner_id,
        title="Standup",
        start=start,
        end=end or start + timedelta(hours=1),
        recurrence_type=recurrence_type,
        recurrence_end=recurrence_end,
    )


def _starts(occurrences: list[Occurrence]) -> list[datetime]:
    return [o.start for o in occurrences]


# ---------------------------------------------------------------------------
# Non-recurring events
# ---------------------------------------------------------------------------

class TestNonRecurring:
    def test_inside_window(self):
        event = _make_event()
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 2))
        assert len(result) == 1
        assert result[0].occurrence_id == "E1"
        assert result[0].is_generated is False
        assert result[0].source_event_id == "E1"

    def test_outside_window(self):
        event = _make_event()
        assert expand(event, _utc(2024, 1, 2), _utc(2024, 1, 3)) == []
        assert expand(event, _utc(2023, 12, 1), _utc(2023, 12, 31)) == []

    def test_touching_boundaries_are_inclusive(self):
        event = _make_event(start=_utc(2024, 1, 1, 10), end=_utc(2024, 1, 1, 11))
        assert len(expand(event, _utc(2024, 1, 1, 11), _utc(2024, 1, 2))) == 1
        assert len(expand(event, _utc(2023, 12, 31), _utc(2024, 1, 1, 10))) == 1

    def test_event_spanning_whole_window(self):
        event = _make_event(start=_utc(2024, 1, 1), end=_utc(2024, 1, 31))
        assert len(expand(event, _utc(2024, 1, 10), _utc(2024, 1, 11))) == 1

    def test_naive_window_taken_as_utc(self):
        event = _make_event()
        result = expand(event, datetime(2024, 1, 1), datetime(2024, 1, 2))
        assert len(result) == 1


# ---------------------------------------------------------------------------
# Recurring events
# ---------------------------------------------------------------------------

class TestRecurring:
    def test_weekly_with_recurrence_end(self):
        event = _make_event(
            recurrence_type=RecurrenceType.WEEKLY,
            recurrence_end=_utc(2024, 1, 22),
        )
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 31))
        assert _starts(result) == [
            _utc(2024, 1, 1, 10),
            _utc(2024, 1, 8, 10),
            _utc(2024, 1, 15, 10),
            _utc(2024, 1, 22, 10),
        ]
        assert [o.is_generated for o in result] == [False, True, True, True]

    def test_daily_duration_preserved(self):
        event = _make_event(
            start=_utc(2024, 3, 1, 9),
            end=_utc(2024, 3, 1, 10, 30),
            recurrence_type=RecurrenceType.DAILY,
        )
        result = expand(event, _utc(2024, 3, 1), _utc(2024, 3, 10))
        assert len(result) == 9
        assert all(o.duration == timedelta(hours=1, minutes=30) for o in result)

    def test_zero_duration_event(self):
        start = _utc(2024, 1, 1, 8)
        event = _make_event(start=start, end=start, recurrence_type=RecurrenceType.DAILY)
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 5))
        assert len(result) == 4
        assert all(o.start == o.end for o in result)

    def test_open_ended_daily_is_bounded_by_window(self):
        event = _make_event(recurrence_type=RecurrenceType.DAILY)
        window_days = 10
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 1) + timedelta(days=window_days))
        assert len(result) <= window_days + 1
        assert len(result) == 10

    def test_old_series_only_yields_window_repeats(self):
        event = _make_event(start=_utc(2020, 1, 1, 10), recurrence_type=RecurrenceType.DAILY)
        result = expand(event, _utc(2024, 3, 1), _utc(2024, 3, 5))
        assert _starts(result) == [_utc(2024, 3, d, 10) for d in (1, 2, 3, 4)]
        assert all(o.is_generated for o in result)

    def test_monthly_clamps_sequentially_non_leap(self):
        event = _make_event(start=_utc(2023, 1, 31, 12), recurrence_type=RecurrenceType.MONTHLY)
        result = expand(event, _utc(2023, 1, 1), _utc(2023, 4, 30))
        assert _starts(result) == [
            _utc(2023, 1, 31, 12),
            _utc(2023, 2, 28, 12),
            _utc(2023, 3, 28, 12),
            _utc(2023, 4, 28, 12),
        ]

    def test_monthly_clamps_sequentially_leap(self):
        event = _make_event(start=_utc(2024, 1, 31, 12), recurrence_type=RecurrenceType.MONTHLY)
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 3, 31))
        assert _starts(result) == [
            _utc(2024, 1, 31, 12),
            _utc(2024, 2, 29, 12),
            _utc(2024, 3, 29, 12),
        ]

    def test_yearly_leap_day(self):
        event = _make_event(start=_utc(2024, 2, 29, 12), recurrence_type=RecurrenceType.YEARLY)
        result = expand(event, _utc(2024, 1, 1), _utc(2029, 1, 1))
        assert _starts(result) == [
            _utc(2024, 2, 29, 12),
            _utc(2025, 2, 28, 12),
            _utc(2026, 2, 28, 12),
            _utc(2027, 2, 28, 12),
            _utc(2028, 2, 28, 12),
        ]

    def test_original_outside_window_repeats_inside(self):
        event = _make_event(recurrence_type=RecurrenceType.WEEKLY)
        result = expand(event, _utc(2024, 1, 14), _utc(2024, 1, 20))
        assert _starts(result) == [_utc(2024, 1, 15, 10)]
        assert result[0].is_generated is True

    def test_recurrence_end_before_start_yields_original_only(self):
        event = _make_event(
            recurrence_type=RecurrenceType.DAILY,
            recurrence_end=_utc(2023, 12, 1),
        )
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 31))
        assert len(result) == 1
        assert result[0].is_generated is False

    def test_unknown_recurrence_type_yields_original_only(self):
        event = _make_event(recurrence_type="fortnightly")  # type: ignore[arg-type]
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 3, 1))
        assert len(result) == 1

    def test_multi_day_repeat_overlapping_window_start(self):
        event = _make_event(
            start=_utc(2024, 1, 1, 20),
            end=_utc(2024, 1, 3, 8),
            recurrence_type=RecurrenceType.WEEKLY,
        )
        result = expand(event, _utc(2024, 1, 9), _utc(2024, 1, 10))
        assert _starts(result) == [_utc(2024, 1, 8, 20)]

    def test_ids_unique_and_stable(self):
        event = _make_event(recurrence_type=RecurrenceType.DAILY)
        first = [o.occurrence_id for o in expand(event, _utc(2024, 1, 1), _utc(2024, 1, 20))]
        second = [o.occurrence_id for o in expand(event, _utc(2024, 1, 1), _utc(2024, 1, 20))]
        assert first == second
        assert len(set(first)) == len(first)
        assert first[0] == "E1"
        assert first[1] == OccurrenceKey("E1", _utc(2024, 1, 2, 10)).serialize()

    def test_generated_occurrence_reads_through_source(self):
        event = _make_event(recurrence_type=RecurrenceType.WEEKLY)
        generated = expand(event, _utc(2024, 1, 7), _utc(2024, 1, 9))[0]
        assert generated.event is event
        assert generated.title == "Standup"
        assert generated.color == event.display_color


# ---------------------------------------------------------------------------
# Degraded data
# ---------------------------------------------------------------------------

class TestDegradedData:
    def test_missing_start(self):
        event = Event(id="bad", owner_id=1, title="x", start=None, end=_utc(2024, 1, 1))
        assert expand(event, _utc(2024, 1, 1), _utc(2024, 1, 2)) == []

    def test_end_before_start(self):
        event = _make_event(
            start=_utc(2024, 1, 2), end=_utc(2024, 1, 1), recurrence_type=RecurrenceType.DAILY
        )
        assert expand(event, _utc(2024, 1, 1), _utc(2024, 1, 10)) == []

    def test_walk_stops_at_datetime_limit(self):
        # The first repeat would lie past datetime.max
        event = _make_event(
            id="last-day",
            start=_utc(9999, 12, 31, 0),
            end=_utc(9999, 12, 31, 1),
            recurrence_type=RecurrenceType.DAILY,
        )
        result = expand(event, _utc(9999, 12, 30), _utc(9999, 12, 31, 23))
        assert _starts(result) == [_utc(9999, 12, 31, 0)]
        assert result[0].is_generated is False

    def test_mixed_naive_and_aware_timestamps(self):
        event = _make_event(
            start=datetime(2024, 1, 1, 10),
            end=_utc(2024, 1, 1, 11),
            recurrence_type=RecurrenceType.DAILY,
            recurrence_end=datetime(2024, 1, 2),
        )
        result = expand(event, _utc(2024, 1, 1), _utc(2024, 1, 5))
        assert _starts(result) == [_utc(2024, 1, 1, 10), _utc(2024, 1, 2, 10)]

    def test_expand_all_isolates_failing_event(self):
        good = _make_event(id="good")
        broken = SimpleNamespace(id="broken")
        result = expand_all([broken, good], _utc(2024, 1, 1), _utc(2024, 1, 2))
        assert [o.source_event_id for o in result] == ["good"]

    def test_expand_all_empty(self):
        assert expand_all([], _utc(2024, 1, 1), _utc(2024, 1, 2)) == []

    def test_expand_all_sorted(self):
        late = _make_event(id="late", start=_utc(2024, 1, 1, 15))
        early = _make_event(id="early", start=_utc(2024, 1, 1, 8), recurrence_type=RecurrenceType.DAILY)
        result = expand_all([late, early], _utc(2024, 1, 1), _utc(2024, 1, 2, 23))
        assert _starts(result) == sorted(_starts(result))
        assert [o.source_event_id for o in result] == ["early", "late", "early"]


# ---------------------------------------------------------------------------
# Keys and ceiling
# ---------------------------------------------------------------------------

class TestOccurrenceKey:
    def test_serialize_and_parse(self):
        key = OccurrenceKey("team-sync", _utc(2024, 1, 8, 10))
        assert key.serialize() == "team-sync-recurrence-1704708000000"
        assert OccurrenceKey.parse(key.serialize()) == key

    def test_parse_plain_id(self):
        assert OccurrenceKey.parse("E1") is None
        assert OccurrenceKey.parse("E1-recurrence-abc") is None
        assert OccurrenceKey.parse("-recurrence-1704708000000") is None

    def test_out_of_range_millis(self):
        assert OccurrenceKey.parse("E1-recurrence-99999999999999999999") is None

    def test_generated_id_shape(self):
        assert is_generated_id("a-b-recurrence-1704708000000")
        assert is_generated_id("E1-recurrence--1000")
        assert not is_generated_id("E1")
        assert not is_generated_id("E1-recurrence-")


class TestExpansionCeiling:
    def test_no_recurrence_end(self):
        event = _make_event(recurrence_type=RecurrenceType.DAILY)
        assert expansion_ceiling(event, _utc(2024, 2, 1)) == _utc(2024, 2, 1)

    def test_recurrence_end_covers_its_whole_day(self):
        event = _make_event(recurrence_type=RecurrenceType.DAILY, recurrence_end=_utc(2024, 1, 22))
        ceiling = expansion_ceiling(event, _utc(2024, 2, 1))
        assert ceiling.date() == _utc(2024, 1, 22).date()
        assert ceiling > _utc(2024, 1, 22, 23, 59)

    def test_window_end_earlier_than_recurrence_end(self):
        event = _make_event(recurrence_type=RecurrenceType.DAILY, recurrence_end=_utc(2024, 6, 1))
        assert expansion_ceiling(event, _utc(2024, 2, 1)) == _utc(2024, 2, 1)
