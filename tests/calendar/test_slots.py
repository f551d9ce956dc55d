"""Tests for available-slot discovery."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from genewa.calendar.errors import ErrorKind, InvalidDurationError, NotFoundError
from genewa.calendar.formatter import ResponseFormatter
from genewa.calendar.freebusy import FreeBusyAggregator
from genewa.calendar.models import AvailableSlot, BusyInterval, TimeRange
from genewa.calendar.retry import RetryExecutor
from genewa.calendar.slots import SlotFinder, find_slots, validate_duration
from genewa.core.metrics import CalendarMetrics
from tests._calendar_fakes import FIXED_NOW, structured

pytestmark = pytest.mark.unit

T = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def _at(minutes: int) -> datetime:
    return T + timedelta(minutes=minutes)


def _busy(*pairs: tuple[int, int]) -> list[BusyInterval]:
    return [BusyInterval(start=_at(a), end=_at(b)) for a, b in pairs]


WINDOW = TimeRange(start=_at(0), end=_at(120))


# ---------------------------------------------------------------------------
# find_slots
# ---------------------------------------------------------------------------


class TestFindSlots:
    def test_empty_busy_yields_whole_window(self):
        assert find_slots([], WINDOW, 30) == [
            AvailableSlot(start=_at(0), end=_at(120), duration_minutes=120)
        ]

    def test_window_shorter_than_duration_yields_nothing(self):
        assert find_slots([], TimeRange(start=_at(0), end=_at(20)), 30) == []

    def test_single_busy_block_splits_window(self):
        window = TimeRange(start=_at(0), end=_at(90))
        slots = find_slots(_busy((30, 60)), window, 30)
        assert [(s.start, s.end) for s in slots] == [(_at(0), _at(30)), (_at(60), _at(90))]
        assert [s.duration_minutes for s in slots] == [30, 30]

    def test_gap_exactly_duration_is_kept(self):
        slots = find_slots(_busy((0, 30), (60, 120)), WINDOW, 30)
        assert [(s.start, s.end) for s in slots] == [(_at(30), _at(60))]

    def test_gap_shorter_than_duration_is_dropped(self):
        assert find_slots(_busy((0, 30), (50, 120)), WINDOW, 30) == []

    def test_overlapping_and_nested_busy_are_absorbed(self):
        busy = _busy((10, 50), (20, 30), (40, 70))
        slots = find_slots(busy, WINDOW, 10)
        assert [(s.start, s.end) for s in slots] == [(_at(0), _at(10)), (_at(70), _at(120))]

    def test_unsorted_input(self):
        slots = find_slots(_busy((60, 90), (0, 30)), WINDOW, 30)
        assert [(s.start, s.end) for s in slots] == [(_at(30), _at(60)), (_at(90), _at(120))]

    def test_busy_crossing_window_edges_is_clipped(self):
        slots = find_slots(_busy((-30, 15), (100, 200)), WINDOW, 30)
        assert [(s.start, s.end) for s in slots] == [(_at(15), _at(100))]

    def test_busy_outside_window_ignored(self):
        slots = find_slots(_busy((-60, -30), (150, 180)), WINDOW, 30)
        assert len(slots) == 1
        assert slots[0].duration_minutes == 120

    def test_slots_are_disjoint_and_within_window(self):
        busy = _busy((5, 25), (20, 45), (70, 75), (110, 130))
        slots = find_slots(busy, WINDOW, 10)
        for slot in slots:
            assert WINDOW.start <= slot.start < slot.end <= WINDOW.end
            assert slot.duration_minutes >= 10
            assert all(not (b.start < slot.end and slot.start < b.end) for b in busy)
        for earlier, later in zip(slots, slots[1:], strict=False):
            assert earlier.end <= later.start

    def test_longer_duration_never_yields_more_slots(self):
        busy = _busy((10, 20), (35, 40), (60, 100))
        counts = [len(find_slots(busy, WINDOW, d)) for d in (5, 10, 15, 20, 30, 60)]
        assert counts == sorted(counts, reverse=True)


class TestValidateDuration:
    @pytest.mark.parametrize("value", [0, -5, 1441, True, "30", None])
    def test_rejects_invalid(self, value):
        with pytest.raises(InvalidDurationError):
            validate_duration(value)

    @pytest.mark.parametrize("value,expected", [(1, 1), (30, 30), (45.0, 45), (1440, 1440)])
    def test_accepts_valid(self, value, expected):
        assert validate_duration(value) == expected


# ---------------------------------------------------------------------------
# SlotFinder
# ---------------------------------------------------------------------------


def _finder(gateway, sleep, clock=lambda: FIXED_NOW) -> SlotFinder:
    metrics = CalendarMetrics("fake")
    executor = RetryExecutor(gateway.connection, sleep=sleep, metrics=metrics)
    aggregator = FreeBusyAggregator(gateway, executor, ResponseFormatter(metrics))
    return SlotFinder(aggregator, clock=clock)


def _google_busy(**calendars):
    return structured(
        calendars={
            calendar_id: {"busy": [{"start": a, "end": b} for a, b in periods]}
            for calendar_id, periods in calendars.items()
        }
    )


class TestSlotFinder:
    async def test_merges_busy_across_calendars(self, fake_gateway, sleep_recorder):
        fake_gateway.script(
            "query_free_busy",
            _google_busy(
                primary=[("2024-01-01T09:30:00Z", "2024-01-01T10:00:00Z")],
                work=[("2024-01-01T10:00:00Z", "2024-01-01T10:30:00Z")],
            ),
        )
        finder = _finder(fake_gateway, sleep_recorder)

        result = await finder.find_available_slots(
            ["primary", "work"],
            30,
            time_min="2024-01-01T09:00:00Z",
            time_max="2024-01-01T11:00:00Z",
        )

        assert result.success
        slots = result.data["availableSlots"]
        assert [(s.start, s.end) for s in slots] == [(_at(0), _at(30)), (_at(90), _at(120))]
        assert len(result.data["busySlots"]) == 2
        assert result.message == "Found 2 available slot(s) of 30 minutes or longer"
        assert fake_gateway.calls_to("query_free_busy")[0]["calendar_ids"] == ["primary", "work"]

    async def test_invalid_duration_makes_no_call(self, fake_gateway, sleep_recorder):
        finder = _finder(fake_gateway, sleep_recorder)
        result = await finder.find_available_slots(
            "primary", 0, time_min="2024-01-01T09:00", time_max="2024-01-01T10:00"
        )
        assert result.error is ErrorKind.INVALID_DURATION
        assert fake_gateway.calls == []

    async def test_window_required(self, fake_gateway, sleep_recorder):
        finder = _finder(fake_gateway, sleep_recorder)
        result = await finder.find_available_slots("primary", 30, time_min="2024-01-01T09:00")
        assert result.error is ErrorKind.VALIDATION_FAILED
        assert result.message == "timeMin and timeMax are required"

    async def test_busy_failure_is_propagated(self, fake_gateway, sleep_recorder):
        fake_gateway.script("query_free_busy", NotFoundError("Calendar not found: nope"))
        finder = _finder(fake_gateway, sleep_recorder)
        result = await finder.find_available_slots(
            "nope", 30, time_min="2024-01-01T09:00", time_max="2024-01-01T10:00"
        )
        assert result.error is ErrorKind.NOT_FOUND

    async def test_next_slot_searches_seven_days_from_now(self, fake_gateway, sleep_recorder):
        fake_gateway.script(
            "query_free_busy",
            _google_busy(primary=[("2024-01-03T09:00:00Z", "2024-01-03T11:00:00Z")]),
        )
        finder = _finder(fake_gateway, sleep_recorder)

        result = await finder.find_next_slot("primary", 60)

        assert result.success
        next_slot = result.data["nextSlot"]
        assert next_slot.start == datetime(2024, 1, 3, 11, 0, tzinfo=UTC)
        assert result.data["searchedUntil"] == FIXED_NOW + timedelta(days=7)
        window = fake_gateway.calls_to("query_free_busy")[0]["time_range"]
        assert window.start == FIXED_NOW
        assert result.message == (
            "Next available 60-minute slot starts at 2024-01-03T11:00:00+00:00"
        )

    async def test_next_slot_none_when_fully_booked(self, fake_gateway, sleep_recorder):
        fake_gateway.script(
            "query_free_busy",
            _google_busy(primary=[("2024-01-01T00:00:00Z", "2024-02-01T00:00:00Z")]),
        )
        finder = _finder(fake_gateway, sleep_recorder)

        result = await finder.find_next_slot("primary", 30)

        assert result.success
        assert result.data["nextSlot"] is None
        assert result.message == "No available 30-minute slots found in the next 7 days"
