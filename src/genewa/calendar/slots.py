"""Available-slot discovery over merged busy intervals."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta

from genewa.calendar.errors import CalendarError, InvalidDurationError, OperationResult
from genewa.calendar.freebusy import FreeBusyAggregator, TimeInput, merge_busy, require_window
from genewa.calendar.models import PRIMARY_CALENDAR_ID, AvailableSlot, BusyInterval, TimeRange
from genewa.calendar.timeutil import DEFAULT_LISTING_WINDOW, utc_now

MAX_SLOT_DURATION_MINUTES = 1440


def validate_duration(duration_minutes: object) -> int:
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int | float):
        raise InvalidDurationError("Duration must be a number of minutes")
    minutes = int(duration_minutes)
    if minutes < 1 or duration_minutes > MAX_SLOT_DURATION_MINUTES:
        raise InvalidDurationError(
            f"Duration must be between 1 and {MAX_SLOT_DURATION_MINUTES} minutes"
        )
    return minutes


def _slot(start: datetime, end: datetime) -> AvailableSlot:
    return AvailableSlot(
        start=start,
        end=end,
        duration_minutes=int((end - start).total_seconds() // 60),
    )


def find_slots(
    busy: Iterable[BusyInterval],
    window: TimeRange,
    duration_minutes: int,
) -> list[AvailableSlot]:
    """Gaps of at least *duration_minutes* inside *window* not covered by *busy*.

    Busy intervals are swept in start order; overlapping or nested intervals
    are absorbed and intervals crossing the window edges are clipped to it.
    """
    needed = timedelta(minutes=validate_duration(duration_minutes))
    slots: list[AvailableSlot] = []
    cursor = window.start

    for interval in sorted(busy, key=lambda b: b.start):
        if interval.end <= window.start or interval.start >= window.end:
            continue
        start = max(interval.start, window.start)
        end = min(interval.end, window.end)
        if start - cursor >= needed:
            slots.append(_slot(cursor, start))
        cursor = max(cursor, end)

    if window.end - cursor >= needed:
        slots.append(_slot(cursor, window.end))
    return slots


class SlotFinder:
    """Finds open time across calendars using a :class:`FreeBusyAggregator`."""

    def __init__(
        self,
        aggregator: FreeBusyAggregator,
        *,
        clock: Callable[[], datetime] = utc_now,
        search_horizon: timedelta = DEFAULT_LISTING_WINDOW,
    ) -> None:
        self._aggregator = aggregator
        self._clock = clock
        self._search_horizon = search_horizon

    async def find_available_slots(
        self,
        calendar_ids: str | Sequence[str] | None,
        duration_minutes: int,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        time_zone: str | None = "UTC",
        time_range: TimeRange | None = None,
    ) -> OperationResult:
        try:
            minutes = validate_duration(duration_minutes)
            window = time_range or require_window(time_min, time_max)
        except CalendarError as exc:
            return OperationResult.from_error(exc)

        busy_result = await self._aggregator.get_free_busy(
            calendar_ids, time_range=window, time_zone=time_zone
        )
        if not busy_result.success:
            return busy_result

        busy = merge_busy(busy_result.data)
        slots = find_slots(busy, window, minutes)
        return OperationResult.ok(
            {
                "availableSlots": slots,
                "busySlots": busy,
                "durationMinutes": minutes,
                "timeRange": window,
            },
            f"Found {len(slots)} available slot(s) of {minutes} minutes or longer",
            attempts=busy_result.attempts,
        )

    async def find_next_slot(
        self,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        duration_minutes: int = 60,
        *,
        time_zone: str | None = "UTC",
    ) -> OperationResult:
        """First open slot in ``[now, now + 7 days)``; ``nextSlot`` is None when none exists."""
        try:
            minutes = validate_duration(duration_minutes)
        except CalendarError as exc:
            return OperationResult.from_error(exc)

        now = self._clock()
        window = TimeRange(start=now, end=now + self._search_horizon)
        result = await self.find_available_slots(
            calendar_id, minutes, time_range=window, time_zone=time_zone
        )
        if not result.success:
            return result

        slots: list[AvailableSlot] = result.data["availableSlots"]
        next_slot = slots[0] if slots else None
        if next_slot is None:
            days = self._search_horizon.days
            message = f"No available {minutes}-minute slots found in the next {days} days"
        else:
            start = next_slot.start.isoformat()
            message = f"Next available {minutes}-minute slot starts at {start}"
        return OperationResult.ok(
            {"nextSlot": next_slot, "searchedUntil": window.end},
            message,
            attempts=result.attempts,
        )
