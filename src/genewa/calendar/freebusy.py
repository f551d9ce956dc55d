"""Free/busy aggregation across one or more calendars."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from typing import Any

from genewa.calendar.errors import CalendarError, OperationResult, ValidationFailedError
from genewa.calendar.formatter import ResponseFormatter
from genewa.calendar.gateway import ProviderGateway
from genewa.calendar.models import BusyInterval, TimeRange
from genewa.calendar.retry import RetryExecutor
from genewa.calendar.sanitize import sanitize
from genewa.calendar.timeutil import coerce_zone, normalize

TimeInput = str | datetime | date | None


def normalize_calendar_ids(calendar_ids: str | Sequence[Any] | None) -> list[str]:
    """Sanitize and de-duplicate calendar ids, preserving order."""
    if calendar_ids is None:
        raw: Sequence[Any] = []
    elif isinstance(calendar_ids, str):
        raw = [calendar_ids]
    else:
        raw = calendar_ids
    cleaned: list[str] = []
    for value in raw:
        calendar_id = sanitize(value, "Calendar ID")
        if calendar_id and calendar_id not in cleaned:
            cleaned.append(calendar_id)
    if not cleaned:
        raise ValidationFailedError("At least one calendar ID is required")
    return cleaned


def require_window(time_min: TimeInput, time_max: TimeInput) -> TimeRange:
    """Build a window from two mandatory bounds."""
    if time_min in (None, "") or time_max in (None, ""):
        raise ValidationFailedError("timeMin and timeMax are required")
    return TimeRange(start=normalize(time_min), end=normalize(time_max))  # type: ignore[arg-type]


def merge_busy(per_calendar: Mapping[str, Sequence[BusyInterval]]) -> list[BusyInterval]:
    """Flatten several calendars' busy lists into one list sorted by start."""
    merged = [interval for intervals in per_calendar.values() for interval in intervals]
    return sorted(merged, key=lambda interval: interval.start)


class FreeBusyAggregator:
    """Queries busy intervals through the retry executor."""

    def __init__(
        self,
        gateway: ProviderGateway,
        executor: RetryExecutor,
        formatter: ResponseFormatter,
    ) -> None:
        self._gateway = gateway
        self._executor = executor
        self._formatter = formatter

    async def get_free_busy(
        self,
        calendar_ids: str | Sequence[str] | None,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        time_range: TimeRange | None = None,
        time_zone: str | None = "UTC",
    ) -> OperationResult:
        """Return ``{calendar_id: [BusyInterval, ...]}`` with each list sorted by start."""
        try:
            ids = normalize_calendar_ids(calendar_ids)
            window = time_range or require_window(time_min, time_max)
            zone = coerce_zone(time_zone)
        except CalendarError as exc:
            return OperationResult.from_error(exc)

        async def call() -> dict[str, list[BusyInterval]]:
            payload = await self._gateway.query_free_busy(
                calendar_ids=ids, time_range=window, time_zone=zone
            )
            return self._formatter.busy(payload, ids)

        return await self._executor.run(
            "getFreeBusy",
            call,
            describe=lambda busy: (
                f"Found {sum(len(v) for v in busy.values())} busy period(s) "
                f"across {len(busy)} calendar(s)"
            ),
        )
