"""Calendar service: composition root and public operation surface.

Every public coroutine returns an :class:`OperationResult`; ``CalendarError``
raised while preparing inputs is folded into ``Err`` and never crosses the
boundary.  Provider calls go through the :class:`RetryExecutor`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, ParamSpec
from zoneinfo import ZoneInfo

import httpx

from genewa.calendar.connection import GoogleApiConnection, McpToolConnection
from genewa.calendar.errors import (
    CalendarError,
    NotFoundError,
    OperationResult,
    ValidationFailedError,
)
from genewa.calendar.formatter import ResponseFormatter, ResponseKind
from genewa.calendar.freebusy import FreeBusyAggregator, TimeInput
from genewa.calendar.gateway import (
    DEFAULT_MAX_RESULTS,
    ProviderGateway,
    guard_calendar_deletion,
    require_event_id,
)
from genewa.calendar.google import GoogleCalendarGateway
from genewa.calendar.inputs import CalendarDraft, CalendarPatch, EventDraft, EventPatch
from genewa.calendar.models import PRIMARY_CALENDAR_ID, SendUpdatesPolicy, TimeRange
from genewa.calendar.retry import RetryExecutor, RetryPolicy, Sleep
from genewa.calendar.sanitize import sanitize, sanitize_calendar_id
from genewa.calendar.slots import SlotFinder
from genewa.calendar.timeutil import RangePurpose, coerce_zone, normalize_range, utc_now
from genewa.calendar.toolcall import ToolCallGateway
from genewa.config import CalendarConfig
from genewa.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)

P = ParamSpec("P")

SEARCH_AND_MODIFY_MAX_RESULTS = 10
DATE_RANGE_MAX_RESULTS = 100


def returns_result(
    func: Callable[P, Awaitable[OperationResult]],
) -> Callable[P, Awaitable[OperationResult]]:
    """Fold ``CalendarError`` raised during input preparation into ``Err``."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> OperationResult:
        try:
            return await func(*args, **kwargs)
        except CalendarError as exc:
            logger.info("%s rejected (%s): %s", func.__name__, exc.kind, exc.message)
            return OperationResult.from_error(exc)

    return wrapper


def _count(key: str, noun: str) -> Callable[[dict[str, Any]], str]:
    def describe(data: dict[str, Any]) -> str:
        return f"Found {len(data.get(key) or [])} {noun}(s)"

    return describe


class CalendarService:
    """Resilient calendar operations over a single provider gateway."""

    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        default_calendar_id: str = PRIMARY_CALENDAR_ID,
        time_zone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        self.gateway = gateway
        self.connection = gateway.connection
        self._metrics = metrics or CalendarMetrics(gateway.name)
        self.executor = RetryExecutor(self.connection, policy, sleep=sleep, metrics=self._metrics)
        self.formatter = ResponseFormatter(self._metrics)
        self.freebusy = FreeBusyAggregator(gateway, self.executor, self.formatter)
        self.slots = SlotFinder(self.freebusy, clock=clock)
        self._default_calendar_id = default_calendar_id
        self._time_zone = coerce_zone(time_zone)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: CalendarConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> CalendarService:
        metrics = CalendarMetrics(config.provider)
        gateway: ProviderGateway
        if config.provider == "mcp":
            assert config.mcp is not None
            gateway = ToolCallGateway(
                McpToolConnection(
                    config.mcp.url,
                    command=config.mcp.command,
                    args=config.mcp.args,
                    env=config.mcp.env or None,
                    client_name=config.mcp.client_name,
                    connect_timeout=config.connection.connect_timeout_seconds,
                    metrics=metrics,
                )
            )
        else:
            gateway = GoogleCalendarGateway(
                GoogleApiConnection(
                    credentials_json=config.google.credentials_json,
                    credentials_file=config.google.credentials_file,
                    http_client=http_client,
                    request_timeout=config.google.request_timeout_seconds,
                    api_base_url=config.google.api_base_url,
                    connect_timeout=config.connection.connect_timeout_seconds,
                    metrics=metrics,
                ),
                default_time_zone=config.timezone,
            )
        policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_seconds=config.retry.base_delay_seconds,
            timeout_seconds=config.retry.timeout_seconds,
        )
        return cls(
            gateway,
            policy=policy,
            sleep=sleep,
            default_calendar_id=config.default_calendar_id,
            time_zone=config.timezone,
            metrics=metrics,
        )

    # -- lifecycle ----------------------------------------------------------

    async def __aenter__(self) -> CalendarService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        await self.connection.disconnect()

    def status(self) -> dict[str, Any]:
        return {
            **self.connection.status(),
            "maxAttempts": self.executor.policy.max_attempts,
            "defaultCalendarId": self._default_calendar_id,
            "timeZone": self._time_zone,
        }

    async def health_check(self) -> OperationResult:
        """Attempt one connection and report whether the provider is reachable."""
        try:
            await self.connection.connect()
        except CalendarError as exc:
            return OperationResult.err(
                exc.kind, f"Calendar provider unhealthy: {exc.message}", attempts=1
            )
        return OperationResult.ok(self.status(), "Calendar provider healthy", attempts=1)

    # -- helpers ------------------------------------------------------------

    def _calendar_id(self, value: Any) -> str:
        return sanitize_calendar_id(value, self._default_calendar_id)

    def _zone(self, value: Any) -> str:
        return coerce_zone(value, default=self._time_zone)

    async def _list_window(
        self,
        operation: str,
        calendar_id: str,
        window: TimeRange,
        max_results: int,
        zone: str,
    ) -> OperationResult:
        async def call() -> dict[str, Any]:
            payload = await self.gateway.list_events(
                calendar_id=calendar_id, time_range=window, max_results=max_results, time_zone=zone
            )
            return self.formatter.format(payload, ResponseKind.events)

        return await self.executor.run(operation, call, describe=_count("events", "event"))

    # -- calendars ----------------------------------------------------------

    @returns_result
    async def list_calendars(self) -> OperationResult:
        async def call() -> dict[str, Any]:
            payload = await self.gateway.list_calendars()
            return self.formatter.format(payload, ResponseKind.calendars)

        return await self.executor.run(
            "listCalendars", call, describe=_count("calendars", "calendar")
        )

    @returns_result
    async def create_calendar(self, calendar_data: Mapping[str, Any]) -> OperationResult:
        draft = CalendarDraft.from_input(calendar_data, default_time_zone=self._time_zone)

        async def call() -> dict[str, Any]:
            return self.formatter.acknowledgement(await self.gateway.create_calendar(draft=draft))

        return await self.executor.run(
            "createCalendar",
            call,
            describe=lambda _: f'Calendar "{draft.summary}" created successfully',
        )

    @returns_result
    async def update_calendar(
        self, calendar_id: str, calendar_data: Mapping[str, Any]
    ) -> OperationResult:
        target = sanitize(calendar_id, "Calendar ID", required=True)
        patch = CalendarPatch.from_input(calendar_data)

        async def call() -> dict[str, Any]:
            payload = await self.gateway.update_calendar(calendar_id=target, patch=patch)
            return self.formatter.acknowledgement(payload)

        return await self.executor.run(
            "updateCalendar", call, describe=lambda _: "Calendar updated successfully"
        )

    @returns_result
    async def delete_calendar(self, calendar_id: str) -> OperationResult:
        target = guard_calendar_deletion(calendar_id)

        async def call() -> dict[str, Any]:
            payload = await self.gateway.delete_calendar(calendar_id=target)
            return self.formatter.acknowledgement(payload)

        return await self.executor.run(
            "deleteCalendar",
            call,
            describe=lambda data: (
                f'Calendar "{data.get("title", target)}" deleted successfully'
            ),
        )

    # -- events -------------------------------------------------------------

    @returns_result
    async def list_events(
        self,
        calendar_id: str | None = None,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> OperationResult:
        window = normalize_range(
            time_min, time_max, purpose=RangePurpose.listing, now=self._clock()
        )
        return await self._list_window(
            "listEvents", self._calendar_id(calendar_id), window, max_results, self._zone(time_zone)
        )

    @returns_result
    async def search_events(
        self,
        query: str,
        calendar_id: str | None = None,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> OperationResult:
        text = sanitize(query, "Search query", required=True)
        target = self._calendar_id(calendar_id)
        window = normalize_range(
            time_min, time_max, purpose=RangePurpose.search, now=self._clock()
        )
        zone = self._zone(time_zone)

        async def call() -> dict[str, Any]:
            payload = await self.gateway.search_events(
                calendar_id=target,
                query=text,
                time_range=window,
                max_results=max_results,
                time_zone=zone,
            )
            return self.formatter.format(payload, ResponseKind.events)

        return await self.executor.run(
            "searchEvents",
            call,
            describe=lambda data: (
                f'Found {len(data.get("events") or [])} event(s) matching "{text}"'
            ),
        )

    @returns_result
    async def get_event(self, event_id: str, calendar_id: str | None = None) -> OperationResult:
        target_event = require_event_id(event_id, "lookup")
        target = self._calendar_id(calendar_id)

        async def call() -> dict[str, Any]:
            payload = await self.gateway.get_event(calendar_id=target, event_id=target_event)
            return self.formatter.event(payload)

        return await self.executor.run(
            "getEvent", call, describe=lambda _: "Event retrieved successfully"
        )

    @returns_result
    async def create_event(
        self, event_data: Mapping[str, Any], calendar_id: str | None = None
    ) -> OperationResult:
        draft = EventDraft.from_input(event_data, default_time_zone=self._time_zone)
        target = self._calendar_id(calendar_id or event_data.get("calendarId"))

        async def call() -> dict[str, Any]:
            payload = await self.gateway.create_event(calendar_id=target, draft=draft)
            return self.formatter.event(payload)

        return await self.executor.run(
            "createEvent",
            call,
            describe=lambda _: f'Event "{draft.title}" created successfully',
        )

    @returns_result
    async def update_event(
        self,
        event_id: str,
        updates: Mapping[str, Any],
        calendar_id: str | None = None,
    ) -> OperationResult:
        target_event = require_event_id(event_id, "update")
        patch = EventPatch.from_input(updates)
        target = self._calendar_id(calendar_id or updates.get("calendarId"))
        if patch.is_empty():
            raise ValidationFailedError("No fields provided to update")

        async def call() -> dict[str, Any]:
            payload = await self.gateway.update_event(
                calendar_id=target, event_id=target_event, patch=patch
            )
            return self.formatter.event(payload)

        return await self.executor.run(
            "updateEvent",
            call,
            describe=lambda data: (
                f'Event "{data.get("title", target_event)}" updated successfully'
            ),
        )

    @returns_result
    async def delete_event(
        self,
        event_id: str,
        calendar_id: str | None = None,
        *,
        send_updates: SendUpdatesPolicy | str = SendUpdatesPolicy.all,
    ) -> OperationResult:
        target_event = require_event_id(event_id, "deletion")
        target = self._calendar_id(calendar_id)
        try:
            policy = SendUpdatesPolicy(send_updates)
        except ValueError as exc:
            raise ValidationFailedError(f"Invalid sendUpdates value: {send_updates!r}") from exc

        async def call() -> dict[str, Any]:
            payload = await self.gateway.delete_event(
                calendar_id=target, event_id=target_event, send_updates=policy
            )
            return self.formatter.acknowledgement(payload)

        return await self.executor.run(
            "deleteEvent",
            call,
            describe=lambda data: (
                f'Event "{data["title"]}" deleted successfully'
                if data.get("title")
                else "Event deleted successfully"
            ),
        )

    # -- smart listings -----------------------------------------------------

    def _local_midnight(self, zone: str) -> datetime:
        local_now = self._clock().astimezone(ZoneInfo(zone))
        return local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    @returns_result
    async def find_events_by_date_range(
        self,
        start: TimeInput,
        end: TimeInput,
        calendar_id: str | None = None,
        *,
        time_zone: str | None = None,
    ) -> OperationResult:
        if start in (None, "") or end in (None, ""):
            raise ValidationFailedError("Start date and end date are required")
        window = normalize_range(start, end)
        return await self._list_window(
            "findEventsByDateRange",
            self._calendar_id(calendar_id),
            window,
            DATE_RANGE_MAX_RESULTS,
            self._zone(time_zone),
        )

    @returns_result
    async def get_todays_events(
        self, calendar_id: str | None = None, *, time_zone: str | None = None
    ) -> OperationResult:
        zone = self._zone(time_zone)
        start = self._local_midnight(zone)
        return await self.find_events_by_date_range(
            start, start + timedelta(days=1), calendar_id, time_zone=zone
        )

    @returns_result
    async def get_week_events(
        self, calendar_id: str | None = None, *, time_zone: str | None = None
    ) -> OperationResult:
        """Events from the most recent Sunday through the following Saturday."""
        zone = self._zone(time_zone)
        today = self._local_midnight(zone)
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return await self.find_events_by_date_range(
            start, start + timedelta(days=7), calendar_id, time_zone=zone
        )

    # -- search-and-modify --------------------------------------------------

    async def _first_match(
        self, query: str, calendar_id: str | None, time_zone: str | None
    ) -> tuple[OperationResult, dict[str, Any] | None]:
        found = await self.search_events(
            query,
            calendar_id,
            max_results=SEARCH_AND_MODIFY_MAX_RESULTS,
            time_zone=time_zone,
        )
        if not found.success:
            return found, None
        events = found.data.get("events") or []
        if not events:
            raise NotFoundError(f'No events found matching "{query}"')
        for event in events:
            if isinstance(event, Mapping) and event.get("id"):
                return found, event
        raise NotFoundError(f'No events with an ID found matching "{query}"')

    @returns_result
    async def search_and_update_event(
        self,
        query: str,
        updates: Mapping[str, Any],
        calendar_id: str | None = None,
        *,
        time_zone: str | None = None,
    ) -> OperationResult:
        found, match = await self._first_match(query, calendar_id, time_zone)
        if match is None:
            return found
        updated = await self.update_event(match["id"], updates, calendar_id)
        if not updated.success:
            return updated
        return OperationResult.ok(
            {"matched": match, "event": updated.data},
            f"Found and updated event: {match.get('title', match['id'])}",
            attempts=found.attempts + updated.attempts,
        )

    @returns_result
    async def search_and_delete_event(
        self,
        query: str,
        calendar_id: str | None = None,
        *,
        time_zone: str | None = None,
    ) -> OperationResult:
        found, match = await self._first_match(query, calendar_id, time_zone)
        if match is None:
            return found
        deleted = await self.delete_event(match["id"], calendar_id)
        if not deleted.success:
            return deleted
        return OperationResult.ok(
            {"matched": match, "deleted": deleted.data},
            f"Found and deleted event: {match.get('title', match['id'])}",
            attempts=found.attempts + deleted.attempts,
        )

    # -- batches ------------------------------------------------------------

    @returns_result
    async def batch_create_events(
        self, events: Sequence[Mapping[str, Any]], calendar_id: str | None = None
    ) -> OperationResult:
        if not events:
            raise ValidationFailedError("At least one event is required")
        results = [await self.create_event(event, calendar_id) for event in events]
        return self._batch_report(results, "Created", "events")

    @returns_result
    async def batch_delete_events(
        self,
        event_ids: Sequence[str],
        calendar_id: str | None = None,
        *,
        send_updates: SendUpdatesPolicy | str = SendUpdatesPolicy.all,
    ) -> OperationResult:
        if not event_ids:
            raise ValidationFailedError("At least one event ID is required")
        results = [
            await self.delete_event(event_id, calendar_id, send_updates=send_updates)
            for event_id in event_ids
        ]
        return self._batch_report(results, "Deleted", "events")

    @staticmethod
    def _batch_report(results: list[OperationResult], verb: str, noun: str) -> OperationResult:
        success_count = sum(1 for result in results if result.success)
        total = len(results)
        errors = [
            {"index": index, "error": str(result.error), "message": result.message}
            for index, result in enumerate(results)
            if not result.success
        ]
        return OperationResult.ok(
            {
                "results": results,
                "errors": errors,
                "successCount": success_count,
                "totalCount": total,
            },
            f"{verb} {success_count}/{total} {noun} successfully",
            attempts=sum(result.attempts for result in results),
        )

    # -- availability -------------------------------------------------------

    @returns_result
    async def get_free_busy(
        self,
        calendar_ids: str | Sequence[str] | None,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        time_zone: str | None = None,
    ) -> OperationResult:
        return await self.freebusy.get_free_busy(
            calendar_ids, time_min=time_min, time_max=time_max, time_zone=self._zone(time_zone)
        )

    @returns_result
    async def find_available_slots(
        self,
        calendar_ids: str | Sequence[str] | None = None,
        duration_minutes: int = 60,
        *,
        time_min: TimeInput = None,
        time_max: TimeInput = None,
        time_zone: str | None = None,
    ) -> OperationResult:
        return await self.slots.find_available_slots(
            calendar_ids or [self._default_calendar_id],
            duration_minutes,
            time_min=time_min,
            time_max=time_max,
            time_zone=self._zone(time_zone),
        )

    @returns_result
    async def find_next_available_slot(
        self,
        calendar_id: str | None = None,
        duration_minutes: int = 60,
        *,
        time_zone: str | None = None,
    ) -> OperationResult:
        return await self.slots.find_next_slot(
            self._calendar_id(calendar_id), duration_minutes, time_zone=self._zone(time_zone)
        )

    # -- misc ---------------------------------------------------------------

    @returns_result
    async def list_colors(self) -> OperationResult:
        async def call() -> dict[str, Any]:
            return self.formatter.format(await self.gateway.list_colors(), ResponseKind.colors)

        return await self.executor.run("listColors", call, describe=_count("colors", "color"))

    @returns_result
    async def get_current_time(self, time_zone: str | None = None) -> OperationResult:
        zone = self._zone(time_zone)
        payload = await self.gateway.current_time(time_zone=zone, now=self._clock())
        return OperationResult.ok(payload.data, f"Current time in {zone}")
