"""Provider gateway contract.

A gateway performs exactly one provider round trip per call and returns a
:data:`~genewa.calendar.models.GatewayPayload`; failures are raised as typed
``CalendarError`` subclasses and folded into ``OperationResult`` by the retry
executor.  Gateways never retry on their own.
"""

from __future__ import annotations

import abc
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from genewa.calendar.connection import ProviderConnection
from genewa.calendar.errors import ProtectedResourceError, ValidationFailedError
from genewa.calendar.inputs import CalendarDraft, CalendarPatch, EventDraft, EventPatch
from genewa.calendar.models import (
    PRIMARY_CALENDAR_ID,
    GatewayPayload,
    SendUpdatesPolicy,
    StructuredPayload,
    TimeRange,
)
from genewa.calendar.timeutil import current_time

MIN_RESULTS = 1
MAX_RESULTS = 2500
DEFAULT_MAX_RESULTS = 250


def clamp_max_results(value: Any) -> int:
    """Clamp a caller-supplied page size into ``1..2500``."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_RESULTS
    return max(MIN_RESULTS, min(number, MAX_RESULTS))


def require_event_id(event_id: str | None, action: str) -> str:
    cleaned = event_id.strip() if isinstance(event_id, str) else ""
    if not cleaned:
        raise ValidationFailedError(f"Event ID is required for {action}")
    return cleaned


def guard_calendar_deletion(calendar_id: str) -> str:
    cleaned = calendar_id.strip() if isinstance(calendar_id, str) else ""
    if not cleaned:
        raise ValidationFailedError("Calendar ID is required for deletion")
    if cleaned == PRIMARY_CALENDAR_ID:
        raise ProtectedResourceError("Cannot delete the primary calendar")
    return cleaned


class ProviderGateway(abc.ABC):
    """Uniform calendar operations over one provider integration mode."""

    def __init__(self, connection: ProviderConnection) -> None:
        self.connection = connection

    @property
    def name(self) -> str:
        return self.connection.provider

    @abc.abstractmethod
    async def list_calendars(self) -> GatewayPayload:
        """Return every calendar visible to the authenticated user."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> GatewayPayload:
        """Return events in a time window, expanded and ordered by start time."""
        ...

    @abc.abstractmethod
    async def search_events(
        self,
        *,
        calendar_id: str,
        query: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> GatewayPayload:
        """Return events matching a free-text query inside a window."""
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> GatewayPayload:
        ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> GatewayPayload:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> GatewayPayload:
        """Merge *patch* over the current upstream event.

        Raises ``NotFoundError`` when the event does not exist.
        """
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: SendUpdatesPolicy = SendUpdatesPolicy.all,
    ) -> GatewayPayload:
        """Delete an event.  Raises ``NotFoundError`` when it does not exist."""
        ...

    @abc.abstractmethod
    async def create_calendar(self, *, draft: CalendarDraft) -> GatewayPayload:
        ...

    @abc.abstractmethod
    async def update_calendar(self, *, calendar_id: str, patch: CalendarPatch) -> GatewayPayload:
        ...

    @abc.abstractmethod
    async def delete_calendar(self, *, calendar_id: str) -> GatewayPayload:
        """Delete a secondary calendar; ``primary`` is refused before any I/O."""
        ...

    @abc.abstractmethod
    async def query_free_busy(
        self,
        *,
        calendar_ids: Sequence[str],
        time_range: TimeRange,
        time_zone: str,
    ) -> GatewayPayload:
        ...

    @abc.abstractmethod
    async def list_colors(self) -> GatewayPayload:
        ...

    async def current_time(
        self, *, time_zone: str | None = None, now: datetime | None = None
    ) -> GatewayPayload:
        return StructuredPayload(data=current_time(time_zone, now=now))
