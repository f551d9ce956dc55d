"""Normalize gateway payloads into caller-facing records.

Structured payloads that already expose the expected list field are returned
untouched (the same object).  Provider-native JSON shapes are reshaped into
records, and prose payloads go through the grammar in :mod:`genewa.calendar.prose`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from genewa.calendar import prose
from genewa.calendar.errors import NotFoundError, UpstreamError
from genewa.calendar.models import (
    BusyInterval,
    CalendarRecord,
    ColorRecord,
    EventRecord,
    GatewayPayload,
    ProsePayload,
    StructuredPayload,
)
from genewa.calendar.timeutil import normalize
from genewa.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)


class ResponseKind(StrEnum):
    calendars = "calendars"
    events = "events"
    colors = "colors"


class ResponseFormatter:
    """Turns ``StructuredPayload | ProsePayload`` into normalized dictionaries."""

    def __init__(self, metrics: CalendarMetrics | None = None) -> None:
        self._metrics = metrics or CalendarMetrics("unknown")

    def format(self, payload: GatewayPayload, kind: ResponseKind | str) -> dict[str, Any]:
        kind = ResponseKind(kind)
        if isinstance(payload, StructuredPayload):
            data = payload.data
            if isinstance(data.get(kind.value), list):
                return data
            message = data.get("message")
            if isinstance(message, str) and not _has_native_shape(data, kind):
                return self._from_prose(message, kind)
            return self._reshape(data, kind)
        return self._from_prose(payload.message, kind)

    # -- structured ---------------------------------------------------------

    def _reshape(self, data: dict[str, Any], kind: ResponseKind) -> dict[str, Any]:
        if kind is ResponseKind.colors:
            records = [record.to_dict() for record in _colors_from_google(data)]
            return {"colors": records, "total": len(records)}

        items = data.get("items")
        if not isinstance(items, list):
            raise UpstreamError(f"Provider returned an unexpected {kind.value} payload shape")
        record_type = EventRecord if kind is ResponseKind.events else CalendarRecord
        records = [
            record_type.from_google(item).to_dict() for item in items if isinstance(item, dict)
        ]
        return {kind.value: records, "total": len(records)}

    # -- prose --------------------------------------------------------------

    def _from_prose(self, text: str, kind: ResponseKind) -> dict[str, Any]:
        if kind is ResponseKind.events:
            result = prose.parse_events(text)
        elif kind is ResponseKind.calendars:
            result = prose.parse_calendars(text)
        else:
            result = prose.parse_colors(text)

        if not result.recognized:
            logger.warning(
                "Unrecognized %s prose response (grammar v%d): %.80r",
                kind.value,
                prose.PROSE_GRAMMAR_VERSION,
                text,
            )
        self._report_dropped(kind.value, result.dropped)
        records = [record.to_dict() for record in result.records]
        return {kind.value: records, "total": len(records)}

    def _report_dropped(self, kind: str, dropped: int) -> None:
        if dropped <= 0:
            return
        logger.warning(
            "Dropped %d malformed %s record(s) from prose response (grammar v%d)",
            dropped,
            kind,
            prose.PROSE_GRAMMAR_VERSION,
        )
        self._metrics.record_prose_dropped(kind, dropped)

    # -- single entities ----------------------------------------------------

    def event(self, payload: GatewayPayload) -> dict[str, Any]:
        """Normalize a single-event payload (create/get/update responses)."""
        if isinstance(payload, StructuredPayload):
            data = payload.data
            nested = data.get("event")
            if isinstance(nested, dict):
                data = nested
            if "id" in data:
                return EventRecord.from_google(data).to_dict()
            text = data.get("message")
            if not isinstance(text, str):
                return data
        else:
            text = payload.message

        result = prose.parse_events(text)
        self._report_dropped("events", result.dropped)
        if len(result.records) == 1:
            return result.records[0].to_dict()
        return {"message": text}

    def acknowledgement(self, payload: GatewayPayload) -> dict[str, Any]:
        """Pass-through for write operations whose response carries no records."""
        if isinstance(payload, ProsePayload):
            return {"message": payload.message}
        return payload.data

    # -- free/busy ----------------------------------------------------------

    def busy(
        self, payload: GatewayPayload, calendar_ids: Sequence[str]
    ) -> dict[str, list[BusyInterval]]:
        """Per-calendar busy intervals, each list sorted ascending by start."""
        if isinstance(payload, StructuredPayload) and isinstance(
            payload.data.get("calendars"), dict
        ):
            found = _busy_from_google(payload.data["calendars"], calendar_ids)
        else:
            text = (
                payload.message
                if isinstance(payload, ProsePayload)
                else str(payload.data.get("message", ""))
            )
            parsed = prose.parse_busy(text)
            self._report_dropped("busy", parsed.dropped)
            found = parsed.calendars

        return {
            calendar_id: sorted(found.get(calendar_id, []), key=lambda interval: interval.start)
            for calendar_id in calendar_ids
        }


def _has_native_shape(data: dict[str, Any], kind: ResponseKind) -> bool:
    if kind is ResponseKind.colors:
        return isinstance(data.get("event"), dict) or isinstance(data.get("calendar"), dict)
    return isinstance(data.get("items"), list)


def _colors_from_google(data: dict[str, Any]) -> list[ColorRecord]:
    records: list[ColorRecord] = []
    for scope in ("event", "calendar"):
        palette = data.get(scope)
        if not isinstance(palette, dict):
            continue
        for color_id, entry in palette.items():
            if not isinstance(entry, dict):
                continue
            records.append(
                ColorRecord(
                    id=str(color_id),
                    background=str(entry.get("background", "")),
                    foreground=str(entry.get("foreground", "")),
                    scope=scope,
                )
            )
    return records


def _busy_from_google(
    calendars: dict[str, Any], calendar_ids: Sequence[str]
) -> dict[str, list[BusyInterval]]:
    found: dict[str, list[BusyInterval]] = {}
    for calendar_id in calendar_ids:
        entry = calendars.get(calendar_id)
        if not isinstance(entry, dict):
            found[calendar_id] = []
            continue
        errors = entry.get("errors") or []
        reasons = [str(error.get("reason", "")) for error in errors if isinstance(error, dict)]
        if "notFound" in reasons:
            raise NotFoundError(f"Calendar not found: {calendar_id}")
        if reasons:
            raise UpstreamError(f"Free/busy lookup failed for {calendar_id}: {', '.join(reasons)}")
        found[calendar_id] = [
            BusyInterval(start=normalize(period["start"]), end=normalize(period["end"]))
            for period in entry.get("busy") or []
            if isinstance(period, dict) and period.get("start") and period.get("end")
        ]
    return found
