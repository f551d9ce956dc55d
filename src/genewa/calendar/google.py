"""Google Calendar API v3 gateway (structured REST binding)."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from genewa.calendar.connection import GoogleApiConnection, quote_path
from genewa.calendar.gateway import (
    DEFAULT_MAX_RESULTS,
    ProviderGateway,
    clamp_max_results,
    guard_calendar_deletion,
    require_event_id,
)
from genewa.calendar.inputs import CalendarDraft, CalendarPatch, EventDraft, EventPatch
from genewa.calendar.models import SendUpdatesPolicy, StructuredPayload, TimeRange
from genewa.calendar.timeutil import to_rfc3339

logger = logging.getLogger(__name__)


class GoogleCalendarGateway(ProviderGateway):
    """Calendar operations over the Google Calendar REST API."""

    connection: GoogleApiConnection

    def __init__(self, connection: GoogleApiConnection, *, default_time_zone: str = "UTC") -> None:
        super().__init__(connection)
        self._default_time_zone = default_time_zone

    async def _json(self, method: str, path: str, **kwargs: Any) -> StructuredPayload:
        return StructuredPayload(data=await self.connection.request(method, path, **kwargs))

    async def list_calendars(self) -> StructuredPayload:
        return await self._json("GET", "/users/me/calendarList")

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
        query: str | None = None,
    ) -> StructuredPayload:
        params: dict[str, Any] = {
            "timeMin": to_rfc3339(time_range.start),
            "timeMax": to_rfc3339(time_range.end),
            "maxResults": clamp_max_results(max_results),
            "singleEvents": True,
            "orderBy": "startTime",
        }
        if time_zone:
            params["timeZone"] = time_zone
        if query:
            params["q"] = query
        path = f"/calendars/{quote_path(calendar_id)}/events"
        return await self._json("GET", path, params=params)

    async def search_events(
        self,
        *,
        calendar_id: str,
        query: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> StructuredPayload:
        return await self.list_events(
            calendar_id=calendar_id,
            time_range=time_range,
            max_results=max_results,
            time_zone=time_zone,
            query=query,
        )

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        return f"/calendars/{quote_path(calendar_id)}/events/{quote_path(event_id)}"

    async def get_event(self, *, calendar_id: str, event_id: str) -> StructuredPayload:
        event_id = require_event_id(event_id, "lookup")
        return await self._json("GET", self._event_path(calendar_id, event_id))

    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> StructuredPayload:
        return await self._json(
            "POST",
            f"/calendars/{quote_path(calendar_id)}/events",
            params={"sendUpdates": draft.send_updates.value},
            json_body=draft.to_google_body(),
        )

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> StructuredPayload:
        event_id = require_event_id(event_id, "update")
        path = self._event_path(calendar_id, event_id)
        existing = await self.connection.request("GET", path)
        body = patch.apply_to(existing, default_time_zone=self._default_time_zone)
        headers = {"If-Match": existing["etag"]} if existing.get("etag") else None
        return await self._json(
            "PUT",
            path,
            params={"sendUpdates": patch.send_updates.value},
            json_body=body,
            extra_headers=headers,
        )

    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: SendUpdatesPolicy = SendUpdatesPolicy.all,
    ) -> StructuredPayload:
        event_id = require_event_id(event_id, "deletion")
        path = self._event_path(calendar_id, event_id)
        existing = await self.connection.request("GET", path)
        await self.connection.request("DELETE", path, params={"sendUpdates": send_updates.value})
        logger.info("Deleted event %s from calendar %s", event_id, calendar_id)
        return StructuredPayload(
            data={
                "deleted": True,
                "id": event_id,
                "title": existing.get("summary") or "Untitled Event",
            }
        )

    async def create_calendar(self, *, draft: CalendarDraft) -> StructuredPayload:
        return await self._json("POST", "/calendars", json_body=draft.to_google_body())

    async def update_calendar(self, *, calendar_id: str, patch: CalendarPatch) -> StructuredPayload:
        path = f"/calendars/{quote_path(calendar_id)}"
        existing = await self.connection.request("GET", path)
        return await self._json("PUT", path, json_body=patch.apply_to(existing))

    async def delete_calendar(self, *, calendar_id: str) -> StructuredPayload:
        calendar_id = guard_calendar_deletion(calendar_id)
        path = f"/calendars/{quote_path(calendar_id)}"
        existing = await self.connection.request("GET", path)
        await self.connection.request("DELETE", path)
        logger.info("Deleted calendar %s", calendar_id)
        return StructuredPayload(
            data={
                "deleted": True,
                "id": calendar_id,
                "title": existing.get("summary") or "Untitled Calendar",
            }
        )

    async def query_free_busy(
        self,
        *,
        calendar_ids: Sequence[str],
        time_range: TimeRange,
        time_zone: str,
    ) -> StructuredPayload:
        body = {
            "timeMin": to_rfc3339(time_range.start),
            "timeMax": to_rfc3339(time_range.end),
            "timeZone": time_zone,
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        return await self._json("POST", "/freeBusy", json_body=body)

    async def list_colors(self) -> StructuredPayload:
        return await self._json("GET", "/colors")
