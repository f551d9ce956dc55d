"""MCP tool-call gateway.

Calls the tools exposed by a calendar MCP server.  Tool results that decode to
a JSON object become :class:`StructuredPayload`; anything else is handed on as
:class:`ProsePayload` for the response formatter to parse.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from genewa.calendar.connection import McpToolConnection
from genewa.calendar.gateway import (
    DEFAULT_MAX_RESULTS,
    ProviderGateway,
    clamp_max_results,
    guard_calendar_deletion,
    require_event_id,
)
from genewa.calendar.inputs import CalendarDraft, CalendarPatch, EventDraft, EventPatch
from genewa.calendar.models import (
    GatewayPayload,
    ProsePayload,
    SendUpdatesPolicy,
    StructuredPayload,
    TimeRange,
)
from genewa.calendar.timeutil import to_rfc3339


def to_payload(result: Any) -> GatewayPayload:
    """Convert an MCP ``CallToolResult`` into a tagged gateway payload."""
    data = getattr(result, "data", None)
    if isinstance(data, dict):
        return StructuredPayload(data=data)
    structured = getattr(result, "structured_content", None)
    if isinstance(structured, dict) and "result" not in structured:
        return StructuredPayload(data=structured)

    content = getattr(result, "content", None)
    if content is None and isinstance(result, list):
        content = result
    texts = [
        block_text
        for block_text in (getattr(block, "text", None) for block in content or [])
        if isinstance(block_text, str)
    ]
    if not texts:
        return ProsePayload(message="")

    text = texts[0]
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return ProsePayload(message="\n".join(texts))
    if isinstance(decoded, dict):
        return StructuredPayload(data=decoded)
    return ProsePayload(message=text)


class ToolCallGateway(ProviderGateway):
    """Calendar operations over an MCP calendar tool server."""

    connection: McpToolConnection

    async def _call(self, tool_name: str, arguments: dict[str, Any]) -> GatewayPayload:
        result = await self.connection.call_tool(tool_name, arguments)
        return to_payload(result)

    async def list_calendars(self) -> GatewayPayload:
        return await self._call("list-calendars", {})

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> GatewayPayload:
        arguments: dict[str, Any] = {
            "calendarId": calendar_id,
            "timeMin": to_rfc3339(time_range.start),
            "timeMax": to_rfc3339(time_range.end),
            "maxResults": clamp_max_results(max_results),
        }
        if time_zone:
            arguments["timeZone"] = time_zone
        return await self._call("list-events", arguments)

    async def search_events(
        self,
        *,
        calendar_id: str,
        query: str,
        time_range: TimeRange,
        max_results: int = DEFAULT_MAX_RESULTS,
        time_zone: str | None = None,
    ) -> GatewayPayload:
        arguments: dict[str, Any] = {
            "calendarId": calendar_id,
            "query": query,
            "timeMin": to_rfc3339(time_range.start),
            "timeMax": to_rfc3339(time_range.end),
            "maxResults": clamp_max_results(max_results),
        }
        if time_zone:
            arguments["timeZone"] = time_zone
        return await self._call("search-events", arguments)

    async def get_event(self, *, calendar_id: str, event_id: str) -> GatewayPayload:
        event_id = require_event_id(event_id, "lookup")
        return await self._call("get-event", {"calendarId": calendar_id, "eventId": event_id})

    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> GatewayPayload:
        return await self._call("create-event", draft.to_tool_arguments(calendar_id))

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> GatewayPayload:
        event_id = require_event_id(event_id, "update")
        return await self._call("update-event", patch.to_tool_arguments(calendar_id, event_id))

    async def delete_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        send_updates: SendUpdatesPolicy = SendUpdatesPolicy.all,
    ) -> GatewayPayload:
        event_id = require_event_id(event_id, "deletion")
        return await self._call(
            "delete-event",
            {"calendarId": calendar_id, "eventId": event_id, "sendUpdates": send_updates.value},
        )

    async def create_calendar(self, *, draft: CalendarDraft) -> GatewayPayload:
        return await self._call("create-calendar", draft.to_google_body())

    async def update_calendar(self, *, calendar_id: str, patch: CalendarPatch) -> GatewayPayload:
        return await self._call("update-calendar", patch.to_tool_arguments(calendar_id))

    async def delete_calendar(self, *, calendar_id: str) -> GatewayPayload:
        calendar_id = guard_calendar_deletion(calendar_id)
        return await self._call("delete-calendar", {"calendarId": calendar_id})

    async def query_free_busy(
        self,
        *,
        calendar_ids: Sequence[str],
        time_range: TimeRange,
        time_zone: str,
    ) -> GatewayPayload:
        return await self._call(
            "get-freebusy",
            {
                "calendars": [{"id": calendar_id} for calendar_id in calendar_ids],
                "timeMin": to_rfc3339(time_range.start),
                "timeMax": to_rfc3339(time_range.end),
                "timeZone": time_zone,
            },
        )

    async def list_colors(self) -> GatewayPayload:
        return await self._call("list-colors", {})
