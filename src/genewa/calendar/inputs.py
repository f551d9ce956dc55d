"""Validated write-side inputs (event and calendar drafts/patches).

Each model is built through ``from_input`` which applies the sanitizer and
time normalizer, so construction fails with a typed ``CalendarError`` before
anything is sent to the provider.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from genewa.calendar.errors import InvalidTimeRangeError, ValidationFailedError
from genewa.calendar.models import SendUpdatesPolicy
from genewa.calendar.sanitize import sanitize, sanitize_attendees, sanitize_optional
from genewa.calendar.timeutil import coerce_zone, normalize, parse_boundary, to_rfc3339

_UNSET: Any = object()


def require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationFailedError(f"{what} must be an object")
    return value


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return _UNSET


def _boundary_input(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("dateTime") or value.get("date")
    return value


def _recurrence_input(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        rules = [value]
    elif isinstance(value, Iterable) and not isinstance(value, Mapping):
        rules = list(value)
    else:
        raise ValidationFailedError("Recurrence must be a rule string or a list of rule strings")
    return [rule for rule in (sanitize(r, "Recurrence Rule") for r in rules) if rule]


def _send_updates(value: Any) -> SendUpdatesPolicy:
    raw = sanitize(value, "Send Updates") or SendUpdatesPolicy.all.value
    try:
        return SendUpdatesPolicy(raw)
    except ValueError as exc:
        raise ValidationFailedError(
            f"Send Updates must be one of: all, externalOnly, none (got {raw!r})"
        ) from exc


class EventDraft(BaseModel):
    """A new event ready for submission."""

    model_config = ConfigDict(frozen=True)

    title: str
    start: datetime
    end: datetime
    time_zone: str = "UTC"
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    color_id: str | None = None
    recurrence: list[str] = Field(default_factory=list)
    reminders: dict[str, Any] | None = None
    send_updates: SendUpdatesPolicy = SendUpdatesPolicy.all

    @classmethod
    def from_input(cls, data: Mapping[str, Any], *, default_time_zone: str = "UTC") -> EventDraft:
        data = require_mapping(data, "Event data")
        title_raw = data.get("summary") or data.get("title")
        title = sanitize(title_raw, "Event title", required=True)

        start_raw = _boundary_input(_first_present(data, "start", "startTime", "start_time"))
        end_raw = _boundary_input(_first_present(data, "end", "endTime", "end_time"))
        if start_raw in (_UNSET, None, "") or end_raw in (_UNSET, None, ""):
            raise ValidationFailedError("Event start time and end time are required")
        start = normalize(start_raw)
        end = normalize(end_raw)
        if end <= start:
            raise InvalidTimeRangeError("End time must be after start time")

        color = data.get("colorId", data.get("color_id"))
        reminders = data.get("reminders")
        return cls(
            title=title,
            start=start,
            end=end,
            time_zone=coerce_zone(
                data.get("timeZone") or data.get("time_zone"), default=default_time_zone
            ),
            description=sanitize_optional(data.get("description"), "Description"),
            location=sanitize_optional(data.get("location"), "Location"),
            attendees=sanitize_attendees(data.get("attendees")),
            color_id=sanitize_optional(color, "Color ID"),
            recurrence=_recurrence_input(data.get("recurrence")),
            reminders=dict(reminders) if isinstance(reminders, Mapping) else None,
            send_updates=_send_updates(data.get("sendUpdates", data.get("send_updates"))),
        )

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.title,
            "description": self.description or "",
            "start": {"dateTime": to_rfc3339(self.start), "timeZone": self.time_zone},
            "end": {"dateTime": to_rfc3339(self.end), "timeZone": self.time_zone},
            "reminders": self.reminders if self.reminders is not None else {"useDefault": True},
        }
        if self.location:
            body["location"] = self.location
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        if self.color_id:
            body["colorId"] = self.color_id
        if self.recurrence:
            body["recurrence"] = list(self.recurrence)
        return body

    def to_tool_arguments(self, calendar_id: str) -> dict[str, Any]:
        arguments: dict[str, Any] = {
            "calendarId": calendar_id,
            "summary": self.title,
            "start": to_rfc3339(self.start),
            "end": to_rfc3339(self.end),
            "timeZone": self.time_zone,
        }
        if self.description:
            arguments["description"] = self.description
        if self.location:
            arguments["location"] = self.location
        if self.attendees:
            arguments["attendees"] = [{"email": email} for email in self.attendees]
        if self.color_id:
            arguments["colorId"] = self.color_id
        if self.recurrence:
            arguments["recurrence"] = list(self.recurrence)
        if self.reminders is not None:
            arguments["reminders"] = self.reminders
        return arguments


class EventPatch(BaseModel):
    """Partial update for an existing event; unset fields keep their upstream value."""

    model_config = ConfigDict(frozen=True)

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    attendees: list[str] | None = None
    color_id: str | None = None
    recurrence: list[str] | None = None
    reminders: dict[str, Any] | None = None
    send_updates: SendUpdatesPolicy = SendUpdatesPolicy.all

    @classmethod
    def from_input(cls, data: Mapping[str, Any]) -> EventPatch:
        data = require_mapping(data, "Event updates")
        fields: dict[str, Any] = {}
        title_raw = _first_present(data, "summary", "title")
        if title_raw is not _UNSET:
            fields["title"] = sanitize(title_raw, "Event title", required=True)
        if "description" in data:
            fields["description"] = sanitize(data["description"], "Description")
        if "location" in data:
            fields["location"] = sanitize(data["location"], "Location")

        start_raw = _first_present(data, "start", "startTime", "start_time")
        end_raw = _first_present(data, "end", "endTime", "end_time")
        if start_raw is not _UNSET:
            fields["start"] = normalize(_boundary_input(start_raw))
        if end_raw is not _UNSET:
            fields["end"] = normalize(_boundary_input(end_raw))
        if "start" in fields and "end" in fields and fields["end"] <= fields["start"]:
            raise InvalidTimeRangeError("End time must be after start time")

        zone_raw = _first_present(data, "timeZone", "time_zone")
        if zone_raw is not _UNSET:
            fields["time_zone"] = coerce_zone(zone_raw)
        if data.get("attendees") is not None:
            fields["attendees"] = sanitize_attendees(data["attendees"])
        color = _first_present(data, "colorId", "color_id")
        if color is not _UNSET:
            fields["color_id"] = sanitize_optional(color, "Color ID")
        if data.get("recurrence") is not None:
            fields["recurrence"] = _recurrence_input(data["recurrence"])
        if isinstance(data.get("reminders"), Mapping):
            fields["reminders"] = dict(data["reminders"])
        fields["send_updates"] = _send_updates(data.get("sendUpdates", data.get("send_updates")))
        return cls(**fields)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True, exclude={"send_updates"})

    def apply_to(self, existing: Mapping[str, Any], *, default_time_zone: str = "UTC") -> dict:
        """Merge this patch over a provider event body."""
        merged: dict[str, Any] = dict(existing)
        if self.title is not None:
            merged["summary"] = self.title
        if self.description is not None:
            merged["description"] = self.description
        if self.location is not None:
            merged["location"] = self.location
        if self.color_id is not None:
            merged["colorId"] = self.color_id
        if self.recurrence is not None:
            merged["recurrence"] = list(self.recurrence)
        if self.reminders is not None:
            merged["reminders"] = self.reminders
        if self.attendees is not None:
            merged["attendees"] = [{"email": email} for email in self.attendees]

        zone = self.time_zone or _existing_zone(existing) or default_time_zone
        if self.start is not None:
            merged["start"] = {"dateTime": to_rfc3339(self.start), "timeZone": zone}
        if self.end is not None:
            merged["end"] = {"dateTime": to_rfc3339(self.end), "timeZone": zone}

        start_at = parse_boundary(merged.get("start"))
        end_at = parse_boundary(merged.get("end"))
        if start_at is not None and end_at is not None and end_at <= start_at:
            raise InvalidTimeRangeError("End time must be after start time")
        return merged

    def to_tool_arguments(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        arguments: dict[str, Any] = {"calendarId": calendar_id, "eventId": event_id}
        if self.title is not None:
            arguments["summary"] = self.title
        if self.description is not None:
            arguments["description"] = self.description
        if self.location is not None:
            arguments["location"] = self.location
        if self.start is not None:
            arguments["start"] = to_rfc3339(self.start)
        if self.end is not None:
            arguments["end"] = to_rfc3339(self.end)
        if self.time_zone is not None:
            arguments["timeZone"] = self.time_zone
        if self.attendees is not None:
            arguments["attendees"] = [{"email": email} for email in self.attendees]
        if self.color_id is not None:
            arguments["colorId"] = self.color_id
        if self.recurrence is not None:
            arguments["recurrence"] = list(self.recurrence)
        if self.reminders is not None:
            arguments["reminders"] = self.reminders
        arguments["sendUpdates"] = self.send_updates.value
        return arguments


def _existing_zone(existing: Mapping[str, Any]) -> str | None:
    start = existing.get("start")
    if isinstance(start, Mapping):
        zone = start.get("timeZone")
        if isinstance(zone, str) and zone:
            return zone
    return None


class CalendarDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str
    description: str = ""
    time_zone: str = "UTC"
    location: str = ""

    @classmethod
    def from_input(
        cls, data: Mapping[str, Any], *, default_time_zone: str = "UTC"
    ) -> CalendarDraft:
        data = require_mapping(data, "Calendar data")
        summary_raw = data.get("summary") or data.get("name")
        return cls(
            summary=sanitize(summary_raw, "Calendar summary", required=True),
            description=sanitize(data.get("description"), "Description"),
            time_zone=coerce_zone(
                data.get("timeZone") or data.get("time_zone"), default=default_time_zone
            ),
            location=sanitize(data.get("location"), "Location"),
        )

    def to_google_body(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "description": self.description,
            "timeZone": self.time_zone,
            "location": self.location,
        }


class CalendarPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str | None = None
    description: str | None = None
    time_zone: str | None = None
    location: str | None = None

    @classmethod
    def from_input(cls, data: Mapping[str, Any]) -> CalendarPatch:
        data = require_mapping(data, "Calendar updates")
        fields: dict[str, Any] = {}
        summary_raw = _first_present(data, "summary", "name")
        if summary_raw is not _UNSET:
            fields["summary"] = sanitize(summary_raw, "Calendar summary", required=True)
        if "description" in data:
            fields["description"] = sanitize(data["description"], "Description")
        zone_raw = _first_present(data, "timeZone", "time_zone")
        if zone_raw is not _UNSET:
            fields["time_zone"] = coerce_zone(zone_raw)
        if "location" in data:
            fields["location"] = sanitize(data["location"], "Location")
        return cls(**fields)

    def apply_to(self, existing: Mapping[str, Any]) -> dict[str, Any]:
        merged: dict[str, Any] = dict(existing)
        if self.summary is not None:
            merged["summary"] = self.summary
        if self.description is not None:
            merged["description"] = self.description
        if self.time_zone is not None:
            merged["timeZone"] = self.time_zone
        if self.location is not None:
            merged["location"] = self.location
        return merged

    def to_tool_arguments(self, calendar_id: str) -> dict[str, Any]:
        arguments: dict[str, Any] = {"calendarId": calendar_id}
        if self.summary is not None:
            arguments["summary"] = self.summary
        if self.description is not None:
            arguments["description"] = self.description
        if self.time_zone is not None:
            arguments["timeZone"] = self.time_zone
        if self.location is not None:
            arguments["location"] = self.location
        return arguments
