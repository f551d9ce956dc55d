"""Value types, provider records and gateway payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from genewa.calendar.errors import InvalidTimeRangeError

PRIMARY_CALENDAR_ID = "primary"


# ---------------------------------------------------------------------------
# Time values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval ``[start, end)`` with ``end > start``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise InvalidTimeRangeError("End time must be after start time")

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class AvailableSlot:
    start: datetime
    end: datetime
    duration_minutes: int


class SendUpdatesPolicy(StrEnum):
    """Controls whether attendees receive notifications for event changes."""

    all = "all"
    external_only = "externalOnly"
    none = "none"


# ---------------------------------------------------------------------------
# Normalized records handed back to callers
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class EventRecord(_Record):
    id: str
    title: str = "Untitled Event"
    description: str = ""
    start: str | None = None
    end: str | None = None
    location: str = ""
    attendees: list[str] = Field(default_factory=list)
    color_id: str | None = None
    status: str | None = None
    created: str | None = None
    updated: str | None = None
    html_link: str | None = None
    organizer: str | None = None
    recurrence: list[str] = Field(default_factory=list)
    duration_minutes: int | None = None

    @classmethod
    def from_google(cls, item: dict[str, Any]) -> EventRecord:
        from genewa.calendar.timeutil import parse_boundary

        start_raw = item.get("start") or {}
        end_raw = item.get("end") or {}
        start = _boundary_text(start_raw)
        end = _boundary_text(end_raw)
        duration: int | None = None
        start_at = parse_boundary(start_raw)
        end_at = parse_boundary(end_raw)
        if start_at is not None and end_at is not None and end_at >= start_at:
            duration = int((end_at - start_at).total_seconds() // 60)

        attendees = [
            str(attendee["email"])
            for attendee in item.get("attendees") or []
            if isinstance(attendee, dict) and attendee.get("email")
        ]
        organizer = item.get("organizer")
        recurrence = item.get("recurrence")
        return cls(
            id=str(item.get("id", "")),
            title=item.get("summary") or "Untitled Event",
            description=item.get("description") or "",
            start=start,
            end=end,
            location=item.get("location") or "",
            attendees=attendees,
            color_id=item.get("colorId"),
            status=item.get("status"),
            created=item.get("created"),
            updated=item.get("updated"),
            html_link=item.get("htmlLink"),
            organizer=organizer.get("email") if isinstance(organizer, dict) else None,
            recurrence=[str(rule) for rule in recurrence] if isinstance(recurrence, list) else [],
            duration_minutes=duration,
        )


def _boundary_text(value: Any) -> str | None:
    if isinstance(value, dict):
        raw = value.get("dateTime") or value.get("date")
        return str(raw) if raw else None
    if isinstance(value, str) and value:
        return value
    return None


class CalendarRecord(_Record):
    id: str
    name: str = "Untitled Calendar"
    description: str = ""
    time_zone: str | None = None
    access_role: str | None = None
    primary: bool = False
    selected: bool = False
    background_color: str | None = None
    foreground_color: str | None = None
    hidden: bool = False
    default_reminders: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_google(cls, item: dict[str, Any]) -> CalendarRecord:
        return cls(
            id=str(item.get("id", "")),
            name=item.get("summaryOverride") or item.get("summary") or "Untitled Calendar",
            description=item.get("description") or "",
            time_zone=item.get("timeZone"),
            access_role=item.get("accessRole"),
            primary=bool(item.get("primary", False)),
            selected=bool(item.get("selected", False)),
            background_color=item.get("backgroundColor"),
            foreground_color=item.get("foregroundColor"),
            hidden=bool(item.get("hidden", False)),
            default_reminders=list(item.get("defaultReminders") or []),
        )


class ColorRecord(_Record):
    id: str
    background: str
    foreground: str
    scope: Literal["event", "calendar"] = "event"


# ---------------------------------------------------------------------------
# Gateway payloads
# ---------------------------------------------------------------------------


class StructuredPayload(BaseModel):
    """Provider returned a decoded JSON object."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["structured"] = "structured"
    data: dict[str, Any]


class ProsePayload(BaseModel):
    """Provider returned free-form text that must be parsed."""

    type: Literal["prose"] = "prose"
    message: str


GatewayPayload = Annotated[StructuredPayload | ProsePayload, Field(discriminator="type")]
