"""Prose response grammar (version 1).

Some calendar tool servers answer with human-readable text instead of JSON.
This module recovers records from that text.  The grammar is deliberately
narrow; records that do not match are dropped and counted, never guessed.

Events::

    Found 2 event(s):

    1. Event: Standup
    Event ID: abc123
    Start: Mon, Jan 01, 2024, 10:00 AM GMT+5:30
    End: Mon, Jan 01, 2024, 10:15 AM GMT+5:30
    Location: Room 4
    View: https://calendar.google.com/...

Calendars (blank-line separated, optional ``PRIMARY`` marker)::

    Work (work@example.com) PRIMARY
    Timezone: Europe/Berlin
    Access Role: owner

Colors::

    Color ID: 1 - Background: #a4bdfc, Foreground: #1d1d1d

Busy periods::

    Calendar: primary
    - 2024-01-01T10:00:00Z to 2024-01-01T11:00:00Z
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, timezone
from typing import Any, Literal

from genewa.calendar.errors import InvalidTimeFormatError
from genewa.calendar.models import BusyInterval, CalendarRecord, ColorRecord, EventRecord
from genewa.calendar.timeutil import normalize, to_rfc3339

PROSE_GRAMMAR_VERSION = 1

_EVENT_HEADER = re.compile(r"Found\s+\d+\s+event\(s\)\s*:", re.IGNORECASE)
_EVENT_BLOCK_SPLIT = re.compile(r"\n\s*\n\s*\d+\.\s+")
_CALENDAR_HEAD = re.compile(
    r"^(?P<name>.+?)\s*\((?P<id>[^()]+)\)\s*(?:[-:]\s*)?(?P<flag>PRIMARY)?\s*$"
)
_COLOR_LINE = re.compile(
    r"^Color ID:\s*(?P<id>\S+)\s*-\s*Background:\s*(?P<bg>#[0-9A-Fa-f]{3,8})\s*,"
    r"\s*Foreground:\s*(?P<fg>#[0-9A-Fa-f]{3,8})\s*$"
)
_BUSY_LINE = re.compile(r"^-\s*(?P<start>.+?)\s+to\s+(?P<end>.+?)\s*$")
_PROSE_DATE = re.compile(
    r"^(?P<body>.+?)\s+(?:GMT|UTC)(?P<offset>[+-]\d{1,2}(?::?\d{2})?)?$"
)
_NO_RESULTS = re.compile(r"\bno\b.*\bfound\b|\bno\s+(events|calendars|colors)\b", re.IGNORECASE)

_PROSE_DATE_FORMATS = (
    "%a, %b %d, %Y, %I:%M %p",
    "%a, %b %d, %Y, %I:%M:%S %p",
    "%a, %b %d, %Y, %H:%M",
    "%b %d, %Y, %I:%M %p",
    "%a, %b %d, %Y",
)

_EVENT_FIELDS = {
    "Event ID": "id",
    "Description": "description",
    "Start": "start",
    "End": "end",
    "Location": "location",
    "View": "html_link",
}


@dataclass
class ProseParseResult:
    """Records recovered from one prose response plus the count of dropped ones."""

    records: list[Any] = field(default_factory=list)
    dropped: int = 0
    recognized: bool = True


def is_no_results(text: str) -> bool:
    return not text.strip() or _NO_RESULTS.search(text) is not None


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def _offset(raw: str | None) -> timezone:
    if not raw:
        return UTC
    sign = -1 if raw.startswith("-") else 1
    digits = raw[1:]
    if ":" in digits:
        hours_text, minutes_text = digits.split(":", 1)
    elif len(digits) > 2:
        hours_text, minutes_text = digits[:-2], digits[-2:]
    else:
        hours_text, minutes_text = digits, "0"
    delta = timedelta(hours=int(hours_text), minutes=int(minutes_text))
    return timezone(sign * delta)


def parse_prose_datetime(text: str) -> datetime | None:
    """Parse an ISO timestamp or the ``Mon, Jan 01, 2024, 10:00 AM GMT+5:30`` form."""
    raw = text.strip()
    if not raw:
        return None
    try:
        return normalize(raw)
    except InvalidTimeFormatError:
        pass

    match = _PROSE_DATE.match(raw)
    body = match.group("body") if match else raw
    for fmt in _PROSE_DATE_FORMATS:
        try:
            parsed = datetime.strptime(body, fmt)
        except ValueError:
            continue
        zone = _offset(match.group("offset")) if match else UTC
        return normalize(parsed.replace(tzinfo=zone))
    return None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def parse_events(text: str) -> ProseParseResult:
    if _EVENT_HEADER.search(text) is None:
        return ProseParseResult(recognized=is_no_results(text))

    result = ProseParseResult()
    blocks = _EVENT_BLOCK_SPLIT.split(text)[1:]
    for block in blocks:
        record = _parse_event_block(block)
        if record is None:
            result.dropped += 1
        else:
            result.records.append(record)
    return result


def _parse_event_block(block: str) -> EventRecord | None:
    lines = [line.strip() for line in block.strip().splitlines() if line.strip()]
    if not lines or not lines[0].startswith("Event:"):
        return None

    values: dict[str, str] = {"title": lines[0][len("Event:") :].strip()}
    for line in lines[1:]:
        label, sep, value = line.partition(":")
        if not sep:
            continue
        key = _EVENT_FIELDS.get(label.strip())
        if key is not None and key not in values:
            values[key] = value.strip()

    if not values.get("id") or not values.get("start") or not values.get("end"):
        return None
    start = parse_prose_datetime(values["start"])
    end = parse_prose_datetime(values["end"])
    if start is None or end is None or end < start:
        return None

    return EventRecord(
        id=values["id"],
        title=values["title"] or "Untitled Event",
        description=values.get("description", ""),
        start=to_rfc3339(start),
        end=to_rfc3339(end),
        location=values.get("location", ""),
        html_link=values.get("html_link"),
        duration_minutes=int((end - start).total_seconds() // 60),
    )


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


def _blocks(text: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    for chunk in re.split(r"\n\s*\n", text.strip()):
        lines = [line.strip() for line in chunk.splitlines() if line.strip()]
        if lines:
            blocks.append(lines)
    return blocks


def _is_header(lines: list[str]) -> bool:
    return len(lines) == 1 and lines[0].endswith(":") and "(" not in lines[0]


def parse_calendars(text: str) -> ProseParseResult:
    result = ProseParseResult(recognized=True)
    for lines in _blocks(text):
        if _is_header(lines):
            continue
        match = _CALENDAR_HEAD.match(lines[0])
        if match is None:
            result.dropped += 1
            continue
        fields: dict[str, str] = {}
        for line in lines[1:]:
            label, sep, value = line.partition(":")
            if sep:
                fields[label.strip().lower()] = value.strip()
        result.records.append(
            CalendarRecord(
                id=match.group("id").strip(),
                name=match.group("name").strip() or "Untitled Calendar",
                primary=match.group("flag") is not None or "PRIMARY" in lines[0],
                time_zone=fields.get("timezone") or fields.get("time zone"),
                access_role=fields.get("access role"),
                description=fields.get("description", ""),
            )
        )
    if not result.records and not result.dropped:
        result.recognized = is_no_results(text) or not text.strip()
    return result


# ---------------------------------------------------------------------------
# Colors
# ---------------------------------------------------------------------------


def parse_colors(text: str) -> ProseParseResult:
    result = ProseParseResult(recognized=True)
    scope: Literal["event", "calendar"] = "event"
    for raw_line in text.splitlines():
        line = raw_line.strip().lstrip("-* ").strip()
        lowered = line.lower()
        if lowered.startswith("calendar colors"):
            scope = "calendar"
            continue
        if lowered.startswith("event colors"):
            scope = "event"
            continue
        if not line.startswith("Color ID:"):
            continue
        match = _COLOR_LINE.match(line)
        if match is None:
            result.dropped += 1
            continue
        result.records.append(
            ColorRecord(
                id=match.group("id"),
                background=match.group("bg"),
                foreground=match.group("fg"),
                scope=scope,
            )
        )
    return result


# ---------------------------------------------------------------------------
# Busy periods
# ---------------------------------------------------------------------------


@dataclass
class BusyParseResult:
    calendars: dict[str, list[BusyInterval]] = field(default_factory=dict)
    dropped: int = 0


def parse_busy(text: str) -> BusyParseResult:
    result = BusyParseResult()
    current: str | None = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("Calendar:"):
            current = line[len("Calendar:") :].strip()
            result.calendars.setdefault(current, [])
            continue
        if current is None or not line.startswith("-"):
            continue
        match = _BUSY_LINE.match(line)
        start = parse_prose_datetime(match.group("start")) if match else None
        end = parse_prose_datetime(match.group("end")) if match else None
        if start is None or end is None or end < start:
            result.dropped += 1
            continue
        result.calendars[current].append(BusyInterval(start=start, end=end))
    return result
