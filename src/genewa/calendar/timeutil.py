"""Date/time normalization for calendar inputs.

All instants leaving this module are timezone-aware UTC datetimes truncated to
whole seconds.  Strings without seconds get ``:00`` appended; strings without
an offset are read as UTC.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from genewa.calendar.errors import InvalidTimeFormatError, ValidationFailedError
from genewa.calendar.models import TimeRange

DEFAULT_LISTING_WINDOW = timedelta(days=7)
DEFAULT_SEARCH_WINDOW = timedelta(days=30)

_MISSING_SECONDS_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2})(?!:\d)(.*)$")


class RangePurpose(StrEnum):
    """Selects the default window length when the upper bound is omitted."""

    listing = "listing"
    search = "search"


def utc_now() -> datetime:
    """Current instant, second precision."""
    return datetime.now(UTC).replace(microsecond=0)


def normalize(value: str | datetime | date) -> datetime:
    """Normalize *value* into a UTC instant with second precision.

    Raises ``InvalidTimeFormatError`` for empty, unparseable or non-temporal input.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = _parse_string(value)
    else:
        raise InvalidTimeFormatError(f"Invalid date/time format: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).replace(microsecond=0)


def _parse_string(value: str) -> datetime:
    raw = value.strip()
    if not raw:
        raise InvalidTimeFormatError("Invalid date/time format: empty value")

    match = _MISSING_SECONDS_PATTERN.match(raw)
    if match is not None:
        raw = f"{match.group(1)}:00{match.group(2)}"
    if raw[-1] in "Zz":
        raw = f"{raw[:-1]}+00:00"

    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidTimeFormatError(f"Invalid date/time format: {value}") from exc


def normalize_range(
    time_min: str | datetime | date | None = None,
    time_max: str | datetime | date | None = None,
    *,
    purpose: RangePurpose = RangePurpose.listing,
    now: datetime | None = None,
) -> TimeRange:
    """Resolve an optional pair of bounds into a validated ``TimeRange``.

    A missing lower bound defaults to *now*; a missing upper bound defaults to
    7 days (listing) or 30 days (search) after *now*.  ``end <= start`` raises
    ``InvalidTimeRangeError``.
    """
    reference = normalize(now) if now is not None else utc_now()
    start = normalize(time_min) if not _is_blank(time_min) else reference
    if _is_blank(time_max):
        window = DEFAULT_SEARCH_WINDOW if purpose == RangePurpose.search else DEFAULT_LISTING_WINDOW
        end = reference + window
    else:
        end = normalize(time_max)  # type: ignore[arg-type]
    return TimeRange(start=start, end=end)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def coerce_zone(name: str | None, default: str = "UTC") -> str:
    """Validate an IANA zone name, falling back to *default* when blank."""
    candidate = name.strip() if isinstance(name, str) else ""
    if not candidate:
        candidate = default
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationFailedError(f"Invalid time zone: {candidate}") from exc
    return candidate


def current_time(zone: str | None = None, *, now: datetime | None = None) -> dict[str, Any]:
    """Describe the current instant in UTC and in *zone*."""
    zone_name = coerce_zone(zone)
    instant = normalize(now) if now is not None else utc_now()
    local = instant.astimezone(ZoneInfo(zone_name))
    return {
        "utc": to_rfc3339(instant),
        "local": local.isoformat(),
        "timeZone": zone_name,
        "timestamp": int(instant.timestamp() * 1000),
    }


def parse_boundary(value: Any) -> datetime | None:
    """Parse a provider event boundary (``{"dateTime"}``/``{"date"}`` or a bare string)."""
    if isinstance(value, dict):
        raw = value.get("dateTime") or value.get("date")
    else:
        raw = value
    if isinstance(raw, datetime | date):
        return normalize(raw)
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return normalize(raw)
    except InvalidTimeFormatError:
        return None
