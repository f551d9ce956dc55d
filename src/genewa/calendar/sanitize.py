"""Input sanitization for caller-supplied strings and identifiers."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from genewa.calendar.errors import InvalidFieldTypeError, MissingFieldError, ValidationFailedError
from genewa.calendar.models import PRIMARY_CALENDAR_ID

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def sanitize(value: Any, field_name: str, required: bool = False) -> str:
    """Trim *value* into a string, enforcing presence when *required*.

    Optional non-string values are coerced with ``str()``; required ones must
    already be strings.  Optional missing values come back as ``""``.
    """
    if value is None:
        if required:
            raise MissingFieldError(field_name)
        return ""

    if not isinstance(value, str):
        if required:
            raise InvalidFieldTypeError(field_name)
        return str(value).strip()

    cleaned = value.strip()
    if required and not cleaned:
        raise MissingFieldError(field_name, f"{field_name} cannot be empty")
    return cleaned


def sanitize_optional(value: Any, field_name: str) -> str | None:
    """Like :func:`sanitize` but maps blank input to ``None``."""
    cleaned = sanitize(value, field_name)
    return cleaned or None


def sanitize_calendar_id(value: Any, default: str = PRIMARY_CALENDAR_ID) -> str:
    return sanitize(value, "Calendar ID") or default


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and _EMAIL_PATTERN.match(value.strip()) is not None


def sanitize_attendees(values: Iterable[Any] | None) -> list[str]:
    """Normalize attendee input (strings or ``{"email": ...}`` mappings) to addresses."""
    if values is None:
        return []
    if isinstance(values, str | Mapping):
        values = [values]
    elif not isinstance(values, Iterable):
        raise ValidationFailedError("Attendees must be a list of email addresses")

    addresses: list[str] = []
    for entry in values:
        raw = entry.get("email") if isinstance(entry, Mapping) else entry
        address = sanitize(raw, "Attendee email")
        if not address:
            continue
        if not is_valid_email(address):
            raise ValidationFailedError(f"Invalid attendee email address: {address}")
        if address not in addresses:
            addresses.append(address)
    return addresses
