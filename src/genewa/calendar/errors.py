"""Error taxonomy and the ``OperationResult`` envelope for calendar operations.

Every failure inside the engine is a :class:`CalendarError` subclass carrying an
:class:`ErrorKind` and a ``retryable`` flag.  The retry executor and the service
layer fold those exceptions into an :class:`OperationResult`, which is the only
thing that crosses the public boundary.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict

from genewa.core.redaction import redact_credential_values

T = TypeVar("T")

MAX_ERROR_MESSAGE_LENGTH = 200

RETRYABLE_STATUS_CODES = frozenset({401, 408, 429, 500, 502, 503, 504})
NOT_FOUND_STATUS_CODES = frozenset({404, 410})


class ErrorKind(StrEnum):
    """Closed set of failure kinds reported to callers."""

    MISSING_FIELD = "MissingField"
    INVALID_FIELD_TYPE = "InvalidFieldType"
    INVALID_TIME_FORMAT = "InvalidTimeFormat"
    INVALID_TIME_RANGE = "InvalidTimeRange"
    INVALID_DURATION = "InvalidDuration"
    VALIDATION_FAILED = "ValidationFailed"
    PROTECTED_RESOURCE = "ProtectedResource"
    NOT_FOUND = "NotFound"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    RETRY_EXHAUSTED = "RetryExhausted"
    UPSTREAM_ERROR = "UpstreamError"


class CalendarError(RuntimeError):
    """Base error for all calendar engine failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    retryable: bool = False
    message_limit: int = MAX_ERROR_MESSAGE_LENGTH

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MissingFieldError(CalendarError):
    """A required input field is absent or blank."""

    kind = ErrorKind.MISSING_FIELD

    def __init__(self, field_name: str, message: str | None = None) -> None:
        self.field_name = field_name
        super().__init__(message or f"{field_name} is required")


class InvalidFieldTypeError(CalendarError):
    """A required input field has the wrong type."""

    kind = ErrorKind.INVALID_FIELD_TYPE

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"{field_name} must be a string")


class InvalidTimeFormatError(CalendarError):
    kind = ErrorKind.INVALID_TIME_FORMAT


class InvalidTimeRangeError(CalendarError):
    kind = ErrorKind.INVALID_TIME_RANGE


class InvalidDurationError(CalendarError):
    kind = ErrorKind.INVALID_DURATION


class ValidationFailedError(CalendarError):
    kind = ErrorKind.VALIDATION_FAILED


class ProtectedResourceError(CalendarError):
    kind = ErrorKind.PROTECTED_RESOURCE


class NotFoundError(CalendarError):
    kind = ErrorKind.NOT_FOUND


class UpstreamError(CalendarError):
    """The provider answered, but with a failure we cannot classify further."""

    kind = ErrorKind.UPSTREAM_ERROR


class ServiceUnavailableError(CalendarError):
    """The provider connection could not be established."""

    kind = ErrorKind.SERVICE_UNAVAILABLE
    retryable = True


class RetryExhaustedError(CalendarError):
    """Every attempt failed, or the retry loop ran out of time.

    With *last_error*, that error's message is truncated under its own limit
    and appended after the prefix.
    """

    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(
        self,
        message: str,
        *,
        last_error: CalendarError | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        self.last_error = last_error
        if kind is not None:
            self.kind = kind
        if last_error is not None:
            prefix = f"{message}: "
            self.message_limit = len(prefix) + last_error.message_limit
            message = prefix + safe_error_message(last_error.message, last_error.message_limit)
        super().__init__(message)


class ProviderTransportError(UpstreamError):
    """The provider connection dropped or timed out mid-call."""

    retryable = True


class CalendarCredentialError(CalendarError):
    """Raised when Google credential JSON is missing or invalid."""

    kind = ErrorKind.SERVICE_UNAVAILABLE


class CalendarTokenRefreshError(CalendarError):
    """Raised when refresh-token exchange fails."""

    kind = ErrorKind.SERVICE_UNAVAILABLE

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class CalendarRequestError(UpstreamError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.reason = message
        prefix = f"Google Calendar API request failed ({status_code}): "
        self.message_limit = len(prefix) + MAX_ERROR_MESSAGE_LENGTH
        super().__init__(prefix + message)
        self.retryable = status_code in RETRYABLE_STATUS_CODES


def classify_request_error(*, status_code: int, message: str) -> CalendarError:
    """Map a non-2xx provider status onto the error taxonomy."""
    if status_code in NOT_FOUND_STATUS_CODES:
        return NotFoundError(f"Resource not found: {message}")
    return CalendarRequestError(status_code=status_code, message=message)


def safe_error_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Redact, collapse whitespace and truncate a message for callers."""
    return " ".join(redact_credential_values(message).split())[:limit]


class OperationResult(BaseModel, Generic[T]):
    """Tagged success/failure envelope returned by every public operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: T | None = None
    message: str = ""
    error: ErrorKind | None = None
    attempts: int = 0

    @classmethod
    def ok(cls, data: Any = None, message: str = "", *, attempts: int = 0) -> OperationResult:
        return cls(success=True, data=data, message=message, attempts=attempts)

    @classmethod
    def err(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        attempts: int = 0,
        limit: int = MAX_ERROR_MESSAGE_LENGTH,
    ) -> OperationResult:
        return cls(
            success=False,
            error=kind,
            message=safe_error_message(message, limit),
            attempts=attempts,
        )

    @classmethod
    def from_error(cls, exc: CalendarError, *, attempts: int = 0) -> OperationResult:
        return cls.err(exc.kind, exc.message, attempts=attempts, limit=exc.message_limit)

    def to_response(self) -> dict[str, Any]:
        """Render the result as the JSON-ready response shape."""
        if self.success:
            return self.model_dump(mode="json", include={"success", "data", "message"})
        return {
            "success": False,
            "error": str(self.error) if self.error is not None else None,
            "message": self.message,
        }
