"""Calendar operation engine.

Public entry point is :class:`genewa.calendar.service.CalendarService`; the
remaining modules are the building blocks it composes.
"""

from genewa.calendar.errors import CalendarError, ErrorKind, OperationResult
from genewa.calendar.service import CalendarService

__all__ = ["CalendarError", "CalendarService", "ErrorKind", "OperationResult"]
