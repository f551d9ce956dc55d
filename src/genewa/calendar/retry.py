"""Bounded retry with connection recovery for provider calls.

Each attempt first makes sure the provider connection is ready, then runs the
call.  Retryable failures (transport errors, connection failures, 5xx/429
responses) are retried after ``backoff(attempt, base_delay)`` seconds; all
other ``CalendarError`` failures are returned immediately.  Exceptions that are
not ``CalendarError`` or a transport failure are programmer errors and
propagate.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

import httpx

from genewa.calendar.connection import ProviderConnection
from genewa.calendar.errors import (
    CalendarError,
    ErrorKind,
    OperationResult,
    ProviderTransportError,
    RetryExhaustedError,
    ServiceUnavailableError,
)
from genewa.core.logging import operation_context
from genewa.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[Any]]
Backoff = Callable[[int, float], float]


class RetryPhase(StrEnum):
    idle = "idle"
    attempting = "attempting"
    retrying = "retrying"
    success = "success"
    exhausted = "exhausted"


def linear_backoff(attempt: int, base_delay: float) -> float:
    """Delay before the retry that follows failed *attempt* (1-based)."""
    return attempt * base_delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    backoff: Backoff = linear_backoff
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be non-negative")

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff(attempt, self.base_delay_seconds))


@dataclass
class RetryState:
    """Progress of one operation through the retry loop."""

    operation: str
    max_attempts: int
    attempt: int = 0
    phase: RetryPhase = RetryPhase.idle
    last_error: CalendarError | None = None
    delays: list[float] = field(default_factory=list)
    connection_failures: int = 0


class RetryExecutor:
    """Runs provider calls under a :class:`RetryPolicy`."""

    def __init__(
        self,
        connection: ProviderConnection,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        self.connection = connection
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._metrics = metrics or CalendarMetrics(connection.provider)

    async def run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        describe: Callable[[T], str] | None = None,
    ) -> OperationResult:
        """Execute *call* with retries and fold the outcome into an ``OperationResult``.

        *describe* builds the success message from the call's return value.
        """
        state = RetryState(operation=operation, max_attempts=self.policy.max_attempts)
        with operation_context(operation):
            if self.policy.timeout_seconds is None:
                return await self._attempt_loop(state, call, describe)
            try:
                async with asyncio.timeout(self.policy.timeout_seconds):
                    return await self._attempt_loop(state, call, describe)
            except TimeoutError:
                state.phase = RetryPhase.exhausted
                self._metrics.record_retry_exhausted(operation)
                logger.warning(
                    "%s timed out after %gs (attempt %d/%d)",
                    operation,
                    self.policy.timeout_seconds,
                    state.attempt,
                    state.max_attempts,
                )
                error = RetryExhaustedError(
                    f"{operation} timed out after {self.policy.timeout_seconds:g}s"
                )
                return OperationResult.from_error(error, attempts=state.attempt)

    async def _attempt_loop(
        self,
        state: RetryState,
        call: Callable[[], Awaitable[T]],
        describe: Callable[[T], str] | None,
    ) -> OperationResult:
        for attempt in range(1, state.max_attempts + 1):
            state.attempt = attempt
            state.phase = RetryPhase.attempting
            try:
                await self.connection.ensure_ready()
                value = await call()
            except CalendarError as exc:
                error = exc
            except (httpx.TransportError, ConnectionError, TimeoutError) as exc:
                self.connection.mark_unavailable(str(exc) or type(exc).__name__)
                error = ProviderTransportError(str(exc) or type(exc).__name__)
            else:
                state.phase = RetryPhase.success
                self._metrics.record_attempt(state.operation, "success")
                message = describe(value) if describe is not None else ""
                return OperationResult.ok(value, message, attempts=attempt)

            state.last_error = error
            if isinstance(error, ServiceUnavailableError):
                state.connection_failures += 1

            if not error.retryable:
                self._metrics.record_attempt(state.operation, "fatal")
                logger.info("%s failed with %s: %s", state.operation, error.kind, error.message)
                return OperationResult.from_error(error, attempts=attempt)

            self._metrics.record_attempt(state.operation, "retryable")
            if attempt < state.max_attempts:
                delay = self.policy.delay_for(attempt)
                state.phase = RetryPhase.retrying
                state.delays.append(delay)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    state.operation,
                    attempt,
                    state.max_attempts,
                    error.message,
                    delay,
                )
                await self._sleep(delay)

        return self._exhausted(state)

    def _exhausted(self, state: RetryState) -> OperationResult:
        state.phase = RetryPhase.exhausted
        self._metrics.record_retry_exhausted(state.operation)
        assert state.last_error is not None
        logger.error(
            "%s failed after %d attempts: %s",
            state.operation,
            state.max_attempts,
            state.last_error.message,
        )
        kind = (
            ErrorKind.SERVICE_UNAVAILABLE
            if state.connection_failures == state.max_attempts
            else ErrorKind.RETRY_EXHAUSTED
        )
        error = RetryExhaustedError(
            f"{state.operation} failed after {state.max_attempts} attempts",
            last_error=state.last_error,
            kind=kind,
        )
        return OperationResult.from_error(error, attempts=state.max_attempts)
