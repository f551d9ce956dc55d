"""OpenTelemetry metrics instruments for the calendar engine.

Instruments are created lazily from the global MeterProvider, so callers do not
need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op MeterProvider stays in
place and all recordings are silent no-ops.

Instruments
-----------
  genewa.calendar.attempts                Counter  (labels: operation, outcome)
      Every provider call attempt made by the retry executor.

  genewa.calendar.retry_exhausted         Counter  (label: operation)
      Operations that failed after the last permitted attempt.

  genewa.calendar.connect_total           Counter  (label: outcome=success|failure)
      Provider connection establishment attempts.

  genewa.calendar.prose_records_dropped   Counter  (label: kind)
      Malformed records skipped while parsing prose responses.

All instruments carry a ``provider`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "genewa"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _attempts_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="genewa.calendar.attempts",
        description="Provider call attempts made by the retry executor",
        unit="attempts",
    )


def _retry_exhausted_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="genewa.calendar.retry_exhausted",
        description="Calendar operations that failed after all retry attempts",
        unit="operations",
    )


def _connect_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="genewa.calendar.connect_total",
        description="Provider connection establishment attempts",
        unit="attempts",
    )


def _prose_records_dropped_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="genewa.calendar.prose_records_dropped",
        description="Malformed records skipped while parsing prose provider responses",
        unit="records",
    )


# ---------------------------------------------------------------------------
# CalendarMetrics: convenience wrapper that caches instruments per provider
# ---------------------------------------------------------------------------


class CalendarMetrics:
    """Lazily-created calendar instruments bound to one provider label.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self, provider: str) -> None:
        self._attrs = {"provider": provider}
        self.__attempts: metrics.Counter | None = None
        self.__exhausted: metrics.Counter | None = None
        self.__connect: metrics.Counter | None = None
        self.__prose_dropped: metrics.Counter | None = None

    @property
    def _attempts(self) -> metrics.Counter:
        if self.__attempts is None:
            self.__attempts = _attempts_total()
        return self.__attempts

    @property
    def _exhausted(self) -> metrics.Counter:
        if self.__exhausted is None:
            self.__exhausted = _retry_exhausted_total()
        return self.__exhausted

    @property
    def _connect(self) -> metrics.Counter:
        if self.__connect is None:
            self.__connect = _connect_total()
        return self.__connect

    @property
    def _prose_dropped(self) -> metrics.Counter:
        if self.__prose_dropped is None:
            self.__prose_dropped = _prose_records_dropped_total()
        return self.__prose_dropped

    def record_attempt(self, operation: str, outcome: str) -> None:
        """Record one attempt (outcome: success|retryable|fatal)."""
        self._attempts.add(1, {**self._attrs, "operation": operation, "outcome": outcome})

    def record_retry_exhausted(self, operation: str) -> None:
        self._exhausted.add(1, {**self._attrs, "operation": operation})

    def record_connect(self, success: bool) -> None:
        self._connect.add(1, {**self._attrs, "outcome": "success" if success else "failure"})

    def record_prose_dropped(self, kind: str, count: int = 1) -> None:
        if count > 0:
            self._prose_dropped.add(count, {**self._attrs, "kind": kind})
