"""OpenTelemetry metrics instruments for calendar synchronization.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during service startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  careiq.calendar.sync_runs         Counter   (provider, status)
      Finalized sync runs.

  careiq.calendar.sync_duration_ms  Histogram (provider)
      Wall-clock duration of a run.

  careiq.calendar.sync_events       Counter   (provider, outcome)
      Per-event outcomes: created, updated, failed, conflict.

  careiq.calendar.token_refreshes   Counter   (provider, outcome)
      Access-token refresh attempts: success or error.

  careiq.calendar.active_runs       UpDownCounter (gauge semantics)
      Runs currently between log creation and finalization.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "careiq"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the service.

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
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# SyncMetrics: caches instruments, records with provider labels
# ---------------------------------------------------------------------------


class SyncMetrics:
    """Convenience wrapper around the calendar sync instruments.

    Safe to construct before ``init_metrics``; instruments are created on
    first use from whatever provider is installed at that point.
    """

    def __init__(self) -> None:
        self.__runs: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__events: metrics.Counter | None = None
        self.__refreshes: metrics.Counter | None = None
        self.__active: metrics.UpDownCounter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _runs(self) -> metrics.Counter:
        if self.__runs is None:
            self.__runs = get_meter().create_counter(
                name="careiq.calendar.sync_runs",
                description="Finalized calendar sync runs",
                unit="runs",
            )
        return self.__runs

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="careiq.calendar.sync_duration_ms",
                description="Calendar sync run duration in milliseconds",
                unit="ms",
            )
        return self.__duration

    @property
    def _events(self) -> metrics.Counter:
        if self.__events is None:
            self.__events = get_meter().create_counter(
                name="careiq.calendar.sync_events",
                description="Per-event calendar sync outcomes",
                unit="events",
            )
        return self.__events

    @property
    def _refreshes(self) -> metrics.Counter:
        if self.__refreshes is None:
            self.__refreshes = get_meter().create_counter(
                name="careiq.calendar.token_refreshes",
                description="Provider access-token refresh attempts",
                unit="refreshes",
            )
        return self.__refreshes

    @property
    def _active(self) -> metrics.UpDownCounter:
        if self.__active is None:
            self.__active = get_meter().create_up_down_counter(
                name="careiq.calendar.active_runs",
                description="Calendar sync runs currently executing",
                unit="runs",
            )
        return self.__active

    # -- recording helpers ---------------------------------------------------

    def run_started(self, provider: str) -> None:
        self._active.add(1, {"provider": provider})

    def run_finished(self, provider: str, *, status: str, duration_ms: int) -> None:
        attrs = {"provider": provider}
        self._active.add(-1, attrs)
        self._runs.add(1, {**attrs, "status": status})
        self._duration.record(duration_ms, attrs)

    def event_outcome(self, provider: str, outcome: str) -> None:
        """Record one event outcome (created, updated, failed, conflict)."""
        self._events.add(1, {"provider": provider, "outcome": outcome})

    def token_refresh(self, provider: str, *, success: bool) -> None:
        self._refreshes.add(1, {"provider": provider, "outcome": "success" if success else "error"})


sync_metrics = SyncMetrics()
