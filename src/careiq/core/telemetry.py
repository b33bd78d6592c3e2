"""OpenTelemetry tracing initialization and span wrappers for sync runs."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "careiq"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the service.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call.  Otherwise the global no-op
    provider stays in place and spans cost nothing.

    Args:
        service_name: Service name for tracing (e.g., "careiq-calendar-sync").

    Returns:
        A Tracer instance (real or no-op depending on config).
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for service=%s", service_name)
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


class sync_span:
    """Create an OpenTelemetry span around one calendar operation.

    Can be used as a **context manager** or as a **decorator** on async
    functions.

    Context manager usage::

        with sync_span("calendar.sync.run", provider="google") as span:
            ...

    Decorator usage::

        @sync_span("calendar.scheduler.tick")
        async def tick(self): ...

    Attributes are set as ``careiq.<key>``.  Exceptions are recorded on the
    span and the status is set to ERROR before the exception is re-raised.
    """

    def __init__(self, name: str, **attributes: object) -> None:
        self._name = name
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    # -- context manager protocol ------------------------------------------

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._name)
        for key, value in self._attributes.items():
            if value is not None:
                self._span.set_attribute(f"careiq.{key}", str(value))
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    # -- decorator protocol ------------------------------------------------

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each call enters its own span instance.
        name = self._name
        attributes = self._attributes

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with sync_span(name, **attributes):
                return await func(*args, **kwargs)

        return _wrapper
