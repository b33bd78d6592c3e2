"""Structured logging for the CareIQ calendar service.

Uses structlog's ProcessorFormatter to upgrade every
``logging.getLogger(__name__)`` call site without changing it.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The service name, the sync run being executed, and the OTel trace context
are injected automatically by processors that read ContextVars and the
current span.

Log directory layout (when ``log_root`` is set)::

    logs/
      careiq/           # Application logs (JSON)
        calendar-sync.log
      uvicorn/          # HTTP server and client transport logs (JSON)
        calendar-sync.log
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Service and sync-run context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_service_context: ContextVar[str | None] = ContextVar("service_name", default=None)
_sync_context: ContextVar[dict[str, str] | None] = ContextVar("sync_context", default=None)


def set_service_context(name: str) -> None:
    """Set the service name for the current async context."""
    _service_context.set(name)


def get_sync_context() -> dict[str, str]:
    return dict(_sync_context.get() or {})


@contextmanager
def sync_context(**fields: Any) -> Iterator[None]:
    """Bind sync-run identifiers to every log line emitted inside the block.

    Nested blocks extend the outer context; values are stringified and
    ``None`` values are dropped.
    """
    merged = get_sync_context()
    merged.update({key: str(value) for key, value in fields.items() if value is not None})
    token = _sync_context.set(merged)
    try:
        yield
    finally:
        _sync_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_service_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``service`` and any bound sync-run fields into the event dict."""
    event_dict["service"] = _service_context.get()
    for key, value in (_sync_context.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_DIR_APP = "careiq"
_DIR_UVICORN = "uvicorn"


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, application logs
        go to ``{log_root}/careiq/{service_name}.log`` and transport logs to
        ``{log_root}/uvicorn/{service_name}.log``.
    service_name:
        Service identity, set in the ContextVar and used for file naming.
    """
    if service_name:
        set_service_context(service_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        log_name = service_name or "careiq"

        for subdir in (_DIR_APP, _DIR_UVICORN):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        app_log = log_root / _DIR_APP / f"{log_name}.log"
        root.addHandler(_make_file_handler(app_log, file_processors))

        transport_handler = _make_file_handler(
            log_root / _DIR_UVICORN / f"{log_name}.log", file_processors
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
