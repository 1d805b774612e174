"""Structured logging for calendar-bot.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The calendar or reminder currently being worked on and the OTel trace context
are injected automatically via processors that read from ContextVars and the
current OTel span.  Sync and dispatch run concurrently on one event loop, so
each task sets its own context.

Log directory layout (when ``log_root`` is set)::

    logs/
      calendar-bot.log    # application logs (JSON)
      http.log            # httpx/httpcore transport logs (JSON)
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Work-unit context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_calendar_context: ContextVar[int | None] = ContextVar("calendar_id", default=None)
_reminder_context: ContextVar[int | None] = ContextVar("reminder_id", default=None)


def set_calendar_context(calendar_id: int | None) -> None:
    """Set the calendar id for the current async context."""
    _calendar_context.set(calendar_id)


def get_calendar_context() -> int | None:
    return _calendar_context.get()


def set_reminder_context(reminder_id: int | None) -> None:
    """Set the reminder id for the current async context."""
    _reminder_context.set(reminder_id)


def get_reminder_context() -> int | None:
    return _reminder_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_work_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``calendar_id`` / ``reminder_id`` from the ContextVars when set."""
    calendar_id = _calendar_context.get()
    if calendar_id is not None:
        event_dict.setdefault("calendar_id", calendar_id)
    reminder_id = _reminder_context.get()
    if reminder_id is not None:
        event_dict.setdefault("reminder_id", reminder_id)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
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
    "httpx",
    "httpcore",
    "asyncio",
)

_APP_LOG_FILE = "calendar-bot.log"
_HTTP_LOG_FILE = "http.log"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_work_context,
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
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Directory for structured log files.  When set, application logs go to
        ``{log_root}/calendar-bot.log`` and HTTP transport logs to
        ``{log_root}/http.log``.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
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
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")

        root.addHandler(_make_file_handler(log_root / _APP_LOG_FILE, file_processors))

        http_handler = _make_file_handler(log_root / _HTTP_LOG_FILE, file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
