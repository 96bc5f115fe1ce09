"""Structured logging for calsync processes.

structlog's ``ProcessorFormatter`` sits on the root stdlib handler, so plain
``logging.getLogger(__name__)`` call sites come out structured as well.
``fmt="text"`` renders a coloured console; ``fmt="json"`` renders JSON lines.

Every record carries the calendar connection being synced (when one is bound
with :func:`connection_context`) and the active OTel trace/span ids.  With a
``log_root`` the JSON stream is also appended to
``{log_root}/calsync/{service_name}.log``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_connection_context: ContextVar[str | None] = ContextVar("calendar_connection_id", default=None)

# Transport chatter that would otherwise drown a DEBUG sync log.
_NOISE_LOGGERS = ("httpx", "httpcore", "asyncpg")

_APP_LOG_DIR = "calsync"
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_connection_context(connection_id: str | None) -> None:
    _connection_context.set(connection_id)


def get_connection_context() -> str | None:
    return _connection_context.get()


@contextmanager
def connection_context(connection_id: str) -> Iterator[None]:
    """Bind ``connection_id`` to every log line emitted inside the block."""
    token = _connection_context.set(connection_id)
    try:
        yield
    finally:
        _connection_context.reset(token)


def add_connection_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    connection_id = _connection_context.get()
    if connection_id is not None:
        event_dict["connection_id"] = connection_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Stamp ``trace_id``/``span_id`` of the current span (zeros outside a span)."""
    span_context = trace.get_current_span().get_span_context()
    if span_context is not None and span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_connection_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str = "calsync",
) -> None:
    """(Re)install calsync logging on the root logger.

    Calling this again replaces the previously installed handlers instead of
    stacking new ones.
    """
    if fmt == "json":
        console_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, console_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root) / _APP_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{service_name}.log")
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        root.addHandler(file_handler)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
