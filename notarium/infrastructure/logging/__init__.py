"""Structured logging for the engine: structlog on top of stdlib logging.

SQLAlchemy, httpx and uvicorn records go through the same processor chain as
engine events. Every event carries a UTC timestamp, level, logger name, the
caller of stdlib records, the request correlation id and whatever was bound
with :func:`structlog.contextvars.bind_contextvars` (workers bind
``worker_id``). Values under credential-like or personal keys are masked
before rendering.
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

from notarium.infrastructure.config import LoggingSettings

_correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")

REDACTED_KEYS = frozenset({"api_key", "authorization", "password", "submitter_identity", "token"})
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore", "asyncio")


def _add_correlation_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    cid = _correlation_id_ctx.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _add_caller(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    record = event_dict.get("_record")
    if record is not None:
        event_dict["caller"] = f"{record.pathname}:{record.lineno}"
    return event_dict


def _redact(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _formatter(renderer: Any, pre_chain: list[Any]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def setup_logging(settings: LoggingSettings | None = None) -> None:
    """Install the processor chain and the stderr (and optional file) handlers.

    Console output is coloured unless ``json_output`` is set; the file sink,
    when configured, is always JSON lines.
    """
    settings = settings or LoggingSettings()
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _add_caller,
        _redact,
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.json_output:
        console_renderer: Any = structlog.processors.JSONRenderer()
    else:
        console_renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(console_renderer, shared))
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        sink = logging.FileHandler(settings.log_file, encoding="utf-8")
        sink.setFormatter(_formatter(structlog.processors.JSONRenderer(), shared))
        handlers.append(sink)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        level=settings.level,
        json_output=settings.json_output,
        log_file=settings.log_file or "none",
    )


def set_correlation_id(correlation_id: str) -> None:
    """Tag subsequent log events in this context with ``correlation_id``."""
    _correlation_id_ctx.set(correlation_id)


def get_correlation_id() -> str:
    return _correlation_id_ctx.get()


__all__ = ["REDACTED_KEYS", "get_correlation_id", "set_correlation_id", "setup_logging"]
