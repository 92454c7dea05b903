"""Centralized logging configuration with JSON-formatted extras and cycle context."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_cycle_context: ContextVar[dict[str, Any] | None] = ContextVar("cycle_context", default=None)


class JSONExtrasFormatter(logging.Formatter):
    """Formatter that outputs a readable log line with extras as JSON.

    Output format:
        2026-01-15 10:30:45 | INFO     | keyword_scheduler.module | Message {"coverage_key": "austin_tx_us"}
    """

    RESERVED_ATTRS = frozenset(
        {
            "args",
            "asctime",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "taskName",
            "thread",
            "threadName",
        }
    )

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        timestamp = self.formatTime(record, self.datefmt)
        base = f"{timestamp} | {record.levelname:<8} | {record.name} | {record.message}"

        extras = {
            k: v
            for k, v in record.__dict__.items()
            if k not in self.RESERVED_ATTRS and not k.startswith("_")
        }

        if extras:
            try:
                extras_str = json.dumps(extras, default=str, ensure_ascii=False, sort_keys=True)
                base = f"{base} {extras_str}"
            except (TypeError, ValueError):
                pass

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            base = f"{base}\n{record.exc_text}"

        return base


class CycleContextFilter(logging.Filter):
    """Copy the active cycle context (cycle_id, coverage_key, source) onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _cycle_context.get()
        if context:
            for key, value in context.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        return True


@contextmanager
def bind_cycle_context(**values: Any) -> Iterator[None]:
    """Attach cycle identifiers to every log line emitted inside the block."""
    current = dict(_cycle_context.get() or {})
    current.update({key: value for key, value in values.items() if value is not None})
    token = _cycle_context.set(current)
    try:
        yield
    finally:
        _cycle_context.reset(token)


def setup_logging(level: int | None = None) -> None:
    """Configure the package logger with console output and JSON extras."""
    from keyword_scheduler.config import settings

    effective_level = level if level is not None else (
        logging.DEBUG if settings.debug else logging.INFO
    )
    logger = logging.getLogger("keyword_scheduler")
    logger.setLevel(effective_level)

    # Avoid adding duplicate handlers if called multiple times
    if logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(effective_level)
    handler.setFormatter(JSONExtrasFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(CycleContextFilter())

    logger.addHandler(handler)
    logger.propagate = False
