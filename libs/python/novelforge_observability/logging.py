"""Structured JSON logging for NovelForge processes."""

from __future__ import annotations

import json
import logging
import logging.config
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator


_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("novelforge_log_context", default={})

CAPTURE_WARNINGS_ENV = "NOVELFORGE_CAPTURE_WARNINGS"
_TRUTHY = {"1", "true", "t", "yes", "y", "on"}


class ContextFilter(logging.Filter):
    """Copy fields bound with :func:`log_context` onto each record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - inherited docstring
        context = _LOG_CONTEXT.get()
        if context:
            record.observability_context = context
            for key, value in context.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        if getattr(record, "service", None) is None:
            record.service = self.service_name
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying task and generation fields."""

    _RESERVED = frozenset(
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
            "module",
            "msecs",
            "msg",
            "name",
            "observability_context",
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

    # Fields promoted ahead of arbitrary extras.
    _WHITELIST = (
        "service",
        "task_id",
        "owner_id",
        "stage",
        "chapter_id",
        "prompt_id",
        "model",
        "provider",
        "input_chars",
        "output_chars",
        "cost",
        "attempt",
        "route",
        "method",
        "status_code",
        "latency_ms",
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited docstring
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._WHITELIST:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in payload or key.startswith("_"):
                continue
            if value is not None and self._is_json_safe(value):
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _is_json_safe(value: Any) -> bool:
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return False
        return True


def _logging_config(service_name: str, level: str | int) -> dict[str, Any]:
    handlers = ["default"]
    quiet = {"handlers": handlers, "level": level, "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"json": {"()": "novelforge_observability.logging.JsonFormatter"}},
        "filters": {
            "context": {
                "()": "novelforge_observability.logging.ContextFilter",
                "service_name": service_name,
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "json",
                "filters": ["context"],
            }
        },
        "root": {"level": level, "handlers": handlers},
        "loggers": {
            "uvicorn": dict(quiet),
            "uvicorn.error": dict(quiet),
            "uvicorn.access": dict(quiet),
            "httpx": {**quiet, "level": "WARNING"},
        },
    }


def setup_logging(
    service_name: str,
    level: str | int = "INFO",
    *,
    capture_warnings: bool | None = None,
) -> None:
    """Route all process logging through the JSON formatter.

    Safe to call more than once.
    """

    logging.config.dictConfig(_logging_config(service_name, level))

    if capture_warnings is None:
        capture_warnings = os.getenv(CAPTURE_WARNINGS_ENV, "").strip().lower() in _TRUTHY
    if capture_warnings:
        logging.captureWarnings(True)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind fields to every record logged inside the block.

    Passing ``None`` for a key removes it for the duration of the block.
    """

    updated = dict(_LOG_CONTEXT.get())
    for key, value in kwargs.items():
        if value is None:
            updated.pop(key, None)
        else:
            updated[key] = value
    token = _LOG_CONTEXT.set(updated)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_LOG_CONTEXT.get())
