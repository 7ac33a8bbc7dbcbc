"""Logging setup and per-request log context.

When WEBSEC_LOG_FORMAT=json, all log output is JSON-lines (one object per
line). Otherwise the standard human-readable format is used, with the request
context appended in brackets.

The gates bind the policy layer and the request (method, path) with
:func:`log_context` while a protection runs; :class:`ContextFilter` copies the
bound fields onto every record logged inside, so a rejection logged deep in a
protection still says which layer and request it belongs to.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Iterator

# Attributes copied to the top level when passed through ``extra={...}`` or
# bound with log_context().
EXTRA_FIELDS = (
    "policy", "fragment", "method", "path", "status_code", "origin", "url",
)

_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "websecurity_log_context", default={},
)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind *fields* to every record logged in the current context."""
    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy bound context fields onto records; explicit ``extra`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line.

    - `severity` carries the level
    - `timestamp` is RFC-3339 in UTC
    - `logger` is the logger name
    - known extra and context fields are merged at top level
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))

        if record.exc_info and record.exc_info[2]:
            payload["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Exception",
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
                "stacktrace": "".join(traceback.format_exception(*record.exc_info)),
            }

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextTextFormatter(logging.Formatter):
    """Human-readable lines ending with ``[policy=csrf path=/x ...]`` when there is context."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if not fields:
            return line
        context = " ".join(f"{key}={value}" for key, value in fields.items())
        first, sep, rest = line.partition("\n")
        return f"{first} [{context}]{sep}{rest}"


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {}
    for key in EXTRA_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value
    return fields


def setup_logging(log_format: str = "text", level: str = "INFO") -> None:
    """Configure root logging.

    Args:
        log_format: "json" for JSON lines, "text" for human-readable.
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reload
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextTextFormatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
        ))

    root.addHandler(handler)
