"""Per-task ride context that is stamped onto every log record."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_fields: ContextVar[dict[str, Any] | None] = ContextVar("ridesync_log_fields", default=None)


class LogContext:
    """Fields visible to the current asyncio task and the tasks it spawns."""

    @staticmethod
    def get() -> dict[str, Any]:
        return dict(_fields.get() or {})

    @classmethod
    def set(cls, **fields: Any) -> None:
        _fields.set(cls.get() | fields)

    @staticmethod
    def clear() -> None:
        _fields.set(None)


class ContextFilter(logging.Filter):
    """Copies LogContext fields onto records, never overwriting explicit extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in LogContext.get().items():
            record.__dict__.setdefault(name, value)
        return True


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    token = _fields.set(LogContext.get() | fields)
    try:
        yield
    finally:
        _fields.reset(token)


@contextmanager
def log_ride_context(
    ride_id: str, correlation_id: str | None = None, **fields: Any
) -> Iterator[None]:
    """Scope log records to ``ride_id``; the correlation id defaults to it."""
    with log_context(ride_id=ride_id, correlation_id=correlation_id or ride_id, **fields):
        yield
