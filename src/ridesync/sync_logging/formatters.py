"""Log formatters: JSON lines for collection, compact text for development."""

import json
import logging
from datetime import UTC, datetime

from ridesync import __version__

# Ride-scoped attributes set by log_ride_context, in display order.
CONTEXT_FIELDS = ("ride_id", "driver_id", "passenger_id", "correlation_id")
_SHORT_NAMES = {"ride_id": "ride", "driver_id": "driver", "passenger_id": "passenger"}


def record_context(record: logging.LogRecord) -> dict[str, str]:
    """Context fields carried by ``record``, skipping the '-' placeholder."""
    context = {}
    for field in CONTEXT_FIELDS:
        value = getattr(record, field, None)
        if value is not None and value != "-":
            context[field] = str(value)
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's creation time."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": self.environment,
            "service": "ridesync",
            "version": __version__,
            **record_context(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class DevFormatter(logging.Formatter):
    """Human-readable lines; ride context is appended when a record has one."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        # The correlation id defaults to the ride id; only show it when it differs.
        if context.get("correlation_id") == context.get("ride_id"):
            context.pop("correlation_id", None)
        if not context:
            return line
        tags = " ".join(f"{_SHORT_NAMES.get(k, k)}={v}" for k, v in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{tags}]{sep}{tail}"
