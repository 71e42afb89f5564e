"""Handler filters that scrub credentials and personal data from log lines."""

import logging
import re

_REDACTIONS = (
    # Bearer tokens, including the "bearer.<token>" websocket subprotocol form
    (re.compile(r"(?i)\bbearer[\s.]+[A-Za-z0-9._~+/=-]+"), "Bearer [TOKEN]"),
    (re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+"), "[EMAIL]"),
    # Exactly ten digits; longer runs are ids or epoch timestamps
    (re.compile(r"(?<!\d)\d{3}[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"), "[PHONE]"),
)


def redact(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class PIIFilter(logging.Filter):
    """Rewrites the record message and string args with sensitive values masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        return True


class DefaultCorrelationFilter(logging.Filter):
    """Guarantees every record has a correlation_id so formatters can rely on it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = "-"
        return True
