"""Exponential backoff shared by snapshot fetches and channel reconnects."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import TransientError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientError,)
    )


def compute_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt`` (zero-based), capped at max_delay."""
    return min(config.base_delay * (config.multiplier**attempt), config.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    on_retry: Callable[[Exception, int], None] | None = None,
) -> T:
    """Await ``operation`` until it succeeds or the attempts run out.

    Only ``config.retryable_exceptions`` are retried. Any other error,
    and the last retryable one, propagates unchanged.
    """
    config = config or RetryConfig()
    failures = 0

    while True:
        try:
            return await operation()
        except config.retryable_exceptions as e:
            failures += 1
            if failures >= config.max_attempts:
                logger.error(f"{operation_name} gave up after {failures} attempt(s): {e}")
                raise

            delay = compute_delay(config, failures - 1)
            logger.warning(
                f"{operation_name} failed (attempt {failures}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            if on_retry is not None:
                on_retry(e, failures - 1)
            await asyncio.sleep(delay)
