"""
Retry policy with capped exponential backoff.

Only transient failures are retried. Anything else (auth rejection,
programming errors) propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Optional, TypeVar

from pydantic import BaseModel, Field

from .errors import TransientNetworkError

logger = logging.getLogger("tripsync.retry")

R = TypeVar("R")


class RetryPolicy(BaseModel):
    """Exponential backoff parameters.

    A call is attempted once and retried up to ``max_retries`` times;
    the n-th retry waits ``base_delay * factor ** (n - 1)`` seconds,
    capped at ``max_delay``.
    """

    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, ge=0)
    max_retries: int = Field(default=3, ge=0)

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry, non-decreasing and capped."""
        delay = self.base_delay
        for _ in range(self.max_retries):
            yield min(delay, self.max_delay)
            delay *= self.factor


def call_with_retry(
    func: Callable[[], R],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, float, Exception], None]] = None,
    label: str = "call",
) -> R:
    """Run ``func`` until it succeeds or the retry budget is spent.

    Args:
        func: Zero-argument callable to run.
        policy: Backoff parameters.
        sleep: Sleep function (injectable for tests).
        on_retry: Called as ``(retry_number, delay, error)`` before each wait.
        label: Name used in log lines.

    Returns:
        Whatever ``func`` returns.

    Raises:
        TransientNetworkError: The last transient error, once retries
            are exhausted.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except TransientNetworkError as exc:
            delay = next(delays, None)
            if delay is None:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                raise
            logger.info("%s failed (attempt %d), retrying in %.1fs: %s", label, attempt, delay, exc)
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            sleep(delay)
