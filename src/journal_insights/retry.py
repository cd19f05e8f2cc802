"""Exponential backoff for provider calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import CancellationError, RateLimitedError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry transient provider failures up to max_attempts calls in total."""
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    @classmethod
    def from_config(cls, section) -> "RetryPolicy":
        return cls(section.max_attempts, section.backoff_base, section.backoff_max)

    def delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Seconds to wait after the given (0-based) failed attempt."""
        delay = self.backoff_base * (2 ** attempt)
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return min(delay, self.backoff_max)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Optional[Callable[[], bool]] = None,
) -> T:
    """Call fn, retrying TransientProviderError (and RateLimitedError).

    Other errors propagate immediately. When retries are exhausted the last
    transient error is raised.

    Raises:
        CancellationError: should_stop became true while backing off
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientProviderError as e:
            if attempt + 1 >= policy.max_attempts:
                raise
            delay = policy.delay(attempt, e)
            logger.info(
                "Transient provider error (attempt %d/%d), retrying in %.1fs: %s",
                attempt + 1, policy.max_attempts, delay, e,
            )
            sleep(delay)
            if should_stop is not None and should_stop():
                raise CancellationError("Cancelled while backing off") from e
            attempt += 1
