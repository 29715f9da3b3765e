"""Retry utilities for upstream API calls."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from deenhub.core.exceptions import UpstreamError, UpstreamRateLimited

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Programming errors never get retried
NON_RETRYABLE_EXCEPTIONS = (
    ValueError,
    TypeError,
    KeyError,
)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior.

    The wait before retry ``n`` (1-based) is ``backoff_factor * 2**n``
    seconds, capped at ``max_wait``. A 429 waits the minimum backoff, or
    the upstream's Retry-After when that is longer. Each backoff also
    gets up to ``jitter`` random seconds added.
    """

    max_retries: int = 3
    backoff_factor: float = 1.0
    max_wait: float = 30.0
    jitter: float = 0.0

    def backoff(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        wait = self.backoff_factor * (2 ** attempt)
        if self.jitter:
            wait += random.uniform(0, self.jitter)
        return min(wait, self.max_wait)

    def wait_for(self, error: Exception, attempt: int) -> float:
        if isinstance(error, UpstreamRateLimited):
            wait = self.backoff(1)
            if error.retry_after and error.retry_after > wait:
                wait = min(error.retry_after, self.max_wait)
            return wait
        return self.backoff(attempt)


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is retryable."""
    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return False

    if isinstance(error, UpstreamError):
        return error.retryable

    # Connection and timeout errors are retryable
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
) -> T:
    """Run ``func`` until it succeeds, fails fatally, or retries run out."""
    attempts = policy.max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.warning(f"Non-retryable error in {description}: {e}")
                raise

            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise

            wait_time = policy.wait_for(e, attempt)
            logger.warning(
                f"{description} attempt {attempt}/{attempts} "
                f"failed: {e}. Retrying in {wait_time:.1f}s..."
            )
            await asyncio.sleep(wait_time)

    raise RuntimeError("Unexpected retry failure")


# Predefined policies
TRANSLATION_API_POLICY = RetryPolicy(max_retries=2, backoff_factor=1.0, max_wait=10.0)
