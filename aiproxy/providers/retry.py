"""Backoff for the usage report fetch.

Model calls are never retried in place: the dispatcher moves on to the
next candidate instead. The reconciliation path fetches the report after
every stream, so transport failures there are retried with exponential
backoff plus up to 10% jitter.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from aiproxy.providers.errors import RateLimitError, TransientError

__all__ = ["RetryPolicy", "with_retries"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Cap on any single delay.
    """

    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 10000

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, error: Exception) -> float:
        """Seconds to wait after the given zero-based failed attempt.

        A rate limit answer that names its own wait wins over backoff.
        """
        if isinstance(error, RateLimitError) and error.retry_after_seconds:
            return error.retry_after_seconds
        backoff = self.base_delay_ms * (2**attempt)
        backoff += random.uniform(0, backoff * 0.1)  # nosec B311
        return min(backoff, self.max_delay_ms) / 1000


async def with_retries(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retryable_errors: tuple[type[Exception], ...] = (TransientError, RateLimitError),
) -> T:
    """Await ``func`` until it succeeds or the policy runs out.

    Errors outside ``retryable_errors`` propagate on the first attempt. When
    every attempt fails, the last error is re-raised unchanged.
    """
    for attempt in range(policy.attempts):
        try:
            return await func()
        except retryable_errors as e:
            if attempt == policy.max_retries:
                raise
            delay = policy.delay_for(attempt, e)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.2fs",
                attempt + 1,
                policy.attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry loop exited without error or result")
