"""
Bounded retry policy expressed as data, with an async wrapper.

Shared by the outbound gateway client (inline retries) and the queue
worker (delay before requeueing a failed envelope).
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Args:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Cap on any single delay
        jitter: Fraction of the delay added or removed at random (0.0-1.0)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Callable[[BaseException], bool],
    label: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds, the policy is exhausted or the error is permanent.

    The last exception is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            if attempt >= policy.max_attempts or not retry_on(e):
                raise
            delay = policy.delay_for(attempt - 1)
            logger.warning(
                f"Retry {attempt}/{policy.max_attempts - 1} for {label} "
                f"({type(e).__name__}), waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)
