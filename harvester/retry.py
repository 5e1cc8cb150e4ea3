"""Bounded exponential backoff for fallible async operations."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from harvester.config import settings
from harvester.errors import NetworkFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    factor: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (NetworkFailure, asyncio.TimeoutError)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(max_retries=settings.max_retries, initial_delay=settings.initial_retry_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run *operation*, retrying on ``policy.retry_on`` up to ``policy.max_retries`` times.

    The delay before retry *n* is ``initial_delay * factor ** (n - 1)``. The last
    error is re-raised once retries are exhausted; errors outside
    ``retry_on`` propagate immediately.
    """
    delay = policy.initial_delay
    attempts = policy.max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except policy.retry_on as e:
            left = attempts - attempt
            logger.warning(
                "[retry] %s: attempt %d failed (%d left): %s", label, attempt, left, e
            )
            if left == 0:
                raise
            await sleep(delay)
            delay *= policy.factor
    raise AssertionError("unreachable")
