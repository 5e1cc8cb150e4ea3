"""Global browser concurrency and per-origin politeness."""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    """Hostname used as the rate-limiting key."""
    return urlparse(url).hostname or url


class OriginGate:
    """One in-flight request per origin, spaced from the previous completion."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.last_completed: float | None = None


class ConcurrencyGovernor:
    """
    Bounds total simultaneous browser sessions and paces requests per origin.

    A caller entering :meth:`slot` first takes the origin's gate, waits out a
    random delay in ``[min_delay, max_delay]`` counted from the end of that
    origin's previous request, then takes one of ``max_concurrent`` global
    slots. Unrelated origins proceed in parallel.
    """

    def __init__(
        self,
        max_concurrent: int,
        min_delay: float,
        max_delay: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_delay < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._clock = clock
        self._slots = asyncio.Semaphore(max_concurrent)
        self._gates: dict[str, OriginGate] = {}

    def _gate(self, origin: str) -> OriginGate:
        gate = self._gates.get(origin)
        if gate is None:
            gate = self._gates[origin] = OriginGate()
        return gate

    def _random_delay(self) -> float:
        return random.uniform(self.min_delay, self.max_delay)

    async def acquire(self, url: str) -> None:
        gate = self._gate(origin_of(url))
        await gate.lock.acquire()
        try:
            if gate.last_completed is not None:
                wait = self._random_delay() - (self._clock() - gate.last_completed)
                if wait > 0:
                    logger.debug("Waiting %.2fs before next request to %s", wait, origin_of(url))
                    await asyncio.sleep(wait)
            await self._slots.acquire()
        except BaseException:
            gate.lock.release()
            raise

    def release(self, url: str) -> None:
        gate = self._gate(origin_of(url))
        self._slots.release()
        gate.last_completed = self._clock()
        gate.lock.release()

    @asynccontextmanager
    async def slot(self, url: str) -> AsyncIterator[None]:
        await self.acquire(url)
        try:
            yield
        finally:
            self.release(url)
