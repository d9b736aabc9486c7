"""
Bounded concurrency for cooperative async tasks.

ConcurrencyLimiter caps how many record tasks are in flight at once. It gives
I/O concurrency on a single event loop, not CPU parallelism. Waiters are
admitted in submission order; the slot is released on every exit path.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CONCURRENCY = 10


class ConcurrencyLimiter:
    """Semaphore-gated task admission with in-flight tracking."""

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    def _get_semaphore(self) -> asyncio.Semaphore:
        # One semaphore per event loop; a semaphore that has queued waiters is
        # bound to the loop it first ran on
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._loop = loop
        return self._semaphore

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run task once a slot is free and return its result."""
        async with self._get_semaphore():
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            try:
                return await task()
            finally:
                self._in_flight -= 1

    async def map(self, task_factory: Callable[[T], Awaitable], items: list) -> list:
        """
        Submit one task per item and gather results in input order.

        Exceptions escaping a task are returned in its slot rather than raised.
        """
        tasks = [self.submit(lambda item=item: task_factory(item)) for item in items]
        return await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "DEFAULT_MAX_CONCURRENCY",
    "ConcurrencyLimiter",
]
