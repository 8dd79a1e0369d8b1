"""
Sage - ConcurrencyGate
=======================
Bounded-parallelism gate for generation calls with strict FIFO waiters.

Algorithm
---------
``acquire``
    If ``running < max_concurrent`` increment and return immediately.
    Otherwise append a future to the wait queue and suspend on it.
``release``
    If a waiter is queued, hand the slot *directly* to the head of the
    queue (``running`` unchanged).  Otherwise decrement ``running``.

Because slots are handed over rather than returned to a pool, a newly
arriving caller can never overtake a queued one: release order exactly
matches acquire order.

No timeout is applied to waiters.  A caller that needs a deadline wraps
``acquire`` in ``asyncio.wait_for``; a waiter cancelled while queued is
removed, and one cancelled just after being handed a slot passes that
slot on, so cancellation never leaks capacity.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sage.config.settings import settings
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)


class ConcurrencyGate:
    """
    FIFO semaphore bounding in-flight generation calls.

    Must be used from a single event loop.

    Parameters
    ----------
    max_concurrent
        Slot count.  Defaults to ``settings.MAX_CONCURRENT_GENERATIONS`` (2).
    """

    __slots__ = ("_max", "_running", "_waiters")

    def __init__(self, max_concurrent: int | None = None) -> None:
        self._max = max_concurrent or settings.MAX_CONCURRENT_GENERATIONS
        self._running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        logger.info("[GATE] Concurrency gate initialised (max_concurrent=%d).", self._max)


    async def acquire(self) -> None:
        """Wait for a slot.  Returns once the caller holds one."""
        if self._running < self._max:
            self._running += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("[GATE] Slot busy — queued (position=%d, running=%d).", len(self._waiters), self._running)

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed
                self.release()
            else:
                self._remove_waiter(waiter)
            raise


    def release(self) -> None:
        """Give the slot to the oldest waiter, or back to the pool."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._running == 0:
            raise RuntimeError("ConcurrencyGate.release() called without a matching acquire()")
        self._running -= 1


    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """``async with gate.slot():`` — acquire, then always release."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()


    def _remove_waiter(self, waiter: asyncio.Future[None]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass


    @property
    def running(self) -> int:
        return self._running


    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())


    @property
    def max_concurrent(self) -> int:
        return self._max


    @property
    def stats(self) -> dict[str, int]:
        """Current gate statistics for health monitoring."""
        return {"running": self._running, "queued": self.queued, "max": self._max}
