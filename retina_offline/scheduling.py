"""Delayed-task scheduling for debounce windows and retry backoff.

``LoopScheduler`` runs on the asyncio event loop clock. ``ManualScheduler``
keeps a virtual clock that only moves when ``advance()`` is awaited, which
makes debounce and backoff timing deterministic in tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a callback scheduled to run later."""

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self._handle: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        """Cancel the callback. Cancelling twice, or after it ran, is a no-op."""
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def _run(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}", exc_info=True)


class Scheduler(ABC):
    """Clock plus delayed callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds on this scheduler's clock."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        """Run ``callback`` after ``delay`` seconds."""

    def utcnow(self) -> datetime:
        """Wall-clock time used for persisted timestamps such as retry deadlines."""
        return datetime.now(UTC)

    async def sleep(self, delay: float) -> None:
        """Suspend the current task for ``delay`` seconds of scheduler time."""
        if delay <= 0:
            await asyncio.sleep(0)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        task = self.call_later(delay, wake)
        try:
            await future
        finally:
            task.cancel()


class LoopScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        loop = asyncio.get_running_loop()
        task = ScheduledTask(loop.time() + max(delay, 0.0), callback)
        task._handle = loop.call_later(max(delay, 0.0), task._run)
        return task


class ManualScheduler(Scheduler):
    """Virtual-clock scheduler for deterministic fast-forwarding.

    Examples:
        >>> scheduler = ManualScheduler()
        >>> fired = []
        >>> _ = scheduler.call_later(5.0, lambda: fired.append(scheduler.now()))
        >>> asyncio.run(scheduler.advance(5.0))
        >>> fired
        [5.0]
    """

    def __init__(self, start: float = 0.0, settle_iterations: int = 20) -> None:
        """Initialize manual scheduler.

        Args:
            start: Initial virtual time
            settle_iterations: Loop iterations yielded after each fired callback
                so woken coroutines can run to their next suspension point
        """
        self._now = start
        self._start = start
        self._wall_start = datetime.now(UTC)
        self._queue: list[tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()
        self.settle_iterations = settle_iterations

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        """Wall-clock time at creation, moved forward with the virtual clock."""
        return self._wall_start + timedelta(seconds=self._now - self._start)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (task.when, next(self._counter), task))
        return task

    @property
    def pending(self) -> int:
        """Number of scheduled callbacks that have neither run nor been cancelled."""
        return sum(1 for _, _, task in self._queue if not task.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due callbacks in deadline order."""
        target = self._now + seconds
        await self._settle()
        while self._queue and self._queue[0][0] <= target:
            when, _, task = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            task._run()
            await self._settle()
        self._now = target
        await self._settle()

    async def _settle(self) -> None:
        for _ in range(self.settle_iterations):
            await asyncio.sleep(0)
