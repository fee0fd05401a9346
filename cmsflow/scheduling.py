"""Timer abstractions used for deferred work.

The engine never sleeps or schedules on its own; everything that happens
later (retry back-off, wait deadlines, asynchronous subprocesses, A/B test
completion) goes through a :class:`Scheduler`.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[Any]]


class Scheduler(Protocol):
    """Clock plus one-shot timer."""

    def now(self) -> datetime:
        """Current time (timezone aware, UTC)."""

    def after(self, delay_seconds: float, callback: Callback) -> None:
        """Run ``callback`` once, ``delay_seconds`` from now."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine for ``seconds``."""


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def after(self, delay_seconds: float, callback: Callback) -> None:
        loop = asyncio.get_running_loop()
        loop.call_later(max(0.0, delay_seconds), self._spawn, callback)

    def _spawn(self, callback: Callback) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Scheduled callback failed: {task.exception()!r}")

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def join(self) -> None:
        """Wait for callbacks that have already fired to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ManualScheduler:
    """Virtual-clock scheduler for deterministic tests.

    Nothing fires until :meth:`advance` is awaited. ``sleep`` moves the clock
    forward without firing callbacks and records the requested delay.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._queue: List[Tuple[datetime, int, Callback]] = []
        self._counter = itertools.count()
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def after(self, delay_seconds: float, callback: Callback) -> None:
        due = self._now + timedelta(seconds=max(0.0, delay_seconds))
        heapq.heappush(self._queue, (due, next(self._counter), callback))

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += timedelta(seconds=max(0.0, seconds))

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def advance(self, seconds: float = 0.0) -> int:
        """Move the clock forward and run every callback that became due.

        Returns the number of callbacks fired.
        """

        target = self._now + timedelta(seconds=seconds)
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            await callback()
            fired += 1
        self._now = max(self._now, target)
        return fired
