"""Bounded-concurrency dispatcher for cooperative (asyncio) work units.

All state lives on the event loop thread, so counter updates and queue
operations are atomic with respect to the tasks they schedule.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("migration.dispatcher")

Job = Callable[[], Awaitable[None]]


class Dispatcher:
    """Runs at most ``capacity`` jobs at once.

    Jobs are started in submission order. ``pause()`` stops new jobs from
    starting without touching jobs that are already running. Any exception
    escaping a job is fatal: the queue is discarded, nothing new starts, and
    the exception is re-raised from ``drain_to_idle()`` and ``submit()``.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.active_count = 0
        self.peak_active = 0
        self.paused = False
        self._pending: deque[Job] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._changed = asyncio.Condition()
        self._failure: Optional[BaseException] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def outstanding(self) -> int:
        return self.active_count + len(self._pending)

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    def submit(self, job: Job, *, front: bool = False) -> None:
        """Queue ``job``; it starts as soon as a slot is free and dispatch is not paused."""
        if self._failure is not None:
            raise self._failure
        if front:
            self._pending.appendleft(job)
        else:
            self._pending.append(job)
        self._pump()

    def pause(self) -> None:
        if not self.paused:
            logger.info("Dispatch paused (%d running, %d queued)", self.active_count, len(self._pending))
        self.paused = True

    def resume(self) -> None:
        if self.paused:
            logger.info("Dispatch resumed (%d queued)", len(self._pending))
        self.paused = False
        self._pump()

    async def wait_until_below(self, limit: int) -> None:
        """Suspend until fewer than ``limit`` jobs are running or queued.

        Also returns once the dispatcher has aborted; check ``failure``.
        """
        async with self._changed:
            await self._changed.wait_for(
                lambda: self._failure is not None or self.outstanding < limit
            )

    async def drain_to_idle(self) -> None:
        """Suspend until nothing is running or queued, then surface any fatal failure."""
        async with self._changed:
            await self._changed.wait_for(
                lambda: self.active_count == 0
                and (self._failure is not None or not self._pending)
            )
        if self._failure is not None:
            raise self._failure

    def _pump(self) -> None:
        while (
            not self.paused
            and self._failure is None
            and self._pending
            and self.active_count < self.capacity
        ):
            job = self._pending.popleft()
            self.active_count += 1
            self.peak_active = max(self.peak_active, self.active_count)
            task = asyncio.get_running_loop().create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job) -> None:
        try:
            await job()
        except Exception as exc:
            if self._failure is None:
                logger.error("Aborting dispatch after fatal error: %s", exc)
                self._failure = exc
                self._pending.clear()
        finally:
            self.active_count -= 1
            self._pump()
            async with self._changed:
                self._changed.notify_all()
