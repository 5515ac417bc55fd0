"""Rate-limit backoff: turns a throttled unit of work into a pause/resume cycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from scripts.migration.dispatcher import Dispatcher
from scripts.migration.errors import RateLimitError

logger = logging.getLogger("migration.backoff")

PayloadT = TypeVar("PayloadT")

GRACE_SECONDS = 1.0


@dataclass(eq=False)
class WorkUnit(Generic[PayloadT]):
    ordinal: int
    payload: PayloadT
    attempts: int = 0
    awaiting_retry: bool = False


class RetriesExhausted(Exception):
    """A unit was throttled more often than the configured retry bound."""

    def __init__(self, unit: WorkUnit, last_error: RateLimitError) -> None:
        super().__init__(f"record {unit.ordinal} still rate limited after {unit.attempts} attempts")
        self.unit = unit
        self.last_error = last_error


class BackoffController(Generic[PayloadT]):
    """Owns the retry path for units that fail with RateLimitError.

    For each throttled attempt the controller pauses the dispatcher, puts
    the same unit back at the front of the dispatcher queue, and lets a
    single cool-down task sleep ``retry_after + 1`` seconds before resuming
    dispatch. Throttles that arrive during a cool-down extend it instead
    of starting a second one.

    Other exceptions from ``handler`` propagate to the dispatcher untouched.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        handler: Callable[[WorkUnit[PayloadT]], Awaitable[Any]],
        default_retry_after: float = 60.0,
        max_retries: Optional[int] = None,
        on_exhausted: Optional[Callable[[RetriesExhausted], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.handler = handler
        self.default_retry_after = default_retry_after
        self.max_retries = max_retries
        self.on_exhausted = on_exhausted
        self.throttle_count = 0
        self.delays: list[float] = []
        self._sleep = sleep
        self._extra_delay = 0.0
        self._cooldown: Optional[asyncio.Task] = None

    def submit(self, unit: WorkUnit[PayloadT]) -> None:
        self.dispatcher.submit(lambda: self._attempt(unit))

    @property
    def cooling_down(self) -> bool:
        return self._cooldown is not None and not self._cooldown.done()

    async def _attempt(self, unit: WorkUnit[PayloadT]) -> None:
        unit.awaiting_retry = False
        unit.attempts += 1
        try:
            await self.handler(unit)
        except RateLimitError as exc:
            self._reschedule(unit, exc)

    def _reschedule(self, unit: WorkUnit[PayloadT], exc: RateLimitError) -> None:
        if unit.awaiting_retry:
            return
        self.throttle_count += 1

        if self.max_retries is not None and unit.attempts > self.max_retries:
            exhausted = RetriesExhausted(unit, exc)
            if self.on_exhausted is None:
                raise exhausted
            self.on_exhausted(exhausted)
            return

        retry_after = exc.retry_after if exc.retry_after is not None else self.default_retry_after
        delay = max(retry_after, 0.0) + GRACE_SECONDS
        logger.warning(
            "(%d) Rate limit exceeded. Pausing queue for %g seconds.", unit.ordinal, delay,
            extra={"ordinal": unit.ordinal, "retry_after": delay},
        )

        self.dispatcher.pause()
        unit.awaiting_retry = True
        self.dispatcher.submit(lambda: self._attempt(unit), front=True)

        if self.cooling_down:
            self._extra_delay = max(self._extra_delay, delay)
        else:
            self._cooldown = asyncio.get_running_loop().create_task(self._cool_down(delay))

    async def _cool_down(self, delay: float) -> None:
        while delay > 0:
            self.delays.append(delay)
            await self._sleep(delay)
            delay, self._extra_delay = self._extra_delay, 0.0
        self.dispatcher.resume()

    async def aclose(self) -> None:
        """Cancel a pending cool-down, e.g. after the dispatcher aborted."""
        if self._cooldown is not None and not self._cooldown.done():
            self._cooldown.cancel()
            try:
                await self._cooldown
            except asyncio.CancelledError:
                pass
        self._cooldown = None
