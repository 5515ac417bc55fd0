"""Batch runner: stream -> dispatcher + backoff -> per-record handler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from scripts.migration.backoff import BackoffController, RetriesExhausted, WorkUnit
from scripts.migration.config import RunnerConfig
from scripts.migration.dispatcher import Dispatcher
from scripts.migration.errors import IdentityServiceError
from scripts.migration.reader import StreamItem

logger = logging.getLogger("migration.runner")

RecordT = TypeVar("RecordT")

Handler = Callable[[int, RecordT], Awaitable[bool]]


@dataclass
class RunReport:
    read: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    parse_errors: int = 0
    skipped: int = 0
    rate_limited: int = 0
    peak_concurrency: int = 0
    failed_ordinals: list[int] = field(default_factory=list)

    def summary(self) -> str:
        return f"Done. {self.completed} of {self.read} records processed."

    def as_dict(self) -> dict[str, int]:
        return {
            "read": self.read,
            "dispatched": self.dispatched,
            "completed": self.completed,
            "failed": self.failed,
            "parse_errors": self.parse_errors,
            "skipped": self.skipped,
            "rate_limited": self.rate_limited,
        }


class BatchRunner(Generic[RecordT]):
    """Feeds items to ``handler`` under a concurrency cap with rate-limit backoff.

    ``handler(ordinal, record)`` returns True on success and False on a soft
    failure. IdentityServiceError escaping it is a permanent failure for that
    record only; any other exception aborts the run once running tasks finish.
    """

    def __init__(
        self,
        handler: Handler,
        config: RunnerConfig,
        pace_every: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.handler = handler
        self.config = config
        self.pace_every = pace_every
        self._sleep = sleep
        self.report = RunReport()
        self.dispatcher: Optional[Dispatcher] = None

    async def _handle(self, unit: WorkUnit[RecordT]) -> None:
        try:
            ok = await self.handler(unit.ordinal, unit.payload)
        except IdentityServiceError as exc:
            logger.error(
                "(%d) Record failed permanently: %s", unit.ordinal, exc,
                extra={"ordinal": unit.ordinal},
            )
            ok = False
        if ok:
            self.report.completed += 1
        else:
            self._fail(unit.ordinal)

    def _fail(self, ordinal: int) -> None:
        self.report.failed += 1
        self.report.failed_ordinals.append(ordinal)

    def _on_exhausted(self, exc: RetriesExhausted) -> None:
        logger.error("(%d) %s", exc.unit.ordinal, exc, extra={"ordinal": exc.unit.ordinal})
        self._fail(exc.unit.ordinal)

    async def run(self, items: Iterable[StreamItem[RecordT]]) -> RunReport:
        dispatcher = Dispatcher(self.config.concurrency)
        self.dispatcher = dispatcher
        controller: BackoffController[RecordT] = BackoffController(
            dispatcher,
            self._handle,
            default_retry_after=self.config.default_retry_after,
            max_retries=self.config.max_rate_limit_retries,
            on_exhausted=self._on_exhausted,
            sleep=self._sleep,
        )
        try:
            for item in items:
                await dispatcher.wait_until_below(self.config.concurrency)
                if dispatcher.failure is not None:
                    break
                controller.submit(WorkUnit(item.ordinal, item.record))
                self.report.dispatched += 1
                if self.pace_every and self.report.dispatched % self.pace_every == 0:
                    await self._sleep(1.0)
            await dispatcher.drain_to_idle()
        finally:
            await controller.aclose()
            self.report.rate_limited = controller.throttle_count
            self.report.peak_concurrency = dispatcher.peak_active
            self._collect_stream_counts(items)

        logger.info(self.report.summary())
        return self.report

    def _collect_stream_counts(self, items: Iterable[StreamItem[RecordT]]) -> None:
        read_count = getattr(items, "read_count", None)
        if read_count is None:
            self.report.read = self.report.dispatched
            return
        self.report.read = read_count
        self.report.skipped = getattr(items, "skipped_count", 0)
        self.report.parse_errors = len(getattr(items, "parse_errors", ()))
