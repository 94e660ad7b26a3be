"""Scheduled jobs for pushbatch.

Window Sweep Strategy:
- Run every few seconds (an outside scheduler, the API trigger, or
  `pushbatch jobs watch`)
- Select batches whose newest message is older than the batch window
- Format, send, and delete each batch independently
- Failed batches stay pending and are retried on the next sweep, until they
  are older than the stale age and get evicted

Delivery is at-least-once: two overlapping sweeps can both send the same
batch. There is no claim column; the second delete simply finds nothing.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from . import db
from .config import (
    DEFAULT_BATCH_WINDOW_SECONDS,
    DEFAULT_PREVIEW_LIMIT,
    DEFAULT_STALE_AGE_SECONDS,
    PushbatchConfig,
)
from .dispatch import PushDispatcher
from .formatting import format_notification
from .metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of delivering one batch."""

    batch_id: str
    recipient_id: str
    message_count: int
    success: bool
    evicted: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "recipient_id": self.recipient_id,
            "message_count": self.message_count,
            "success": self.success,
            "evicted": self.evicted,
            "error": self.error,
        }


@dataclass
class SweepReport:
    results: list[ProcessResult] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def evicted_count(self) -> int:
        return sum(1 for r in self.results if r.evicted)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed_count,
            "success": self.success_count,
            "failed": self.failed_count,
            "evicted": self.evicted_count,
            "results": [r.to_dict() for r in self.results],
        }


class WindowProcessor:
    """Delivers batches whose debounce window has elapsed."""

    def __init__(
        self,
        dispatcher: PushDispatcher,
        batch_window: timedelta = timedelta(seconds=DEFAULT_BATCH_WINDOW_SECONDS),
        stale_age: timedelta = timedelta(seconds=DEFAULT_STALE_AGE_SECONDS),
        preview_limit: int = DEFAULT_PREVIEW_LIMIT,
        batch_limit: int = 500,
        max_concurrency: int = 10,
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], datetime] = db.utcnow,
    ) -> None:
        self.dispatcher = dispatcher
        self.batch_window = batch_window
        self.stale_age = stale_age
        self.preview_limit = preview_limit
        self.batch_limit = batch_limit
        self.max_concurrency = max_concurrency
        self._conn = conn
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: PushbatchConfig,
        dispatcher: PushDispatcher,
        **kwargs,
    ) -> "WindowProcessor":
        return cls(
            dispatcher,
            batch_window=config.batch_window,
            stale_age=config.stale_age,
            preview_limit=config.preview_limit,
            batch_limit=config.batch_limit,
            max_concurrency=config.max_concurrency,
            **kwargs,
        )

    async def run_sweep(
        self,
        now: datetime | None = None,
        batch_window: timedelta | None = None,
        stale_age: timedelta | None = None,
    ) -> SweepReport:
        """Send every matured batch once.

        Args:
            now: Sweep time (defaults to the clock)
            batch_window: Override the quiet period a batch must have
            stale_age: Override the age after which failed batches are evicted

        Returns:
            SweepReport with one ProcessResult per matured batch
        """
        now = db.as_utc(now or self._clock())
        window = self.batch_window if batch_window is None else batch_window
        stale = self.stale_age if stale_age is None else stale_age

        try:
            batches = await db.run_sync(
                db.get_matured_batches, now - window, self.batch_limit, self._conn
            )
        except Exception:
            logger.error("Failed to load matured batches", exc_info=True)
            return SweepReport()

        if not batches:
            return SweepReport()

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(batch: dict) -> ProcessResult:
            async with semaphore:
                return await self.process_batch(batch, now, stale)

        results = await asyncio.gather(*(bounded(b) for b in batches))
        report = SweepReport(results=list(results))

        logger.info(
            f"Sweep processed {report.processed_count} batch(es): "
            f"{report.success_count} sent, {report.failed_count} failed, "
            f"{report.evicted_count} evicted"
        )
        return report

    async def process_batch(
        self,
        batch: dict,
        now: datetime,
        stale_age: timedelta,
    ) -> ProcessResult:
        """Format, send and retire one batch. Never raises."""
        result = ProcessResult(
            batch_id=batch["id"],
            recipient_id=batch["recipient_id"],
            message_count=batch["message_count"],
            success=False,
        )

        try:
            notification = format_notification(batch, self.preview_limit)
            sent = await self.dispatcher.send(
                batch["recipient_id"],
                notification.title,
                notification.body,
                notification.payload,
            )
            if not sent:
                result.error = "dispatcher rejected notification"
        except Exception as e:
            logger.warning(f"Push for batch {batch['id']} raised", exc_info=True)
            sent = False
            result.error = str(e) or type(e).__name__

        if sent:
            result.success = True
            metrics.increment("sweep.sent")
            await self._delete(batch["id"])
            return result

        metrics.increment("sweep.failed")
        try:
            stale = db.as_utc(now) - db.from_db_time(batch["first_message_at"]) > stale_age
        except Exception:
            logger.error(f"Cannot determine age of batch {batch['id']}", exc_info=True)
            return result

        if stale:
            logger.warning(
                f"Evicting stale batch {batch['id']} for {batch['recipient_id']} "
                f"({batch['message_count']} message(s), first at {batch['first_message_at']})"
            )
            if await self._delete(batch["id"]):
                result.evicted = True
                metrics.increment("sweep.evicted")
        return result

    async def _delete(self, batch_id: str) -> bool:
        try:
            await db.run_sync(db.delete_pending_batch, batch_id, self._conn)
        except Exception:
            logger.error(f"Failed to delete batch {batch_id}", exc_info=True)
            return False
        return True


async def run_periodically(
    processor: WindowProcessor,
    interval: float,
    stop_event: asyncio.Event,
) -> int:
    """Sweep every `interval` seconds until stop_event is set.

    Returns the number of sweeps run.
    """
    sweeps = 0
    while not stop_event.is_set():
        await processor.run_sweep()
        sweeps += 1
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    return sweeps
