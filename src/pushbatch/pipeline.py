"""Wiring for the notification pipeline.

PresenceTracker, BatchAccumulator, WindowProcessor and UsageLimiter share one
config, one store connection and one clock. Pipeline builds them together so
the server, the CLI and tests all get the same graph.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from . import db
from .batching import BatchAccumulator
from .config import PushbatchConfig, get_config
from .dispatch import PushDispatcher, get_dispatcher
from .jobs import WindowProcessor
from .presence import PresenceTracker
from .usage import UsageCounter, UsageLimiter


@dataclass
class Pipeline:
    config: PushbatchConfig
    presence: PresenceTracker
    accumulator: BatchAccumulator
    processor: WindowProcessor
    limiter: UsageLimiter

    @classmethod
    def from_config(
        cls,
        config: PushbatchConfig | None = None,
        dispatcher: PushDispatcher | None = None,
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], datetime] = db.utcnow,
    ) -> "Pipeline":
        config = config or get_config()
        dispatcher = dispatcher or get_dispatcher()

        presence = PresenceTracker(
            heartbeat_interval=config.heartbeat_interval_seconds,
            presence_ttl=config.presence_ttl,
            conn=conn,
            clock=clock,
        )
        accumulator = BatchAccumulator(presence, conn=conn, clock=clock)
        processor = WindowProcessor.from_config(config, dispatcher, conn=conn, clock=clock)
        limiter = UsageLimiter(
            UsageCounter(conn=conn),
            limits=config.daily_limits,
            warning_thresholds=config.warning_thresholds,
        )
        return cls(config, presence, accumulator, processor, limiter)

    @property
    def dispatcher(self) -> PushDispatcher:
        return self.processor.dispatcher

    async def close(self) -> None:
        """Stop background heartbeats. The dispatcher is left open."""
        await self.presence.close()
