"""pushbatch - Presence-aware push notification batching.

Usage:
    from pushbatch import Pipeline, RecordingPushDispatcher

    pipeline = Pipeline.from_config(dispatcher=RecordingPushDispatcher())

    # Recipient opens the conversation: no pushes while they are there
    await pipeline.presence.set_active("bob", "conv-1")

    # Messages arriving while away are folded into one pending batch
    await pipeline.presence.clear_active("bob")
    await pipeline.accumulator.on_message("bob", "alice", "Alice", "conv-1", "Blue Bike", "hi")

    # A scheduler sweeps matured batches every few seconds
    report = await pipeline.processor.run_sweep()
"""

from pushbatch._version import __version__
from pushbatch.batching import AccumulateOutcome, BatchAccumulator
from pushbatch.dispatch import (
    HttpPushDispatcher,
    LogPushDispatcher,
    PushDispatcher,
    RecordingPushDispatcher,
)
from pushbatch.errors import PushbatchConfigError, PushbatchError, UsageLimitExceeded
from pushbatch.jobs import ProcessResult, SweepReport, WindowProcessor
from pushbatch.pipeline import Pipeline
from pushbatch.presence import HeartbeatSession, PresenceTracker
from pushbatch.usage import UsageCounter, UsageLimiter, UsageStatus

__all__ = [
    "__version__",
    "AccumulateOutcome",
    "BatchAccumulator",
    "HeartbeatSession",
    "HttpPushDispatcher",
    "LogPushDispatcher",
    "Pipeline",
    "PresenceTracker",
    "ProcessResult",
    "PushDispatcher",
    "PushbatchConfigError",
    "PushbatchError",
    "RecordingPushDispatcher",
    "SweepReport",
    "UsageCounter",
    "UsageLimitExceeded",
    "UsageLimiter",
    "UsageStatus",
    "WindowProcessor",
]
