"""Pytest fixtures for testing with pushbatch.

Usage in conftest.py:
    pytest_plugins = ["pushbatch.testing"]

Or import specific fixtures:
    from pushbatch.testing import pipeline, recording_dispatcher

The fixtures use the global store (PUSHBATCH_DB). Point it at ":memory:"
before importing pushbatch; pushbatch_store wipes every table.

Available fixtures:
    - pushbatch_store: Freshly reset schema
    - clock: Controllable FakeClock shared by all components
    - recording_dispatcher: In-memory PushDispatcher
    - pipeline: Presence, accumulator, processor and limiter wired together
    - presence_tracker, accumulator, processor, usage_counter: its parts
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio

from . import db
from .batching import AccumulateOutcome, BatchAccumulator
from .config import PushbatchConfig
from .dispatch import RecordingPushDispatcher
from .jobs import WindowProcessor
from .pipeline import Pipeline
from .presence import PresenceTracker
from .usage import UsageCounter

DEFAULT_START = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """A clock that only moves when told to.

    Example:
        clock = FakeClock()
        await accumulator.on_message(...)
        clock.advance(6)
        report = await processor.run_sweep()
    """

    def __init__(self, start: datetime = DEFAULT_START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def pushbatch_store() -> Generator[None, None, None]:
    """Reset every pushbatch table on the global connection."""
    db.reset_db()
    yield
    db.close_db()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_dispatcher() -> RecordingPushDispatcher:
    """Dispatcher that records sends. Script failures with fail_recipients."""
    return RecordingPushDispatcher()


@pytest_asyncio.fixture
async def pipeline(
    pushbatch_store: None,
    clock: FakeClock,
    recording_dispatcher: RecordingPushDispatcher,
) -> AsyncGenerator[Pipeline, None]:
    """Fully wired pipeline on default settings and the fake clock.

    Heartbeat sessions are stopped on teardown.

    Example:
        @pytest.mark.asyncio
        async def test_debounce(pipeline, clock, recording_dispatcher):
            await pipeline.accumulator.on_message("bob", "alice", "Alice", "c1", None, "hi")
            clock.advance(6)
            await pipeline.processor.run_sweep()
            assert len(recording_dispatcher.sent) == 1
    """
    built = Pipeline.from_config(
        PushbatchConfig(), dispatcher=recording_dispatcher, clock=clock
    )
    yield built
    await built.close()


@pytest.fixture
def presence_tracker(pipeline: Pipeline) -> PresenceTracker:
    return pipeline.presence


@pytest.fixture
def accumulator(pipeline: Pipeline) -> BatchAccumulator:
    return pipeline.accumulator


@pytest.fixture
def processor(pipeline: Pipeline) -> WindowProcessor:
    return pipeline.processor


@pytest.fixture
def usage_counter(pushbatch_store: None) -> UsageCounter:
    return UsageCounter()


# --- Utility Functions ---


async def send_test_messages(
    accumulator: BatchAccumulator,
    recipient_id: str,
    sender_id: str,
    conversation_id: str,
    count: int = 3,
    sender_name: str | None = "Alice",
    subject_label: str | None = "Blue Bike",
    body_prefix: str = "Message",
) -> list[AccumulateOutcome]:
    """Feed several messages through the accumulator.

    Returns:
        One AccumulateOutcome per message, in order
    """
    outcomes = []
    for i in range(count):
        outcome = await accumulator.on_message(
            recipient_id,
            sender_id,
            sender_name,
            conversation_id,
            subject_label,
            f"{body_prefix} {i + 1}",
        )
        outcomes.append(outcome)
    return outcomes
