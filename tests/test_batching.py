"""Tests for message batching."""

import asyncio
from datetime import timedelta

import pytest

from pushbatch import db
from pushbatch.batching import AccumulateOutcome, BatchAccumulator, clear_pending_batches
from pushbatch.metrics import metrics
from pushbatch.presence import PresenceTracker
from pushbatch.testing import FakeClock, send_test_messages


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def presence(clock):
    return PresenceTracker(clock=clock)


@pytest.fixture
def accumulator(presence, clock):
    return BatchAccumulator(presence, clock=clock)


def only_batch(recipient="bob"):
    [batch] = db.list_pending_batches(recipient)
    return batch


async def message(accumulator, content="hello", recipient="bob", sender="alice", conversation="conv-1"):
    return await accumulator.on_message(
        recipient, sender, "Alice", conversation, "Blue Bike", content
    )


class TestOnMessage:
    @pytest.mark.asyncio
    async def test_first_message_creates_batch(self, accumulator, clock):
        outcome = await message(accumulator, "Is it still available?")

        assert outcome is AccumulateOutcome.CREATED
        batch = only_batch()
        assert batch["message_count"] == 1
        assert batch["first_message_preview"] == "Is it still available?"
        assert batch["sender_display_name"] == "Alice"
        assert batch["subject_label"] == "Blue Bike"
        assert batch["first_message_at"] == batch["last_message_at"] == db.to_db_time(clock())

    @pytest.mark.asyncio
    async def test_second_message_accumulates(self, accumulator, clock):
        await message(accumulator, "first")
        clock.advance(2)
        outcome = await message(accumulator, "second")

        assert outcome is AccumulateOutcome.ACCUMULATED
        batches = db.list_pending_batches("bob")
        assert len(batches) == 1
        batch = batches[0]
        assert batch["message_count"] == 2
        assert batch["last_message_at"] == db.to_db_time(clock())

    @pytest.mark.asyncio
    async def test_first_message_fields_are_write_once(self, accumulator, clock):
        first_at = db.to_db_time(clock())
        await message(accumulator, "first")
        clock.advance(1)
        await accumulator.on_message("bob", "alice", "Alice Renamed", "conv-1", "Red Bike", "second")

        batch = only_batch()
        assert batch["first_message_preview"] == "first"
        assert batch["first_message_at"] == first_at
        assert batch["sender_display_name"] == "Alice"
        assert batch["subject_label"] == "Blue Bike"

    @pytest.mark.asyncio
    async def test_batches_are_per_sender_and_conversation(self, accumulator):
        await message(accumulator, sender="alice", conversation="conv-1")
        await message(accumulator, sender="carol", conversation="conv-1")
        await message(accumulator, sender="alice", conversation="conv-2")
        await message(accumulator, recipient="dave", sender="alice", conversation="conv-1")

        assert len(db.list_pending_batches("bob")) == 3
        assert len(db.list_pending_batches("dave")) == 1

    @pytest.mark.asyncio
    async def test_message_count_matches_messages_sent(self, accumulator, clock):
        outcomes = await send_test_messages(accumulator, "bob", "alice", "conv-1", count=5)

        assert outcomes[0] is AccumulateOutcome.CREATED
        assert all(o is AccumulateOutcome.ACCUMULATED for o in outcomes[1:])
        assert only_batch()["message_count"] == 5

    @pytest.mark.asyncio
    async def test_concurrent_messages_lose_no_increments(self, accumulator):
        outcomes = await asyncio.gather(
            *(message(accumulator, f"m{i}") for i in range(20))
        )

        assert outcomes.count(AccumulateOutcome.CREATED) == 1
        assert outcomes.count(AccumulateOutcome.ACCUMULATED) == 19
        assert only_batch()["message_count"] == 20

    @pytest.mark.asyncio
    async def test_out_of_order_timestamp_keeps_latest(self, accumulator, clock):
        start = clock()
        await message(accumulator, "first")
        clock.advance(10)
        await message(accumulator, "second")
        await accumulator.on_message(
            "bob", "alice", "Alice", "conv-1", None, "late", now=start
        )

        batch = only_batch()
        assert batch["message_count"] == 3
        assert batch["last_message_at"] == db.to_db_time(clock())

    @pytest.mark.asyncio
    async def test_missing_optional_fields(self, accumulator):
        outcome = await accumulator.on_message("bob", "alice", None, "conv-1", None, None)

        assert outcome is AccumulateOutcome.CREATED
        batch = only_batch()
        assert batch["sender_display_name"] is None
        assert batch["subject_label"] is None
        assert batch["first_message_preview"] is None


class TestSuppression:
    @pytest.mark.asyncio
    async def test_present_recipient_is_suppressed(self, accumulator, presence):
        await presence.set_active("bob", "conv-1", heartbeat=False)

        outcome = await message(accumulator)

        assert outcome is AccumulateOutcome.SUPPRESSED
        assert db.list_pending_batches("bob") == []

    @pytest.mark.asyncio
    async def test_presence_on_other_conversation_does_not_suppress(self, accumulator, presence):
        await presence.set_active("bob", "conv-2", heartbeat=False)

        outcome = await message(accumulator, conversation="conv-1")

        assert outcome is AccumulateOutcome.CREATED

    @pytest.mark.asyncio
    async def test_after_clear_messages_batch_again(self, accumulator, presence):
        await presence.set_active("bob", "conv-1", heartbeat=False)
        assert await message(accumulator) is AccumulateOutcome.SUPPRESSED

        await presence.clear_active("bob")
        assert await message(accumulator) is AccumulateOutcome.CREATED

    @pytest.mark.asyncio
    async def test_naive_message_time_with_presence_ttl(self, clock):
        presence = PresenceTracker(presence_ttl=timedelta(seconds=30), clock=clock)
        accumulator = BatchAccumulator(presence, clock=clock)
        await presence.set_active("bob", "conv-1", heartbeat=False)
        naive = clock().replace(tzinfo=None)

        fresh = await accumulator.on_message(
            "bob", "alice", "Alice", "conv-1", None, "hi", now=naive + timedelta(seconds=5)
        )
        stale = await accumulator.on_message(
            "bob", "alice", "Alice", "conv-1", None, "hi", now=naive + timedelta(minutes=5)
        )

        assert fresh is AccumulateOutcome.SUPPRESSED
        assert stale is AccumulateOutcome.CREATED


class TestFailures:
    @pytest.mark.asyncio
    async def test_store_failure_returns_failed(self, accumulator, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(db, "accumulate_pending_batch", broken)

        outcome = await message(accumulator)

        assert outcome is AccumulateOutcome.FAILED
        assert metrics.get_counter("accumulate.failed") == 1

    @pytest.mark.asyncio
    async def test_presence_failure_falls_through_to_batching(self, accumulator, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(db, "get_presence", broken)

        assert await message(accumulator) is AccumulateOutcome.CREATED


class TestMetrics:
    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self, accumulator, presence):
        await message(accumulator)
        await message(accumulator)
        await presence.set_active("carol", "conv-1", heartbeat=False)
        await message(accumulator, recipient="carol")

        assert metrics.get_counter("accumulate.created") == 1
        assert metrics.get_counter("accumulate.accumulated") == 1
        assert metrics.get_counter("accumulate.suppressed") == 1


class TestClearConversation:
    @pytest.mark.asyncio
    async def test_clear_conversation(self, accumulator):
        await message(accumulator, sender="alice")
        await message(accumulator, sender="carol")
        await message(accumulator, conversation="conv-2")

        assert await accumulator.clear_conversation("bob", "conv-1") == 2
        assert [b["conversation_id"] for b in await accumulator.pending_for("bob")] == ["conv-2"]
        assert metrics.get_counter("presence.cleared_batches") == 2

    @pytest.mark.asyncio
    async def test_clear_failure_returns_zero(self, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(db, "delete_pending_batches_for_conversation", broken)

        assert await clear_pending_batches("bob", "conv-1") == 0
