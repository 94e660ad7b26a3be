"""Tests for the window sweep."""

import asyncio
from datetime import timedelta

import pytest

from pushbatch import db
from pushbatch.batching import BatchAccumulator
from pushbatch.dispatch import RecordingPushDispatcher
from pushbatch.jobs import WindowProcessor, run_periodically
from pushbatch.metrics import metrics
from pushbatch.presence import PresenceTracker
from pushbatch.testing import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingPushDispatcher()


@pytest.fixture
def presence(clock):
    return PresenceTracker(clock=clock)


@pytest.fixture
def accumulator(presence, clock):
    return BatchAccumulator(presence, clock=clock)


@pytest.fixture
def processor(dispatcher, clock):
    return WindowProcessor(dispatcher, clock=clock)


async def sam_says(accumulator, content, recipient="riley", conversation="conv-c"):
    return await accumulator.on_message(
        recipient, "sam", "Sam", conversation, "Desk Lamp", content
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_burst_becomes_one_batched_notification(self, accumulator, processor, dispatcher, clock):
        """Three quick messages produce one "sent 3 messages" push."""
        await sam_says(accumulator, "Hi")
        clock.advance(1)
        await sam_says(accumulator, "Still interested?")
        clock.advance(1)
        await sam_says(accumulator, "?")

        clock.advance(5.5)
        report = await processor.run_sweep()

        assert report.processed_count == 1
        assert report.success_count == 1
        assert len(dispatcher.sent) == 1
        push = dispatcher.sent[0]
        assert push.recipient_id == "riley"
        assert push.title == "Sam sent 3 messages"
        assert push.body == "About: Desk Lamp"
        assert push.payload == {
            "type": "new_message",
            "conversation_id": "conv-c",
            "sender_id": "sam",
            "message_count": 3,
            "batched": True,
        }
        assert db.list_pending_batches("riley") == []

    @pytest.mark.asyncio
    async def test_single_message_uses_preview(self, accumulator, processor, dispatcher, clock):
        text = "Is this still available?"
        await sam_says(accumulator, text)

        clock.advance(6)
        await processor.run_sweep()

        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0].title == "New message from Sam"
        assert dispatcher.sent[0].body == text

    @pytest.mark.asyncio
    async def test_opening_conversation_cancels_pending_push(
        self, accumulator, presence, processor, dispatcher, clock
    ):
        await sam_says(accumulator, "Hi")
        clock.advance(1)
        await sam_says(accumulator, "Still interested?")

        await presence.set_active("riley", "conv-c", heartbeat=False)
        clock.advance(1)
        assert (await sam_says(accumulator, "?")).value == "suppressed"

        clock.advance(10)
        report = await processor.run_sweep()

        assert report.processed_count == 0
        assert dispatcher.attempts == []

    @pytest.mark.asyncio
    async def test_persistently_failing_batch_is_evicted(self, accumulator, processor, dispatcher, clock):
        """A recipient whose pushes fail for 65 minutes loses the batch, nobody else does."""
        dispatcher.fail_recipients.add("riley")
        await sam_says(accumulator, "Hi")

        for _ in range(12):
            clock.advance(minutes=5)
            report = await processor.run_sweep()
            assert report.failed_count == 1
            assert report.evicted_count == 0
            assert len(db.list_pending_batches("riley")) == 1

        await sam_says(accumulator, "Hello", recipient="morgan")
        clock.advance(minutes=5)
        report = await processor.run_sweep()

        assert report.evicted_count == 1
        evicted = [r for r in report.results if r.evicted]
        assert evicted[0].recipient_id == "riley"
        assert db.list_pending_batches("riley") == []
        assert [p.recipient_id for p in dispatcher.sent] == ["morgan"]
        assert metrics.get_counter("sweep.evicted") == 1


class TestDebounce:
    @pytest.mark.asyncio
    async def test_continuous_stream_is_not_sent_mid_stream(self, accumulator, processor, dispatcher, clock):
        for i in range(10):
            await sam_says(accumulator, f"message {i}")
            clock.advance(3)
            report = await processor.run_sweep()
            assert report.processed_count == 0

        clock.advance(3)
        report = await processor.run_sweep()

        assert report.success_count == 1
        assert dispatcher.sent[0].payload["message_count"] == 10

    @pytest.mark.asyncio
    async def test_window_boundary_is_exclusive(self, accumulator, processor, clock):
        await sam_says(accumulator, "Hi")

        clock.advance(5)
        assert (await processor.run_sweep()).processed_count == 0

        clock.advance(0.001)
        assert (await processor.run_sweep()).processed_count == 1

    @pytest.mark.asyncio
    async def test_window_override(self, accumulator, processor, clock):
        await sam_says(accumulator, "Hi")
        clock.advance(2)

        assert (await processor.run_sweep()).processed_count == 0
        report = await processor.run_sweep(batch_window=timedelta(seconds=1))
        assert report.processed_count == 1


class TestSweepBehaviour:
    @pytest.mark.asyncio
    async def test_empty_sweep(self, processor):
        report = await processor.run_sweep()
        assert report.processed_count == 0
        assert report.to_dict()["results"] == []

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent_after_success(self, accumulator, processor, dispatcher, clock):
        await sam_says(accumulator, "Hi")
        clock.advance(6)

        first = await processor.run_sweep()
        second = await processor.run_sweep()

        assert first.success_count == 1
        assert second.processed_count == 0
        assert len(dispatcher.attempts) == 1

    @pytest.mark.asyncio
    async def test_failed_batch_is_retried(self, accumulator, processor, dispatcher, clock):
        dispatcher.fail_all = True
        await sam_says(accumulator, "Hi")
        clock.advance(6)

        report = await processor.run_sweep()
        assert report.failed_count == 1
        assert report.results[0].error == "dispatcher rejected notification"
        assert len(db.list_pending_batches("riley")) == 1

        dispatcher.fail_all = False
        clock.advance(5)
        report = await processor.run_sweep()
        assert report.success_count == 1
        assert len(dispatcher.attempts) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_others(self, accumulator, processor, dispatcher, clock):
        dispatcher.fail_recipients.add("riley")
        dispatcher.raise_errors = True
        await sam_says(accumulator, "Hi", recipient="riley")
        await sam_says(accumulator, "Hi", recipient="morgan")
        await sam_says(accumulator, "Hi", recipient="quinn")
        clock.advance(6)

        report = await processor.run_sweep()

        assert report.processed_count == 3
        assert report.success_count == 2
        assert report.failed_count == 1
        failed = [r for r in report.results if not r.success][0]
        assert failed.recipient_id == "riley"
        assert "push transport unavailable" in failed.error
        assert sorted(p.recipient_id for p in dispatcher.sent) == ["morgan", "quinn"]

    @pytest.mark.asyncio
    async def test_naive_sweep_time_with_failing_recipient(self, accumulator, processor, dispatcher, clock):
        """A naive sweep time counts as UTC on the failure path too."""
        dispatcher.fail_recipients.add("riley")
        await sam_says(accumulator, "Hi", recipient="riley")
        await sam_says(accumulator, "Hi", recipient="morgan")
        naive_start = clock().replace(tzinfo=None)

        report = await processor.run_sweep(now=naive_start + timedelta(seconds=10))

        assert report.processed_count == 2
        assert report.success_count == 1
        assert report.failed_count == 1
        assert report.evicted_count == 0
        assert len(db.list_pending_batches("riley")) == 1

        report = await processor.run_sweep(now=naive_start + timedelta(hours=2))
        assert report.evicted_count == 1
        assert db.list_pending_batches("riley") == []

    @pytest.mark.asyncio
    async def test_unreadable_batch_age_is_reported_as_failure(self, dispatcher, clock):
        dispatcher.fail_all = True
        processor = WindowProcessor(dispatcher, clock=clock)
        batch = {
            "id": "b-1",
            "recipient_id": "riley",
            "sender_id": "sam",
            "sender_display_name": "Sam",
            "conversation_id": "conv-c",
            "subject_label": "Desk Lamp",
            "message_count": 1,
            "first_message_preview": "Hi",
            "first_message_at": "not a timestamp",
        }

        result = await processor.process_batch(batch, clock(), timedelta(hours=1))

        assert result.success is False
        assert result.evicted is False

    @pytest.mark.asyncio
    async def test_delete_failure_still_counts_as_success(
        self, accumulator, processor, dispatcher, clock, monkeypatch
    ):
        await sam_says(accumulator, "Hi")
        clock.advance(6)

        def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(db, "delete_pending_batch", broken)
        report = await processor.run_sweep()

        assert report.success_count == 1
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_batch_limit(self, accumulator, dispatcher, clock):
        processor = WindowProcessor(dispatcher, batch_limit=2, clock=clock)
        for recipient in ("a", "b", "c"):
            await sam_says(accumulator, "Hi", recipient=recipient)
        clock.advance(6)

        assert (await processor.run_sweep()).processed_count == 2
        assert (await processor.run_sweep()).processed_count == 1

    @pytest.mark.asyncio
    async def test_oldest_batches_first(self, accumulator, dispatcher, clock):
        processor = WindowProcessor(dispatcher, batch_limit=1, clock=clock)
        await sam_says(accumulator, "Hi", recipient="first")
        clock.advance(1)
        await sam_says(accumulator, "Hi", recipient="second")
        clock.advance(6)

        report = await processor.run_sweep()
        assert report.results[0].recipient_id == "first"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, accumulator, clock):
        in_flight = 0
        peak = 0

        class SlowDispatcher(RecordingPushDispatcher):
            async def send(self, recipient_id, title, body, payload):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return await super().send(recipient_id, title, body, payload)

        processor = WindowProcessor(SlowDispatcher(), max_concurrency=2, clock=clock)
        for i in range(6):
            await sam_says(accumulator, "Hi", recipient=f"user-{i}")
        clock.advance(6)

        report = await processor.run_sweep()

        assert report.success_count == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_sweep_metrics(self, accumulator, processor, dispatcher, clock):
        dispatcher.fail_recipients.add("riley")
        await sam_says(accumulator, "Hi", recipient="riley")
        await sam_says(accumulator, "Hi", recipient="morgan")
        clock.advance(6)

        await processor.run_sweep()

        assert metrics.get_counter("sweep.sent") == 1
        assert metrics.get_counter("sweep.failed") == 1

    @pytest.mark.asyncio
    async def test_report_to_dict(self, accumulator, processor, clock):
        await sam_says(accumulator, "Hi")
        clock.advance(6)

        data = (await processor.run_sweep()).to_dict()

        assert data["processed"] == 1
        assert data["success"] == 1
        assert data["failed"] == 0
        assert data["evicted"] == 0
        assert data["results"][0]["recipient_id"] == "riley"
        assert data["results"][0]["message_count"] == 1


class TestRunPeriodically:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, accumulator, processor, dispatcher, clock):
        stop_event = asyncio.Event()
        await sam_says(accumulator, "Hi")
        clock.advance(6)

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop_event.set()

        stopper = asyncio.create_task(stop_soon())
        sweeps = await run_periodically(processor, 0.01, stop_event)
        await stopper

        assert sweeps >= 2
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_stopped_before_start_runs_nothing(self, processor):
        stop_event = asyncio.Event()
        stop_event.set()
        assert await run_periodically(processor, 0.01, stop_event) == 0
