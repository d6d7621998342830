"""
Tests for the delivery worker and retry promoter.

Scenarios:
  - due record → tick → worker → sent, message persisted, room notified
  - always-failing delivery → 3 retry-lane round-trips → dead-letter, record failed
  - redelivery after success never duplicates the message
  - missing conversation fails without retry
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from conftest import FakeWebSocket
from job_queue.consumer import DeliveryOutcome, DeliveryWorker, RetryPromoter
from job_queue.message_queue import QueueEnvelope, Queues
from models.schemas import PENDING_FLAGS, ScheduledMessageState
from scheduler.poller import SchedulerPoller


async def _claim_and_enqueue(store, queue, record):
    await store.conditional_update(record.id, PENDING_FLAGS, {"queued": True})
    await queue.enqueue(QueueEnvelope.from_scheduled(record))


class TestDeliveryHappyPath:
    @pytest.mark.asyncio
    async def test_due_record_delivered_end_to_end(self, store, queue, hub, alice, bob, due):
        record = await due(content="Happy birthday!")
        ws_alice, ws_bob = FakeWebSocket(), FakeWebSocket()
        await hub.connect(alice, ws_alice)
        await hub.connect(bob, ws_bob)
        await hub.join_room(alice.id, "conv-001")
        await hub.join_room(bob.id, "conv-001")

        scheduler = SchedulerPoller(store, queue)
        tick = await scheduler.run_once()
        assert tick["enqueued"] == 1
        assert (await store.get_scheduled_message(record.id)).state == ScheduledMessageState.QUEUED

        worker = DeliveryWorker(store, queue, hub)
        delivery = await queue.get_delivery(timeout=0.1)
        outcome = await worker.handle(delivery)
        assert outcome == DeliveryOutcome.SENT

        updated = await store.get_scheduled_message(record.id)
        assert updated.sent is True
        assert updated.queued is False
        assert updated.failed is False
        assert updated.sent_at is not None

        message = await store.get_message_by_origin(record.id)
        assert message is not None
        assert updated.message_id == message.id
        assert message.content == "Happy birthday!"
        assert message.metadata["client_info"] == "scheduled"
        assert message.metadata["scheduled_message_id"] == record.id
        assert message.metadata["envelope_id"].startswith("env_")

        conv = await store.get_conversation("conv-001")
        assert conv.last_message.content == "Happy birthday!"
        assert conv.last_message.sender_id == alice.id

        for ws in (ws_alice, ws_bob):
            events = ws.events("new_message")
            assert len(events) == 1
            assert events[0]["id"] == message.id
            assert events[0]["senderName"] == "alice"
            assert events[0]["sender"]["displayName"] == "Alice A."

        assert (await queue.status())["unacknowledged"] == 0

    @pytest.mark.asyncio
    async def test_runs_without_hub(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        worker = DeliveryWorker(store, queue, hub=None)
        outcome = await worker.handle(await queue.get_delivery(timeout=0.1))
        assert outcome == DeliveryOutcome.SENT

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_undo_delivery(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        hub = AsyncMock()
        hub.publish_to_room.side_effect = RuntimeError("socket layer down")
        worker = DeliveryWorker(store, queue, hub)

        outcome = await worker.handle(await queue.get_delivery(timeout=0.1))
        assert outcome == DeliveryOutcome.SENT
        assert (await store.get_scheduled_message(record.id)).sent is True

    @pytest.mark.asyncio
    async def test_sender_lookup_failure_does_not_retry(self, store, queue, hub, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        store.get_user = AsyncMock(side_effect=RuntimeError("users table locked"))
        worker = DeliveryWorker(store, queue, hub)

        outcome = await worker.handle(await queue.get_delivery(timeout=0.1))
        assert outcome == DeliveryOutcome.SENT
        assert worker.status()["stats"]["retried"] == 0
        assert await queue.queue_length(Queues.RETRY) == 0
        assert (await store.get_scheduled_message(record.id)).sent is True


class TestRetryCeiling:
    @pytest.mark.asyncio
    async def test_always_failing_delivery_dead_letters(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)

        store.upsert_message_by_origin = AsyncMock(side_effect=RuntimeError("db write failed"))
        worker = DeliveryWorker(store, queue)

        outcomes = []
        retry_counts = []
        while True:
            delivery = await queue.get_delivery(timeout=0.1)
            if delivery is None:
                break
            retry_counts.append(delivery.envelope.retry_count)
            outcomes.append(await worker.handle(delivery))
            await queue.promote_retries()

        assert retry_counts == [0, 1, 2, 3]
        assert outcomes == [DeliveryOutcome.RETRYING] * 3 + [DeliveryOutcome.FAILED]
        assert await queue.queue_length(Queues.DLQ) == 1

        failed = await store.get_scheduled_message(record.id)
        assert failed.failed is True
        assert failed.queued is False
        assert failed.sent is False
        assert "db write failed" in failed.error_message

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)

        real_upsert = store.upsert_message_by_origin
        calls = []

        async def flaky_upsert(message):
            calls.append(message.origin_id)
            if len(calls) == 1:
                raise RuntimeError("blip")
            return await real_upsert(message)

        store.upsert_message_by_origin = flaky_upsert
        worker = DeliveryWorker(store, queue)

        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.RETRYING
        await queue.promote_retries()
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SENT
        assert (await store.get_scheduled_message(record.id)).sent is True

    @pytest.mark.asyncio
    async def test_reclaimed_delivery_at_ceiling_marks_failed(self, store, due):
        from job_queue.message_queue import InMemoryMessageQueue, MAX_RETRY
        q = InMemoryMessageQueue(retry_delay=0.0, visibility_timeout=0.0)
        await q.connect()
        record = await due()
        await store.conditional_update(record.id, PENDING_FLAGS, {"queued": True})
        envelope = QueueEnvelope.from_scheduled(record)
        envelope.retry_count = MAX_RETRY
        await q.enqueue(envelope)

        DeliveryWorker(store, q)
        await q.get_delivery(timeout=0.1)   # consumer crashes before acking
        await RetryPromoter(q).run_once()

        assert (await store.get_scheduled_message(record.id)).failed is True


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_acked_without_duplicate(self, store, queue, hub, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        envelope = (await queue.peek(Queues.DISPATCH))[0]
        worker = DeliveryWorker(store, queue, hub)

        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SENT

        # Broker redelivers the same envelope
        await queue.enqueue(envelope)
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SKIPPED

        messages = await store.get_conversation_messages("conv-001")
        assert len(messages) == 1
        assert (await queue.status())["unacknowledged"] == 0

    @pytest.mark.asyncio
    async def test_crash_after_persist_does_not_duplicate(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        worker = DeliveryWorker(store, queue)

        real_update = store.update_last_message
        store.update_last_message = AsyncMock(side_effect=RuntimeError("crash after persist"))
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.RETRYING

        store.update_last_message = real_update
        await queue.promote_retries()
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SENT

        messages = await store.get_conversation_messages("conv-001")
        assert len(messages) == 1
        assert (await store.get_scheduled_message(record.id)).message_id == messages[0].id


class TestNonRetriable:
    @pytest.mark.asyncio
    async def test_missing_conversation_fails_without_retry(self, store, queue, due):
        record = await due(conversation_id="conv-gone")
        await _claim_and_enqueue(store, queue, record)
        worker = DeliveryWorker(store, queue)

        outcome = await worker.handle(await queue.get_delivery(timeout=0.1))
        assert outcome == DeliveryOutcome.FAILED
        assert await queue.queue_length(Queues.RETRY) == 0
        assert await queue.queue_length(Queues.DLQ) == 0

        failed = await store.get_scheduled_message(record.id)
        assert failed.failed is True
        assert "not found" in failed.error_message

    @pytest.mark.asyncio
    async def test_missing_record_is_skipped(self, store, queue):
        await queue.enqueue(QueueEnvelope(
            scheduled_message_id="sm-ghost", conversation_id="conv-001",
            sender_id="u-alice", content="boo",
        ))
        worker = DeliveryWorker(store, queue)
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SKIPPED
        assert await store.get_message_by_origin("sm-ghost") is None

    @pytest.mark.asyncio
    async def test_unclaimed_record_is_skipped(self, store, queue, due):
        record = await due()
        await queue.enqueue(QueueEnvelope.from_scheduled(record))
        worker = DeliveryWorker(store, queue)
        assert await worker.handle(await queue.get_delivery(timeout=0.1)) == DeliveryOutcome.SKIPPED
        assert (await store.get_scheduled_message(record.id)).state == ScheduledMessageState.PENDING


class TestWorkerLifecycle:
    @pytest.mark.asyncio
    async def test_background_worker_delivers(self, store, queue, due):
        record = await due()
        await _claim_and_enqueue(store, queue, record)
        worker = DeliveryWorker(store, queue, concurrency=2)

        tasks = await worker.start_background()
        assert len(tasks) == 2
        for _ in range(100):
            if (await store.get_scheduled_message(record.id)).sent:
                break
            await asyncio.sleep(0.02)
        await worker.stop()

        assert (await store.get_scheduled_message(record.id)).sent is True
        assert worker.status()["stats"]["sent"] == 1
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_promoter_background_loop(self, queue):
        await queue.enqueue_retry(QueueEnvelope(
            scheduled_message_id="sm-1", conversation_id="conv-001",
            sender_id="u-alice", content="hi", retry_count=1,
        ))
        promoter = RetryPromoter(queue, interval_seconds=0.01)
        await promoter.start_background()
        for _ in range(50):
            if await queue.queue_length(Queues.DISPATCH) == 1:
                break
            await asyncio.sleep(0.01)
        await promoter.stop()
        assert await queue.queue_length(Queues.DISPATCH) == 1
        assert await queue.queue_length(Queues.RETRY) == 0
