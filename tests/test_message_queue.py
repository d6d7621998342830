"""
Tests for the retryable message queue.

Coverage:
  Envelope flow: enqueue, consume, ack
  Retry lane:    nack → retry lane → promote, ceiling → dead-letter lane
  Reclaim:       unacknowledged deliveries redelivered, bounded by the ceiling
  Factory:       backend selection and singleton
"""
import asyncio
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from job_queue.message_queue import (
    InMemoryMessageQueue, MAX_RETRY, QueueEnvelope, Queues, RedisMessageQueue,
    create_message_queue, get_message_queue, reset_message_queue,
)
from models.errors import QueueUnavailableError


def make_envelope(retry_count=0, sm_id="sm-1") -> QueueEnvelope:
    return QueueEnvelope(
        scheduled_message_id=sm_id,
        conversation_id="conv-001",
        sender_id="u-alice",
        content="hello",
        retry_count=retry_count,
    )


# ══════════════════════════════════════════════════════════════
#  In-memory backend
# ══════════════════════════════════════════════════════════════

class TestInMemoryQueue:
    @pytest.mark.asyncio
    async def test_enqueue_and_peek(self, queue):
        await queue.enqueue(make_envelope())
        assert await queue.queue_length(Queues.DISPATCH) == 1
        peeked = await queue.peek(Queues.DISPATCH)
        assert peeked[0].scheduled_message_id == "sm-1"
        # peek does not consume
        assert await queue.queue_length(Queues.DISPATCH) == 1

    @pytest.mark.asyncio
    async def test_enqueue_requires_connection(self):
        q = InMemoryMessageQueue()
        with pytest.raises(QueueUnavailableError):
            await q.enqueue(make_envelope())

    @pytest.mark.asyncio
    async def test_delivery_stays_unacked_until_ack(self, queue):
        await queue.enqueue(make_envelope())
        delivery = await queue.get_delivery(timeout=0.1)
        assert delivery.envelope.scheduled_message_id == "sm-1"
        assert (await queue.status())["unacknowledged"] == 1

        await queue.ack(delivery)
        assert (await queue.status())["unacknowledged"] == 0

    @pytest.mark.asyncio
    async def test_get_delivery_times_out_when_empty(self, queue):
        assert await queue.get_delivery(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_nack_below_ceiling_goes_to_retry_lane(self, queue):
        await queue.enqueue(make_envelope())
        delivery = await queue.get_delivery(timeout=0.1)

        requeued = await queue.nack(delivery, "store timeout")
        assert requeued is True
        assert await queue.queue_length(Queues.RETRY) == 1
        assert await queue.queue_length(Queues.DLQ) == 0
        assert (await queue.status())["unacknowledged"] == 0

        retry = (await queue.peek(Queues.RETRY))[0]
        assert retry.retry_count == 1
        assert retry.last_error == "store timeout"
        assert retry.envelope_id == delivery.envelope.envelope_id

    @pytest.mark.asyncio
    async def test_nack_at_ceiling_dead_letters(self, queue):
        await queue.enqueue(make_envelope(retry_count=MAX_RETRY))
        delivery = await queue.get_delivery(timeout=0.1)

        requeued = await queue.nack(delivery, "still broken")
        assert requeued is False
        assert await queue.queue_length(Queues.RETRY) == 0
        assert await queue.queue_length(Queues.DLQ) == 1
        reason = queue._dlq[0][1]
        assert "Exceeded 3 retries" in reason

    @pytest.mark.asyncio
    async def test_promote_respects_cool_down(self):
        q = InMemoryMessageQueue(retry_delay=60.0)
        await q.connect()
        await q.enqueue_retry(make_envelope(retry_count=1))
        assert await q.promote_retries() == 0
        assert await q.queue_length(Queues.RETRY) == 1

    @pytest.mark.asyncio
    async def test_promote_moves_ready_envelopes(self, queue):
        await queue.enqueue_retry(make_envelope(retry_count=1))
        assert await queue.promote_retries() == 1
        assert await queue.queue_length(Queues.RETRY) == 0
        delivery = await queue.get_delivery(timeout=0.1)
        assert delivery.envelope.retry_count == 1

    @pytest.mark.asyncio
    async def test_always_failing_envelope_round_trips_three_times(self, queue):
        await queue.enqueue(make_envelope())
        attempts = 0
        round_trips = 0
        while True:
            delivery = await queue.get_delivery(timeout=0.1)
            if delivery is None:
                break
            attempts += 1
            if await queue.nack(delivery, "boom"):
                round_trips += 1
                await queue.promote_retries()

        assert attempts == 4
        assert round_trips == 3
        assert await queue.queue_length(Queues.DLQ) == 1
        assert queue._dlq[0][0].retry_count == 4

    @pytest.mark.asyncio
    async def test_consume_pushes_to_handler(self, queue):
        seen = []

        async def handler(delivery):
            seen.append(delivery.envelope.scheduled_message_id)
            await queue.ack(delivery)
            queue.stop_consuming()

        await queue.enqueue(make_envelope(sm_id="sm-7"))
        await asyncio.wait_for(queue.consume(handler, consumer_name="t"), timeout=3)
        assert seen == ["sm-7"]

    @pytest.mark.asyncio
    async def test_consume_survives_handler_error(self, queue):
        calls = []

        async def handler(delivery):
            calls.append(delivery.envelope.scheduled_message_id)
            if len(calls) == 1:
                raise RuntimeError("crash mid-envelope")
            await queue.ack(delivery)
            queue.stop_consuming()

        await queue.enqueue(make_envelope(sm_id="a"))
        await queue.enqueue(make_envelope(sm_id="b"))
        await asyncio.wait_for(queue.consume(handler), timeout=3)
        assert calls == ["a", "b"]
        # the crashed delivery is still awaiting reclaim
        assert (await queue.status())["unacknowledged"] == 1


class TestReclaim:
    @pytest_asyncio.fixture
    async def expiring_queue(self):
        q = InMemoryMessageQueue(retry_delay=0.0, visibility_timeout=0.0)
        await q.connect()
        yield q
        await q.close()

    @pytest.mark.asyncio
    async def test_reclaim_routes_to_retry_lane(self, expiring_queue):
        await expiring_queue.enqueue(make_envelope())
        await expiring_queue.get_delivery(timeout=0.1)

        assert await expiring_queue.reclaim_expired() == 1
        assert await expiring_queue.queue_length(Queues.RETRY) == 1
        assert (await expiring_queue.status())["unacknowledged"] == 0

    @pytest.mark.asyncio
    async def test_reclaim_at_ceiling_notifies_dead_letter_handler(self, expiring_queue):
        handler = AsyncMock()
        expiring_queue.set_dead_letter_handler(handler)
        await expiring_queue.enqueue(make_envelope(retry_count=MAX_RETRY, sm_id="sm-dead"))
        await expiring_queue.get_delivery(timeout=0.1)

        await expiring_queue.reclaim_expired()
        assert await expiring_queue.queue_length(Queues.DLQ) == 1
        handler.assert_awaited_once()
        envelope, error = handler.await_args.args
        assert envelope.scheduled_message_id == "sm-dead"
        assert "visibility timeout" in error

    @pytest.mark.asyncio
    async def test_nothing_reclaimed_before_timeout(self, queue):
        await queue.enqueue(make_envelope())
        await queue.get_delivery(timeout=0.1)
        assert await queue.reclaim_expired() == 0


class TestQueueStatus:
    @pytest.mark.asyncio
    async def test_status_reports_lanes(self, queue):
        await queue.enqueue(make_envelope())
        await queue.enqueue_retry(make_envelope(retry_count=1))
        status = await queue.status()
        assert status["backend"] == "InMemoryMessageQueue"
        assert status["lanes"] == {Queues.DISPATCH: 1, Queues.RETRY: 1, Queues.DLQ: 0}
        assert status["max_retries"] == MAX_RETRY


# ══════════════════════════════════════════════════════════════
#  Factory
# ══════════════════════════════════════════════════════════════

class TestMessageQueueFactory:
    def setup_method(self):
        reset_message_queue()

    def teardown_method(self):
        reset_message_queue()

    def test_create_memory_queue_default(self):
        q = create_message_queue({})
        assert isinstance(q, InMemoryMessageQueue)
        assert q.max_retries == MAX_RETRY

    def test_create_redis_queue(self):
        q = create_message_queue({
            "backend": "redis",
            "redis_url": "redis://localhost:6379",
            "consumer_group": "g1",
            "max_retries": 5,
            "retry_delay_seconds": 2,
        })
        assert isinstance(q, RedisMessageQueue)
        assert q.consumer_group == "g1"
        assert q.max_retries == 5
        assert q.retry_delay == 2.0

    def test_singleton(self):
        q = create_message_queue({"backend": "memory"})
        assert get_message_queue() is q
        assert create_message_queue({"backend": "redis"}) is q

    @pytest.mark.asyncio
    async def test_redis_queue_unconnected_raises(self):
        q = RedisMessageQueue()
        with pytest.raises(QueueUnavailableError):
            await q.enqueue(make_envelope())


class TestRedisDeadLetter:
    @pytest.mark.asyncio
    async def test_dead_letter_stream_is_capped(self):
        q = RedisMessageQueue(dlq_maxlen=500)
        q._redis = AsyncMock()
        await q.dead_letter(make_envelope(retry_count=4), "Exceeded 3 retries: boom")

        q._redis.xadd.assert_awaited_once()
        args, kwargs = q._redis.xadd.await_args
        assert args[0] == Queues.DLQ
        assert args[1]["dlq_reason"] == "Exceeded 3 retries: boom"
        assert kwargs == {"maxlen": 500, "approximate": True}

    def test_factory_passes_cap(self):
        reset_message_queue()
        try:
            q = create_message_queue({"backend": "redis", "dlq_maxlen": 42})
            assert q.dlq_maxlen == 42
        finally:
            reset_message_queue()
