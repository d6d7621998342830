"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  scheduled:dispatch   — Primary lane: envelopes ready for the delivery worker
  scheduled:retry      — Retry lane: envelopes cooling down before they are
                         moved back to the primary lane (sorted set in Redis)
  scheduled:dlq        — Dead-letter lane: envelopes that exhausted retries

Delivery model:
  consume() pushes a Delivery (envelope + broker id) to the handler. The
  envelope stays in durable storage until the handler calls ack(). The
  retry path is nack(): put a copy with retry_count + 1 on the retry lane
  and ack the original, or dead-letter it once the ceiling is reached.
  Deliveries that are never acknowledged (consumer crashed mid-envelope)
  are reclaimed after the visibility timeout and routed through the same
  retry/dead-letter accounting, so crash redelivery is bounded too.

Envelope Schema (all values are strings on the wire):
  {
      "envelope_id":          unique id, stable across retries,
      "scheduled_message_id": originating ScheduledMessage id,
      "conversation_id":      target conversation (room),
      "sender_id":            sender user id,
      "content":              message body,
      "content_type":         text|image|file|audio|video|location|system,
      "send_at":              ISO timestamp the message was scheduled for,
      "retry_count":          retry-lane round-trips so far (starts at 0),
      "enqueued_at":          ISO timestamp of the first enqueue,
      "last_error":           error text of the last failed attempt,
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError
from tenacity import retry, stop_after_attempt, wait_exponential

from models.errors import EnvelopeError, QueueUnavailableError
from models.schemas import ContentType, ScheduledMessage, utcnow

logger = structlog.get_logger()

MAX_RETRY = 3
RETRY_DELAY_SECONDS = 5.0
VISIBILITY_TIMEOUT_SECONDS = 300.0
DLQ_MAXLEN = 10_000             # approximate cap on the dead-letter stream

_REQUIRED_FIELDS = ("scheduled_message_id", "conversation_id", "sender_id", "content")
_CONTENT_TYPES = {c.value for c in ContentType}


# ──────────────────────────────────────────────────────────────
#  Envelope Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueEnvelope:
    """The unit of work traveling through the queue. Never persisted outside it."""
    scheduled_message_id: str
    conversation_id: str
    sender_id: str
    content: str
    content_type: str = ContentType.TEXT.value
    send_at: str = ""
    retry_count: int = 0
    envelope_id: str = ""
    enqueued_at: str = ""
    last_error: str = ""

    def __post_init__(self):
        for name in _REQUIRED_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise EnvelopeError(f"Envelope field '{name}' is required")
        if self.content_type not in _CONTENT_TYPES:
            raise EnvelopeError(f"Unknown content_type '{self.content_type}'")
        if not isinstance(self.retry_count, int) or self.retry_count < 0:
            raise EnvelopeError(f"Invalid retry_count {self.retry_count!r}")
        if not self.envelope_id:
            self.envelope_id = f"env_{uuid.uuid4().hex[:12]}"
        if not self.enqueued_at:
            self.enqueued_at = utcnow().isoformat()

    @classmethod
    def from_scheduled(cls, record: ScheduledMessage) -> QueueEnvelope:
        return cls(
            scheduled_message_id=record.id,
            conversation_id=record.conversation_id,
            sender_id=record.sender_id,
            content=record.content,
            content_type=record.content_type.value,
            send_at=record.send_at.isoformat(),
        )

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["retry_count"] = str(d["retry_count"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEnvelope:
        """Validate a raw payload at the queue boundary."""
        if not isinstance(data, dict):
            raise EnvelopeError("Envelope payload must be a mapping")
        data = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        try:
            data["retry_count"] = int(data.get("retry_count", 0))
        except (TypeError, ValueError):
            raise EnvelopeError(f"Invalid retry_count {data.get('retry_count')!r}")
        missing = [f for f in _REQUIRED_FIELDS if f not in data]
        if missing:
            raise EnvelopeError(f"Envelope is missing fields: {', '.join(missing)}")
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, payload: str) -> QueueEnvelope:
        try:
            return cls.from_dict(json.loads(payload))
        except json.JSONDecodeError as e:
            raise EnvelopeError(f"Envelope is not valid JSON: {e}")

    def next_retry(self, error: str = "") -> QueueEnvelope:
        """Copy with incremented retry count; envelope_id is kept for tracing."""
        return replace(self, retry_count=self.retry_count + 1, last_error=error[:500])


@dataclass
class Delivery:
    """One push of an envelope to a consumer. Acknowledge it exactly once."""
    envelope: QueueEnvelope
    delivery_id: str
    lane: str = ""
    consumer_group: str = ""
    delivered_at: float = field(default_factory=time.monotonic)


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    DISPATCH = "scheduled:dispatch"
    RETRY = "scheduled:retry"
    DLQ = "scheduled:dlq"


DeliveryHandler = Callable[[Delivery], Awaitable[Any]]
DeadLetterHandler = Callable[[QueueEnvelope, str], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract retryable queue: primary lane, retry lane, dead-letter lane."""

    def __init__(
        self,
        max_retries: int = MAX_RETRY,
        retry_delay: float = RETRY_DELAY_SECONDS,
        visibility_timeout: float = VISIBILITY_TIMEOUT_SECONDS,
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.visibility_timeout = visibility_timeout
        self._running = False
        self._on_dead_letter: Optional[DeadLetterHandler] = None

    def set_dead_letter_handler(self, handler: DeadLetterHandler) -> None:
        """Called for envelopes dead-lettered outside a handler (reclaimed deliveries)."""
        self._on_dead_letter = handler

    @property
    def running(self) -> bool:
        return self._running

    def stop_consuming(self) -> None:
        self._running = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def enqueue(self, envelope: QueueEnvelope) -> None:
        """Durably append to the primary lane. Raises QueueUnavailableError."""
        ...

    @abstractmethod
    async def enqueue_retry(self, envelope: QueueEnvelope) -> None:
        """Park an envelope on the retry lane for the cool-down period."""
        ...

    @abstractmethod
    async def dead_letter(self, envelope: QueueEnvelope, reason: str) -> None:
        """Remove an envelope from circulation permanently."""
        ...

    @abstractmethod
    async def consume(
        self,
        handler: DeliveryHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Push deliveries from the primary lane to handler until stopped.
        The handler must ack() or nack() each delivery; a delivery left
        unacknowledged is redelivered after the visibility timeout.
        """
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Positive acknowledgment: delete the delivered envelope."""
        ...

    @abstractmethod
    async def promote_retries(self) -> int:
        """Move retry-lane envelopes whose cool-down elapsed to the primary lane."""
        ...

    @abstractmethod
    async def _expired_deliveries(self) -> list[Delivery]:
        """Claim deliveries that stayed unacknowledged past the visibility timeout."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of envelopes in a lane."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueEnvelope]:
        """Peek at envelopes without consuming them."""
        ...

    async def nack(self, delivery: Delivery, error: str = "") -> bool:
        """
        Retry path. Returns True if the envelope was re-queued on the retry
        lane, False if the ceiling was reached and it was dead-lettered.
        The original delivery is acknowledged either way.
        """
        envelope = delivery.envelope
        if envelope.retry_count < self.max_retries:
            retry_envelope = envelope.next_retry(error)
            await self.enqueue_retry(retry_envelope)
            await self.ack(delivery)
            logger.info("envelope_scheduled_for_retry",
                        envelope_id=envelope.envelope_id,
                        scheduled_message_id=envelope.scheduled_message_id,
                        retry_count=retry_envelope.retry_count,
                        delay_s=self.retry_delay)
            return True

        reason = f"Exceeded {self.max_retries} retries: {error}"
        await self.dead_letter(envelope.next_retry(error), reason)
        await self.ack(delivery)
        logger.warning("envelope_moved_to_dlq",
                       envelope_id=envelope.envelope_id,
                       scheduled_message_id=envelope.scheduled_message_id,
                       retry_count=envelope.retry_count)
        return False

    async def reclaim_expired(self) -> int:
        """
        Route deliveries whose consumer never acknowledged them through the
        retry accounting. Returns the number reclaimed.
        """
        expired = await self._expired_deliveries()
        for delivery in expired:
            error = "Delivery not acknowledged before visibility timeout"
            requeued = await self.nack(delivery, error)
            if not requeued and self._on_dead_letter:
                await self._on_dead_letter(delivery.envelope, error)
        if expired:
            logger.warning("expired_deliveries_reclaimed", count=len(expired))
        return len(expired)

    async def status(self) -> dict[str, Any]:
        return {
            "backend": type(self).__name__,
            "running": self._running,
            "lanes": {
                Queues.DISPATCH: await self.queue_length(Queues.DISPATCH),
                Queues.RETRY: await self.queue_length(Queues.RETRY),
                Queues.DLQ: await self.queue_length(Queues.DLQ),
            },
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay,
            "visibility_timeout_seconds": self.visibility_timeout,
        }


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

# Atomically move one retry-lane member to the dispatch stream. Only the
# promoter that wins the ZREM appends, so concurrent promoters never
# duplicate an envelope.
_PROMOTE_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
    return redis.call('XADD', KEYS[2], '*', unpack(ARGV, 2))
end
return false
"""


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Dispatch lane is a Redis Stream read through a consumer group; an
      envelope stays in the group's pending list until XACK + XDEL
    - Retry lane is a Sorted Set scored by the time it becomes ready
    - Dead-letter lane is a Redis Stream for inspection
    - Unacknowledged deliveries are reclaimed with XAUTOCLAIM
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        consumer_group: str = "delivery-workers",
        dlq_maxlen: int = DLQ_MAXLEN,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self.dlq_maxlen = dlq_maxlen
        self._redis: Optional[aioredis.Redis] = None
        self._promote = None
        self.consumer_group = consumer_group
        self._reclaimer_name = f"reclaimer_{uuid.uuid4().hex[:8]}"

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=5), reraise=True)
    async def connect(self):
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._promote = self._redis.register_script(_PROMOTE_SCRIPT)
        await self._ensure_group(Queues.DISPATCH, self.consumer_group)
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            raise QueueUnavailableError("Redis queue is not connected")
        return self._redis

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self._client().xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def enqueue(self, envelope: QueueEnvelope) -> None:
        try:
            await self._client().xadd(Queues.DISPATCH, envelope.to_dict())
        except RedisError as e:
            raise QueueUnavailableError(f"Enqueue failed: {e}") from e
        logger.info("envelope_enqueued",
                    envelope_id=envelope.envelope_id,
                    scheduled_message_id=envelope.scheduled_message_id)

    async def enqueue_retry(self, envelope: QueueEnvelope) -> None:
        ready_at = time.time() + self.retry_delay
        try:
            await self._client().zadd(Queues.RETRY, {envelope.to_json(): ready_at})
        except RedisError as e:
            raise QueueUnavailableError(f"Retry enqueue failed: {e}") from e

    async def dead_letter(self, envelope: QueueEnvelope, reason: str) -> None:
        fields = {**envelope.to_dict(), "dlq_reason": reason}
        await self._client().xadd(Queues.DLQ, fields, maxlen=self.dlq_maxlen, approximate=True)

    async def consume(
        self,
        handler: DeliveryHandler,
        consumer_group: str = "",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        group = consumer_group or self.consumer_group
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(Queues.DISPATCH, group)
        self._running = True
        logger.info("consumer_started",
                    queue=Queues.DISPATCH,
                    group=group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._client().xreadgroup(
                    groupname=group,
                    consumername=consumer_name,
                    streams={Queues.DISPATCH: ">"},
                    count=batch_size,
                    block=2000,  # block 2s waiting for envelopes
                )
                if not messages:
                    continue

                for _stream, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        delivery = await self._to_delivery(message_id, fields, group)
                        if delivery is None:
                            continue
                        try:
                            await handler(delivery)
                        except Exception as e:
                            # Left pending; reclaimed after the visibility timeout
                            logger.error("delivery_handler_error",
                                         envelope_id=delivery.envelope.envelope_id,
                                         message_id=message_id,
                                         error=str(e))

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=Queues.DISPATCH, error=str(e))
                await asyncio.sleep(1)

    async def _to_delivery(
        self, message_id: str, fields: dict[str, Any], group: str,
    ) -> Optional[Delivery]:
        try:
            envelope = QueueEnvelope.from_dict(fields)
        except EnvelopeError as e:
            logger.error("malformed_envelope_dropped", message_id=message_id, error=str(e))
            await self._client().xadd(Queues.DLQ, {**fields, "dlq_reason": str(e)},
                                      maxlen=self.dlq_maxlen, approximate=True)
            await self._client().xack(Queues.DISPATCH, group, message_id)
            await self._client().xdel(Queues.DISPATCH, message_id)
            return None
        return Delivery(envelope=envelope, delivery_id=message_id,
                        lane=Queues.DISPATCH, consumer_group=group)

    async def ack(self, delivery: Delivery) -> None:
        group = delivery.consumer_group or self.consumer_group
        client = self._client()
        await client.xack(Queues.DISPATCH, group, delivery.delivery_id)
        await client.xdel(Queues.DISPATCH, delivery.delivery_id)
        logger.debug("envelope_acked",
                     envelope_id=delivery.envelope.envelope_id,
                     message_id=delivery.delivery_id)

    async def promote_retries(self) -> int:
        """Move envelopes whose cool-down elapsed from the sorted set to the dispatch stream."""
        client = self._client()
        ready = await client.zrangebyscore(Queues.RETRY, "-inf", time.time())
        promoted = 0
        for payload in ready:
            try:
                envelope = QueueEnvelope.from_json(payload)
            except EnvelopeError as e:
                logger.error("malformed_retry_envelope_dropped", error=str(e))
                await client.zrem(Queues.RETRY, payload)
                continue
            args = [payload]
            for key, value in envelope.to_dict().items():
                args.extend([key, value])
            if await self._promote(keys=[Queues.RETRY, Queues.DISPATCH], args=args):
                promoted += 1

        if promoted:
            logger.info("retry_envelopes_promoted", count=promoted)
        return promoted

    async def _expired_deliveries(self) -> list[Delivery]:
        client = self._client()
        result = await client.xautoclaim(
            Queues.DISPATCH,
            self.consumer_group,
            self._reclaimer_name,
            min_idle_time=int(self.visibility_timeout * 1000),
            start_id="0-0",
            count=100,
        )
        claimed = result[1] if len(result) > 1 else []
        deliveries = []
        for message_id, fields in claimed:
            if not fields:
                continue
            delivery = await self._to_delivery(message_id, fields, self.consumer_group)
            if delivery:
                deliveries.append(delivery)
        return deliveries

    async def queue_length(self, queue: str) -> int:
        client = self._client()
        if queue == Queues.RETRY:
            return await client.zcard(queue)
        return await client.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueEnvelope]:
        client = self._client()
        if queue == Queues.RETRY:
            payloads = await client.zrange(queue, 0, count - 1)
            return [QueueEnvelope.from_json(p) for p in payloads]
        messages = await client.xrange(queue, count=count)
        return [QueueEnvelope.from_dict(fields) for _, fields in messages]

    async def status(self) -> dict[str, Any]:
        info = await super().status()
        pending = await self._client().xpending(Queues.DISPATCH, self.consumer_group)
        info["unacknowledged"] = pending.get("pending", 0) if pending else 0
        info["consumer_group"] = self.consumer_group
        return info


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no persistence, but the same ack/retry semantics.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._dispatch: asyncio.Queue[QueueEnvelope] = asyncio.Queue()
        self._retry: list[tuple[float, QueueEnvelope]] = []   # (ready_at, envelope)
        self._dlq: list[tuple[QueueEnvelope, str]] = []
        self._unacked: dict[str, Delivery] = {}
        self._connected = False

    async def connect(self):
        self._connected = True
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        self._connected = False

    async def enqueue(self, envelope: QueueEnvelope) -> None:
        if not self._connected:
            raise QueueUnavailableError("In-memory queue is not connected")
        self._dispatch.put_nowait(envelope)
        logger.info("envelope_enqueued",
                    envelope_id=envelope.envelope_id,
                    scheduled_message_id=envelope.scheduled_message_id)

    async def enqueue_retry(self, envelope: QueueEnvelope) -> None:
        if not self._connected:
            raise QueueUnavailableError("In-memory queue is not connected")
        self._retry.append((time.monotonic() + self.retry_delay, envelope))
        self._retry.sort(key=lambda x: x[0])

    async def dead_letter(self, envelope: QueueEnvelope, reason: str) -> None:
        self._dlq.append((envelope, reason))

    async def get_delivery(self, timeout: float = 2.0) -> Optional[Delivery]:
        """Pull one delivery from the primary lane, or None on timeout."""
        try:
            envelope = await asyncio.wait_for(self._dispatch.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        delivery = Delivery(
            envelope=envelope,
            delivery_id=uuid.uuid4().hex,
            lane=Queues.DISPATCH,
        )
        self._unacked[delivery.delivery_id] = delivery
        return delivery

    async def consume(
        self,
        handler: DeliveryHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        self._running = True
        logger.info("consumer_started", queue=Queues.DISPATCH, consumer=consumer_name)

        while self._running:
            try:
                delivery = await self.get_delivery()
                if delivery is None:
                    continue
                try:
                    await handler(delivery)
                except Exception as e:
                    logger.error("delivery_handler_error",
                                 envelope_id=delivery.envelope.envelope_id,
                                 error=str(e))
            except asyncio.CancelledError:
                break

    async def ack(self, delivery: Delivery) -> None:
        self._unacked.pop(delivery.delivery_id, None)

    async def promote_retries(self) -> int:
        now = time.monotonic()
        ready = [env for ts, env in self._retry if ts <= now]
        self._retry = [(ts, env) for ts, env in self._retry if ts > now]

        for envelope in ready:
            self._dispatch.put_nowait(envelope)

        if ready:
            logger.info("retry_envelopes_promoted", count=len(ready))
        return len(ready)

    async def _expired_deliveries(self) -> list[Delivery]:
        deadline = time.monotonic() - self.visibility_timeout
        return [d for d in list(self._unacked.values()) if d.delivered_at <= deadline]

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.RETRY:
            return len(self._retry)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._dispatch.qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueEnvelope]:
        if queue == Queues.RETRY:
            return [env for _, env in self._retry[:count]]
        if queue == Queues.DLQ:
            return [env for env, _ in self._dlq[:count]]
        # asyncio.Queue has no peek; its backing deque is read without consuming
        return list(self._dispatch._queue)[:count]

    async def status(self) -> dict[str, Any]:
        info = await super().status()
        info["unacknowledged"] = len(self._unacked)
        return info


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    common = {
        "max_retries": int(config.get("max_retries", MAX_RETRY)),
        "retry_delay": float(config.get("retry_delay_seconds", RETRY_DELAY_SECONDS)),
        "visibility_timeout": float(
            config.get("visibility_timeout_seconds", VISIBILITY_TIMEOUT_SECONDS)
        ),
    }

    if backend == "redis":
        _instance = RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            consumer_group=config.get("consumer_group", "delivery-workers"),
            dlq_maxlen=int(config.get("dlq_maxlen", DLQ_MAXLEN)),
            **common,
        )
    else:
        _instance = InMemoryMessageQueue(**common)

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
