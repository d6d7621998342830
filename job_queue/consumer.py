"""
Delivery Worker — Pulls envelopes from the queue and turns them into chat messages.

Runs as one or more async tasks inside the application process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams guarantees each envelope is delivered to exactly one consumer.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │  Scheduler   │──pub──▶│ dispatch lane    │──────▶│  Delivery  │
  │  (poller)    │       │ (Redis Stream)   │       │  Worker(s) │
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                                          │
                         ┌─────────────────┐              │
                         │ retry lane      │◀── nack ─────┤
                         │ (sorted set)    │              │
                         └────────┬────────┘              │
                                  │ promote               │
                                  ▼                       │
                         ┌─────────────────┐              │
                         │ dispatch lane    │              │
                         └─────────────────┘              │
                                                          │
                         ┌─────────────────┐              │
                         │  DLQ            │◀── exhaust ──┘
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from database.store_base import BaseChatStore
from job_queue.message_queue import (
    Delivery, MessageQueue, QueueEnvelope,
    get_message_queue,
)
from models.errors import NonRetriableDeliveryError
from models.schemas import (
    ContentType, LastMessage, PersistedMessage, QUEUED_FLAGS,
    ScheduledMessage, ScheduledMessageState, utcnow,
)

logger = structlog.get_logger()


class DeliveryOutcome:
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeliveryWorker:
    """
    Consumes envelopes from the dispatch lane and delivers them.

    Usage:
        worker = DeliveryWorker(store, queue, hub)
        await worker.start()               # blocks, runs forever
        await worker.start_background()    # returns immediately, runs as tasks
        await worker.stop()
    """

    def __init__(
        self,
        store: BaseChatStore,
        queue: MessageQueue = None,
        hub=None,  # type: presence.hub.PresenceHub; optional so the worker runs headless
        consumer_group: str = "delivery-workers",
        consumer_name: str = "",
        concurrency: int = 1,
    ):
        self.store = store
        self.queue = queue or get_message_queue()
        self.hub = hub
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or "delivery-worker"
        self.concurrency = max(1, concurrency)
        self._tasks: list[asyncio.Task] = []
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._running = False
        self._stats = {"sent": 0, "retried": 0, "failed": 0, "skipped": 0}
        self.queue.set_dead_letter_handler(self._on_dead_letter)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, index: int = 0):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("delivery_worker_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)

        await self.queue.consume(
            handler=self.handle,
            consumer_group=self.consumer_group,
            consumer_name=f"{self.consumer_name}-{index}",
        )

    async def start_background(self) -> list[asyncio.Task]:
        """Start one consumer loop per concurrency slot. Returns the task handles."""
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self.start(index)))
        return list(self._tasks)

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.queue.stop_consuming()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("delivery_worker_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "consumer_group": self.consumer_group,
            "concurrency": self.concurrency,
            "stats": dict(self._stats),
        }

    async def handle(self, delivery: Delivery) -> str:
        """
        Process a single envelope.

        Flow:
        0. Load the scheduled record; skip (ack) if missing, terminal or unclaimed
        1. Conversation must exist, otherwise fail without retry
        2. Persist the message keyed by origin id (idempotent)
        3. Update the conversation's last-message summary
        4. Mark the record sent
        5. Publish new_message to the conversation room
        6. Ack
        Any other failure is nacked; once retries run out the record is marked failed.
        """
        async with self._semaphore:
            envelope = delivery.envelope
            logger.info("processing_envelope",
                        envelope_id=envelope.envelope_id,
                        scheduled_message_id=envelope.scheduled_message_id,
                        conversation_id=envelope.conversation_id,
                        retry_count=envelope.retry_count)

            try:
                record = await self.store.get_scheduled_message(envelope.scheduled_message_id)
            except Exception as e:
                return await self._retry_or_fail(delivery, e)

            if record is None:
                logger.error("scheduled_message_not_found",
                             scheduled_message_id=envelope.scheduled_message_id,
                             envelope_id=envelope.envelope_id)
                return await self._skip(delivery)

            if record.is_terminal:
                # Redelivery after a completed attempt
                logger.info("scheduled_message_already_terminal",
                            scheduled_message_id=record.id,
                            state=record.state.value)
                return await self._skip(delivery)

            if record.state != ScheduledMessageState.QUEUED:
                logger.warning("scheduled_message_not_claimed",
                               scheduled_message_id=record.id,
                               state=record.state.value)
                return await self._skip(delivery)

            try:
                await self._deliver(record, envelope)
            except NonRetriableDeliveryError as e:
                logger.warning("delivery_not_retriable",
                               scheduled_message_id=record.id,
                               error=str(e))
                await self._mark_failed(record.id, str(e))
                await self.queue.ack(delivery)
                self._stats["failed"] += 1
                return DeliveryOutcome.FAILED
            except Exception as e:
                return await self._retry_or_fail(delivery, e)

            await self.queue.ack(delivery)
            self._stats["sent"] += 1
            return DeliveryOutcome.SENT

    async def _deliver(self, record: ScheduledMessage, envelope: QueueEnvelope):
        conversation = await self.store.get_conversation(envelope.conversation_id)
        if conversation is None:
            raise NonRetriableDeliveryError(
                f"Conversation {envelope.conversation_id} not found"
            )

        message, created = await self.store.upsert_message_by_origin(PersistedMessage(
            conversation_id=envelope.conversation_id,
            sender_id=envelope.sender_id,
            content=envelope.content,
            content_type=ContentType(envelope.content_type),
            origin_id=envelope.scheduled_message_id,
            metadata={
                "client_info": "scheduled",
                "scheduled_message_id": envelope.scheduled_message_id,
                "envelope_id": envelope.envelope_id,
            },
        ))
        if not created:
            logger.info("message_already_persisted",
                        scheduled_message_id=record.id,
                        message_id=message.id)

        await self.store.update_last_message(
            conversation.id,
            LastMessage.preview(message.content, message.sender_id, message.created_at),
        )

        marked = await self.store.conditional_update(
            record.id,
            expected=QUEUED_FLAGS,
            fields={"sent": True, "sent_at": utcnow(), "message_id": message.id,
                    "queued": False},
        )
        if not marked:
            logger.warning("scheduled_message_state_changed",
                           scheduled_message_id=record.id,
                           message_id=message.id)
            return

        logger.info("scheduled_message_sent",
                    scheduled_message_id=record.id,
                    message_id=message.id,
                    conversation_id=conversation.id)

        if self.hub is not None:
            try:
                sender = await self.store.get_user(message.sender_id)
                await self.hub.publish_to_room(
                    conversation.id, "new_message", message.to_event(sender),
                )
            except Exception as e:
                # The message is durable; clients pick it up on next history fetch
                logger.error("new_message_publish_error",
                             message_id=message.id,
                             error=str(e))

    async def _retry_or_fail(self, delivery: Delivery, error: Exception) -> str:
        envelope = delivery.envelope
        logger.error("envelope_processing_error",
                     envelope_id=envelope.envelope_id,
                     scheduled_message_id=envelope.scheduled_message_id,
                     retry_count=envelope.retry_count,
                     error=str(error))

        if await self.queue.nack(delivery, str(error)):
            self._stats["retried"] += 1
            return DeliveryOutcome.RETRYING

        await self._mark_failed(envelope.scheduled_message_id, str(error))
        self._stats["failed"] += 1
        return DeliveryOutcome.FAILED

    async def _skip(self, delivery: Delivery) -> str:
        await self.queue.ack(delivery)
        self._stats["skipped"] += 1
        return DeliveryOutcome.SKIPPED

    async def _mark_failed(self, scheduled_id: str, error: str) -> bool:
        marked = await self.store.conditional_update(
            scheduled_id,
            expected=QUEUED_FLAGS,
            fields={"failed": True, "failed_at": utcnow(), "error_message": error,
                    "queued": False},
        )
        if marked:
            logger.warning("scheduled_message_failed",
                           scheduled_message_id=scheduled_id,
                           error=error)
        return marked

    async def _on_dead_letter(self, envelope: QueueEnvelope, error: str):
        """Reclaimed deliveries that ran out of retries never reach handle()."""
        await self._mark_failed(envelope.scheduled_message_id, error)
        self._stats["failed"] += 1


# ──────────────────────────────────────────────────────────────
#  Retry Promoter
# ──────────────────────────────────────────────────────────────

class RetryPromoter:
    """
    Background task that periodically moves cooled-down envelopes from
    the retry lane to the dispatch lane, and reclaims deliveries whose
    visibility timeout passed without an ack.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 1.0):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> dict[str, int]:
        promoted = await self.queue.promote_retries()
        reclaimed = await self.queue.reclaim_expired()
        return {"promoted": promoted, "reclaimed": reclaimed}

    async def _run(self):
        logger.info("retry_promoter_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
