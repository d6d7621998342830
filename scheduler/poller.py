"""
Scheduler Poller — periodic discovery of due scheduled messages.

Runs as a background task inside the FastAPI lifespan and never touches
sockets; its only output is envelopes on the dispatch lane.

Flow:
    DueSource selects pending records with send_at <= now
    → Claim each record (pending → queued) with a conditional update
    → Only the winner of the claim builds the envelope and enqueues it
    → Enqueue failures mark the record failed (or release the claim)

Claims older than claim_timeout_seconds that never reached a terminal
state (process died mid-enqueue, failure bookkeeping lost) are re-enqueued
at the start of every tick. The worker applies envelopes idempotently, so
a duplicate envelope for a claim that was merely slow is harmless.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from database.store_base import BaseChatStore
from job_queue.message_queue import MessageQueue, QueueEnvelope
from models.schemas import PENDING_FLAGS, QUEUED_FLAGS, ScheduledMessage, utcnow

logger = structlog.get_logger()


class DueSource(Protocol):
    """Anything that can list pending scheduled messages due at a point in time."""

    async def due(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        ...


class StoreDueSource:
    """Default due source: the chat store's indexed due query."""

    def __init__(self, store: BaseChatStore):
        self.store = store

    async def due(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        return await self.store.find_due(now, limit=limit)


class SchedulerPoller:
    """
    Polls for due scheduled messages and hands them to the queue.

    Configure cadence and batch size in settings:
        scheduler:
          interval_seconds: 60
          batch_size: 500
          release_on_enqueue_failure: false
          claim_timeout_seconds: 900
    """

    def __init__(
        self,
        store: BaseChatStore,
        queue: MessageQueue,
        source: DueSource = None,
        interval_seconds: float = 60.0,
        batch_size: int = 500,
        release_on_enqueue_failure: bool = False,
        claim_timeout_seconds: float = 900.0,
    ):
        self.store = store
        self.queue = queue
        self.source = source or StoreDueSource(store)
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.release_on_enqueue_failure = release_on_enqueue_failure
        self.claim_timeout_seconds = claim_timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._ticks: set[asyncio.Task] = set()
        self._last_run: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._last_result: Optional[dict[str, int]] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Start the periodic timer. Returns False if it was already running."""
        if self._running:
            return False
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="scheduler_poller")
        logger.info("scheduler_started", interval_s=self.interval_seconds)
        return True

    async def stop(self) -> bool:
        """
        Cancel the periodic timer. A tick already in flight is left to finish.
        Returns False if the scheduler was not running.
        """
        if not self._running:
            return False
        self._running = False
        self._next_run = None
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("scheduler_stopped", ticks_in_flight=len(self._ticks))
        return True

    async def _poll_loop(self) -> None:
        """Timer loop — each tick runs as its own task so stop() never waits on one."""
        while self._running:
            self._next_run = utcnow() + timedelta(seconds=self.interval_seconds)
            await asyncio.sleep(self.interval_seconds)

            tick = asyncio.create_task(self._safe_tick(), name="scheduler_tick")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)

    async def _safe_tick(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("scheduler_tick_error", error=str(e))

    async def run_once(self) -> dict[str, int]:
        """
        Single tick:
        0. Re-enqueue claims older than the claim timeout
        1. Select due pending records
        2. Claim each one (pending → queued); losers of the claim are skipped
        3. Enqueue an envelope for every claimed record

        Returns counts:
            {"found": N, "enqueued": N, "skipped": N, "failed": N, "recovered": N}
        """
        now = utcnow()
        self._last_run = now
        stats = {"found": 0, "enqueued": 0, "skipped": 0, "failed": 0, "recovered": 0}

        stats["recovered"] = await self._recover_stale_claims(now)

        due = await self.source.due(now, self.batch_size)
        stats["found"] = len(due)

        for record in due:
            try:
                claimed = await self.store.conditional_update(
                    record.id, expected=PENDING_FLAGS,
                    fields={"queued": True, "queued_at": utcnow()},
                )
            except Exception as e:
                logger.error("scheduled_claim_error",
                             scheduled_message_id=record.id,
                             error=str(e))
                stats["failed"] += 1
                continue

            if not claimed:
                # Another tick or instance got there first
                stats["skipped"] += 1
                continue

            if await self._enqueue_claimed(record):
                stats["enqueued"] += 1
            else:
                stats["failed"] += 1

        self._last_result = stats
        if stats["found"] > 0 or stats["recovered"] > 0:
            logger.info("scheduler_tick_complete", **stats)
        return stats

    async def _recover_stale_claims(self, now: datetime) -> int:
        """
        Re-enqueue queued records whose claim is older than the timeout.
        Each one is re-claimed keyed on its old queued_at so only one tick
        recovers it.
        """
        cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
        try:
            stale = await self.store.find_stale_claims(cutoff, limit=self.batch_size)
        except Exception as e:
            logger.error("stale_claim_scan_error", error=str(e))
            return 0

        recovered = 0
        for record in stale:
            try:
                reclaimed = await self.store.conditional_update(
                    record.id,
                    expected={**QUEUED_FLAGS, "queued_at": record.queued_at},
                    fields={"queued_at": utcnow()},
                )
            except Exception as e:
                logger.error("stale_claim_update_error",
                             scheduled_message_id=record.id, error=str(e))
                continue
            if not reclaimed:
                continue

            logger.warning("stale_claim_recovered",
                           scheduled_message_id=record.id,
                           claimed_at=record.queued_at.isoformat() if record.queued_at else None)
            if await self._enqueue_claimed(record):
                recovered += 1
        return recovered

    async def _enqueue_claimed(self, record: ScheduledMessage) -> bool:
        try:
            envelope = QueueEnvelope.from_scheduled(record)
            await self.queue.enqueue(envelope)
        except asyncio.CancelledError:
            # Hand the record back so the next tick can pick it up
            await self._release_claim(record.id)
            raise
        except Exception as e:
            logger.error("scheduled_enqueue_failed",
                         scheduled_message_id=record.id,
                         error=str(e))
            await self._handle_enqueue_failure(record.id, str(e))
            return False

        logger.info("scheduled_message_queued",
                    scheduled_message_id=record.id,
                    envelope_id=envelope.envelope_id,
                    conversation_id=record.conversation_id)
        return True

    async def _release_claim(self, scheduled_id: str) -> None:
        try:
            released = await self.store.conditional_update(
                scheduled_id, expected=QUEUED_FLAGS,
                fields={"queued": False, "queued_at": None},
            )
        except Exception as e:
            logger.error("claim_release_error", scheduled_message_id=scheduled_id, error=str(e))
            return
        if released:
            logger.info("claim_released", scheduled_message_id=scheduled_id)

    async def _handle_enqueue_failure(self, scheduled_id: str, error: str) -> None:
        if self.release_on_enqueue_failure:
            fields = {"queued": False, "queued_at": None}
        else:
            fields = {"queued": False, "failed": True, "failed_at": utcnow(),
                      "error_message": f"Enqueue failed: {error}"}
        try:
            await self.store.conditional_update(scheduled_id, expected=QUEUED_FLAGS, fields=fields)
        except Exception as e:
            # The claim stays queued; stale-claim recovery re-enqueues it later
            logger.error("enqueue_failure_record_error",
                         scheduled_message_id=scheduled_id,
                         error=str(e))

    async def enqueue_now(self, scheduled_id: str) -> dict[str, Any]:
        """
        Administrative trigger for one record regardless of its send time.
        Pending and failed records are (re)queued; sent and queued ones are refused.
        """
        record = await self.store.get_scheduled_message(scheduled_id)
        if record is None:
            return {"status": "not_found", "scheduled_message_id": scheduled_id}
        if record.sent:
            return {"status": "already_sent", "scheduled_message_id": scheduled_id}
        if record.queued:
            return {"status": "already_queued", "scheduled_message_id": scheduled_id}

        if record.failed:
            expected = {"queued": False, "sent": False, "failed": True}
            fields = {"queued": True, "queued_at": utcnow(), "failed": False,
                      "failed_at": None, "error_message": None}
        else:
            expected = PENDING_FLAGS
            fields = {"queued": True, "queued_at": utcnow()}

        if not await self.store.conditional_update(scheduled_id, expected=expected, fields=fields):
            return {"status": "conflict", "scheduled_message_id": scheduled_id}

        if not await self._enqueue_claimed(record):
            return {"status": "enqueue_failed", "scheduled_message_id": scheduled_id}
        return {"status": "queued", "scheduled_message_id": scheduled_id}

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "claim_timeout_seconds": self.claim_timeout_seconds,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "next_run": self._next_run.isoformat() if self._next_run else None,
            "last_result": self._last_result,
            "ticks_in_flight": len(self._ticks),
        }

    async def stats(self) -> dict[str, int]:
        return await self.store.scheduled_stats()
