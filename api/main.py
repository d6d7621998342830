"""
FastAPI Application — REST API + WebSocket for scheduled chat delivery.

Provides:
- Scheduler administration (manual tick, start/stop, status, stats)
- Scheduled message creation, lookup and manual trigger
- Queue status (dispatch / retry / dead-letter lanes)
- Socket administration (presence queries, system/private/broadcast pushes)
- WebSocket endpoint for real-time chat
"""
from __future__ import annotations

import json
import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config.settings import get_settings
from database.session import init_db, close_db, ping_db
from database.store_factory import create_store
from job_queue.message_queue import create_message_queue
from job_queue.consumer import DeliveryWorker, RetryPromoter
from models.errors import ScheduleValidationError
from models.schemas import ContentType, RepeatType, ScheduledMessage, new_id, utcnow
from presence.hub import Events, PresenceHub
from presence.store import create_presence_store
from scheduler.poller import SchedulerPoller

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

chat_store = create_store({
    "store_backend": _settings_boot.database.store_backend,
    "url": _settings_boot.database.url,
})

message_queue = create_message_queue({
    "backend": _settings_boot.queue.backend,
    "redis_url": _settings_boot.queue.redis_url,
    "consumer_group": _settings_boot.queue.consumer_group,
    "max_retries": _settings_boot.queue.max_retries,
    "retry_delay_seconds": _settings_boot.queue.retry_delay_seconds,
    "visibility_timeout_seconds": _settings_boot.queue.visibility_timeout_seconds,
    "dlq_maxlen": _settings_boot.queue.dlq_maxlen,
})

presence_hub = PresenceHub(
    chat_store,
    create_presence_store({
        "backend": _settings_boot.presence.backend,
        "redis_url": _settings_boot.presence.redis_url,
        "key_prefix": _settings_boot.presence.key_prefix,
    }),
)

delivery_worker = DeliveryWorker(
    chat_store, message_queue, presence_hub,
    consumer_group=_settings_boot.queue.consumer_group,
    concurrency=_settings_boot.queue.consumer_concurrency,
)
retry_promoter = RetryPromoter(
    message_queue,
    interval_seconds=_settings_boot.queue.promote_interval_seconds,
)
scheduler = SchedulerPoller(
    chat_store, message_queue,
    interval_seconds=_settings_boot.scheduler.interval_seconds,
    batch_size=_settings_boot.scheduler.batch_size,
    release_on_enqueue_failure=_settings_boot.scheduler.release_on_enqueue_failure,
    claim_timeout_seconds=_settings_boot.scheduler.claim_timeout_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    await message_queue.connect()
    await presence_hub.presence.connect()
    await delivery_worker.start_background()
    await retry_promoter.start_background()
    if settings.scheduler.enabled:
        await scheduler.start()

    logger.info("chat_scheduler_started",
                app=settings.app_name,
                store_backend=settings.database.store_backend,
                queue_backend=type(message_queue).__name__,
                presence_backend=type(presence_hub.presence).__name__)
    yield

    await scheduler.stop()
    await delivery_worker.stop()
    await retry_promoter.stop()
    await message_queue.close()
    await presence_hub.presence.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("chat_scheduler_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ChatScheduler API",
    description="Scheduled chat message delivery with real-time fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ScheduledMessageCreateRequest(BaseModel):
    conversation_id: str
    sender_id: str
    content: str = Field(min_length=1, max_length=2000)
    send_at: datetime
    content_type: ContentType = ContentType.TEXT
    repeat_type: RepeatType = RepeatType.NONE
    repeat_interval: Optional[int] = None
    metadata: dict[str, Any] = {}


class SystemMessageRequest(BaseModel):
    room_id: str
    message: str = Field(min_length=1)
    type: str = "info"


class PrivateMessageRequest(BaseModel):
    user_id: str
    message: str = Field(min_length=1)
    type: str = "notification"


class BroadcastRequest(BaseModel):
    message: str = Field(min_length=1)
    type: str = "announcement"


def _scheduled_to_dict(record: ScheduledMessage) -> dict[str, Any]:
    data = record.model_dump(mode="json")
    data["state"] = record.state.value
    return data


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    settings = get_settings()
    database = "memory"
    if settings.database.store_backend == "sql":
        database = "ok" if await ping_db() else "unreachable"
    return {
        "status": "healthy" if database != "unreachable" else "degraded",
        "timestamp": utcnow().isoformat(),
        "database": database,
        "scheduler_running": scheduler.running,
        "worker_running": delivery_worker.running,
        "queue_backend": type(message_queue).__name__,
        "connected_users": len(presence_hub.connected_users()),
    }


# ══════════════════════════════════════════════════════════════
#  SCHEDULER
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/scheduler/run")
async def run_scheduler():
    """Run one scheduler tick now, independent of the timer."""
    result = await scheduler.run_once()
    return {"success": True, "result": result}


@app.post("/api/v1/scheduler/start")
async def start_scheduler():
    started = await scheduler.start()
    return {"success": True, "started": started, "status": scheduler.status()}


@app.post("/api/v1/scheduler/stop")
async def stop_scheduler():
    stopped = await scheduler.stop()
    return {"success": True, "stopped": stopped, "status": scheduler.status()}


@app.get("/api/v1/scheduler/status")
async def scheduler_status():
    return scheduler.status()


@app.get("/api/v1/scheduler/stats")
async def scheduler_stats():
    return await scheduler.stats()


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/status")
async def queue_status():
    status = await message_queue.status()
    status["worker"] = delivery_worker.status()
    return status


# ══════════════════════════════════════════════════════════════
#  SCHEDULED MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/scheduled-messages", status_code=201)
async def create_scheduled_message(req: ScheduledMessageCreateRequest):
    conversation = await chat_store.get_conversation(req.conversation_id)
    if not conversation:
        raise HTTPException(404, "Conversation not found")
    if not conversation.has_participant(req.sender_id):
        raise HTTPException(403, "Sender is not a participant of this conversation")

    record = ScheduledMessage(
        conversation_id=req.conversation_id,
        sender_id=req.sender_id,
        content=req.content,
        content_type=req.content_type,
        send_at=req.send_at,
        repeat_type=req.repeat_type,
        repeat_interval=req.repeat_interval,
        metadata=req.metadata,
    )
    try:
        record = await chat_store.create_scheduled_message(record)
    except ScheduleValidationError as e:
        raise HTTPException(400, str(e))

    logger.info("scheduled_message_created",
                scheduled_message_id=record.id,
                conversation_id=record.conversation_id,
                send_at=record.send_at.isoformat())
    return _scheduled_to_dict(record)


@app.get("/api/v1/scheduled-messages/{scheduled_id}")
async def get_scheduled_message(scheduled_id: str):
    record = await chat_store.get_scheduled_message(scheduled_id)
    if not record:
        raise HTTPException(404, "Scheduled message not found")
    return _scheduled_to_dict(record)


@app.post("/api/v1/scheduled-messages/{scheduled_id}/trigger")
async def trigger_scheduled_message(scheduled_id: str):
    """Queue one scheduled message now, regardless of its send time."""
    result = await scheduler.enqueue_now(scheduled_id)
    status = result["status"]
    if status == "not_found":
        raise HTTPException(404, "Scheduled message not found")
    if status in ("already_sent", "already_queued", "conflict"):
        raise HTTPException(409, f"Scheduled message cannot be triggered: {status}")
    if status == "enqueue_failed":
        raise HTTPException(503, "Queue unavailable")
    return {"success": True, **result}


# ══════════════════════════════════════════════════════════════
#  SOCKET ADMINISTRATION
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/socket/status")
async def socket_status():
    return {"success": True, **(await presence_hub.status())}


@app.get("/api/v1/socket/connected-users")
async def connected_users():
    users = presence_hub.connected_users()
    return {"success": True, "count": len(users), "users": users}


@app.get("/api/v1/socket/users/{user_id}/rooms")
async def user_rooms(user_id: str):
    rooms = await presence_hub.user_rooms(user_id)
    return {"success": True, "userId": user_id, "rooms": rooms}


@app.get("/api/v1/socket/users/{user_id}/online")
async def user_online(user_id: str):
    return {"success": True, "userId": user_id, "isOnline": await presence_hub.is_online(user_id)}


def _push_payload(kind: str, content: str, sub_type_key: str, sub_type: str) -> dict[str, Any]:
    return {
        "id": new_id(),
        "type": kind,
        "content": content,
        sub_type_key: sub_type,
        "timestamp": utcnow().isoformat(),
    }


@app.post("/api/v1/socket/system-message")
async def send_system_message(req: SystemMessageRequest):
    payload = _push_payload("system", req.message, "systemType", req.type)
    await presence_hub.publish_to_room(req.room_id, Events.SYSTEM_MESSAGE, payload)
    return {"success": True, "systemMessage": payload}


@app.post("/api/v1/socket/private-message")
async def send_private_message(req: PrivateMessageRequest):
    payload = _push_payload("private", req.message, "messageType", req.type)
    await presence_hub.publish_to_user(req.user_id, Events.PRIVATE_MESSAGE, payload)
    return {"success": True, "privateMessage": payload}


@app.post("/api/v1/socket/broadcast")
async def broadcast_message(req: BroadcastRequest):
    payload = _push_payload("broadcast", req.message, "messageType", req.type)
    await presence_hub.broadcast_all(Events.BROADCAST_MESSAGE, payload)
    return {"success": True, "broadcastMessage": payload}


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET — Real-time Chat
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket, user_id: str = Query("")):
    """
    Real-time chat via WebSocket.

    Client sends JSON events:
      {"event": "join_room", "data": {"conversationId": "..."}}
      {"event": "leave_room", "data": {"conversationId": "..."}}
      {"event": "send_message", "data": {"conversationId": "...", "content": "hi", "messageType": "text"}}
      {"event": "typing", "data": {"conversationId": "...", "isTyping": true}}
      {"event": "message_received", "data": {"messageId": "...", "conversationId": "..."}}
      {"event": "message_read", "data": {"messageId": "...", "conversationId": "..."}}
      {"event": "heartbeat"}
    """
    await websocket.accept()

    user = await chat_store.get_user(user_id) if user_id else None
    if user is None or not user.is_active:
        await websocket.close(code=4003, reason="Authentication failed")
        return

    await presence_hub.connect(user, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                await presence_hub.publish_to_user(user.id, Events.ERROR, {
                    "message": "Invalid JSON",
                })
                continue
            if not isinstance(event, dict):
                await presence_hub.publish_to_user(user.id, Events.ERROR, {
                    "message": "Event must be a JSON object",
                })
                continue

            await presence_hub.handle_client_event(user.id, event)

    except WebSocketDisconnect:
        await presence_hub.disconnect(user.id, websocket)
    except asyncio.CancelledError:
        await presence_hub.disconnect(user.id, websocket)
        raise
    except Exception as e:
        logger.error("websocket_error", user_id=user.id, error=str(e))
        await presence_hub.disconnect(user.id, websocket)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
