"""
Presence Hub — WebSocket connection registry and room fan-out.

Provides:
- Connection lifecycle with registration and superseding
- Room join/leave with participation re-validated against the conversation store
- Typing indicators, cleared on leave and disconnect
- Live message send and read/received receipts
- Fire-and-forget publish to a room, a user, or everyone
- Client event routing (join_room, leave_room, send_message, typing, ...)

Wire format (both directions): {"event": <name>, "data": {...}}
"""
from __future__ import annotations

import json
import time
import asyncio
import structlog
from typing import Any, Iterable, Optional

from database.store_base import BaseChatStore
from models.errors import (
    ChatDeliveryError, RoomAuthorizationError, RoomNotFoundError,
)
from models.schemas import (
    Conversation, ContentType, LastMessage, MessageStatus, PersistedMessage,
    User, utcnow,
)
from presence.store import PresenceStore, InMemoryPresenceStore

logger = structlog.get_logger()


class Events:
    CONNECTION = "connection"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    ROOM_JOINED = "room_joined"
    USER_JOINED_ROOM = "user_joined_room"
    USER_LEFT_ROOM = "user_left_room"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    USER_TYPING = "user_typing"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_READ = "message_read"
    SYSTEM_MESSAGE = "system_message"
    PRIVATE_MESSAGE = "private_message"
    BROADCAST_MESSAGE = "broadcast_message"
    ERROR = "error"


# ══════════════════════════════════════════════════════════════
#  CONNECTION MODEL
# ══════════════════════════════════════════════════════════════

class ConnectionState:
    """Tracks a single WebSocket connection."""

    def __init__(self, user: User, ws: Any):
        self.user = user
        self.ws = ws
        self.connected_at = utcnow()
        self.last_heartbeat = time.monotonic()
        self.message_count: int = 0

    @property
    def user_id(self) -> str:
        return self.user.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user.id,
            "username": self.user.username,
            "role": self.user.role,
            "connectedAt": self.connected_at.isoformat(),
        }


# ══════════════════════════════════════════════════════════════
#  PRESENCE HUB
# ══════════════════════════════════════════════════════════════

class PresenceHub:
    """
    Real-time chat routing over WebSockets.

    Connection handles are process-local; room membership and online
    state go through the presence store. Every registry mutation
    (connect, disconnect, join, leave, typing) holds one asyncio.Lock;
    socket pushes happen after it is released.
    """

    def __init__(self, store: BaseChatStore, presence: PresenceStore = None):
        self.store = store
        self.presence = presence or InMemoryPresenceStore()
        self._connections: dict[str, ConnectionState] = {}
        self._typing: dict[str, set[str]] = {}      # room_id → user ids typing
        self._lock = asyncio.Lock()

    # ── Connection management ─────────────────────────────────

    async def connect(self, user: User, ws: Any) -> None:
        """
        Register a WebSocket connection for a user.
        Supersedes any existing connection.
        """
        async with self._lock:
            existing = self._connections.get(user.id)
            self._connections[user.id] = ConnectionState(user, ws)
            await self.presence.set_online(user.id)

        if existing and existing.ws is not ws:
            try:
                await existing.ws.close()
            except Exception as e:
                logger.debug("superseded_close_failed", user_id=user.id, error=str(e))
            logger.info("connection_superseded", user_id=user.id)

        logger.info("connection_registered", user_id=user.id, username=user.username)

        await self._send(ws, Events.CONNECTION, {
            "success": True,
            "message": "Connected",
            "user": {"userId": user.id, "username": user.username, "role": user.role},
        })
        await self.broadcast_all(Events.USER_ONLINE, {
            "userId": user.id,
            "username": user.username,
            "timestamp": utcnow().isoformat(),
        }, exclude={user.id})

    async def disconnect(self, user_id: str, ws: Any = None) -> bool:
        """
        Tear down a user's presence: connection, every room membership,
        every typing set. When ws is given and a newer connection has
        superseded it, nothing is torn down.
        """
        async with self._lock:
            conn = self._connections.get(user_id)
            if conn is None or (ws is not None and conn.ws is not ws):
                return False
            del self._connections[user_id]

            rooms = await self.presence.clear_user(user_id)
            typing_rooms = self._clear_typing(user_id)
            await self.presence.set_offline(user_id)

        for room_id in sorted(typing_rooms):
            await self.publish_to_room(room_id, Events.USER_TYPING, {
                "userId": user_id,
                "username": conn.user.username,
                "conversationId": room_id,
                "isTyping": False,
            })

        await self.broadcast_all(Events.USER_OFFLINE, {
            "userId": user_id,
            "username": conn.user.username,
            "timestamp": utcnow().isoformat(),
        })
        logger.info("connection_removed", user_id=user_id, rooms_left=len(rooms))
        return True

    def _clear_typing(self, user_id: str, rooms: Iterable[str] = None) -> set[str]:
        """Remove user from typing sets (all, or only the given rooms). Caller holds the lock."""
        cleared = set()
        for room_id in list(rooms if rooms is not None else self._typing.keys()):
            typers = self._typing.get(room_id)
            if typers and user_id in typers:
                typers.discard(user_id)
                cleared.add(room_id)
            if typers is not None and not typers:
                del self._typing[room_id]
        return cleared

    # ── Rooms ─────────────────────────────────────────────────

    async def _authorize(self, user_id: str, conversation_id: str) -> Conversation:
        """Participation is always checked against the durable conversation record."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise RoomNotFoundError(conversation_id)
        if not conversation.has_participant(user_id):
            logger.warning("room_access_denied", user_id=user_id,
                           conversation_id=conversation_id)
            raise RoomAuthorizationError(user_id, conversation_id)
        return conversation

    async def join_room(self, user_id: str, conversation_id: str) -> bool:
        """Admit a connected participant to a conversation room."""
        await self._authorize(user_id, conversation_id)

        async with self._lock:
            conn = self._connections.get(user_id)
            if conn is None:
                return False
            await self.presence.join(conversation_id, user_id)

        logger.info("room_joined", user_id=user_id, conversation_id=conversation_id)

        await self.publish_to_room(conversation_id, Events.USER_JOINED_ROOM, {
            "userId": user_id,
            "username": conn.user.username,
            "conversationId": conversation_id,
            "timestamp": utcnow().isoformat(),
        }, exclude={user_id})
        await self._send(conn.ws, Events.ROOM_JOINED, {
            "success": True,
            "conversationId": conversation_id,
            "message": "Joined room",
        })
        return True

    async def leave_room(self, user_id: str, conversation_id: str) -> bool:
        async with self._lock:
            conn = self._connections.get(user_id)
            was_member = await self.presence.leave(conversation_id, user_id)
            was_typing = self._clear_typing(user_id, [conversation_id])

        if not was_member:
            return False

        username = conn.user.username if conn else ""
        if was_typing:
            await self.publish_to_room(conversation_id, Events.USER_TYPING, {
                "userId": user_id,
                "username": username,
                "conversationId": conversation_id,
                "isTyping": False,
            })
        await self.publish_to_room(conversation_id, Events.USER_LEFT_ROOM, {
            "userId": user_id,
            "username": username,
            "conversationId": conversation_id,
            "timestamp": utcnow().isoformat(),
        })
        logger.info("room_left", user_id=user_id, conversation_id=conversation_id)
        return True

    async def set_typing(self, user_id: str, conversation_id: str, is_typing: bool = True) -> None:
        async with self._lock:
            conn = self._connections.get(user_id)
            if conn is None:
                return
            if conversation_id not in await self.presence.rooms_of(user_id):
                raise RoomAuthorizationError(user_id, conversation_id)
            if is_typing:
                self._typing.setdefault(conversation_id, set()).add(user_id)
            else:
                self._clear_typing(user_id, [conversation_id])

        await self.publish_to_room(conversation_id, Events.USER_TYPING, {
            "userId": user_id,
            "username": conn.user.username,
            "conversationId": conversation_id,
            "isTyping": is_typing,
        }, exclude={user_id})

    # ── Messages ──────────────────────────────────────────────

    async def send_message(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        content_type: str = ContentType.TEXT.value,
    ) -> PersistedMessage:
        """Live send: authorize, persist, update the summary, fan out."""
        if not content:
            raise ChatDeliveryError("Message content is required")
        try:
            message_type = ContentType(content_type)
        except ValueError:
            raise ChatDeliveryError(f"Unknown message type '{content_type}'")

        conversation = await self._authorize(user_id, conversation_id)

        message = await self.store.create_message(PersistedMessage(
            conversation_id=conversation.id,
            sender_id=user_id,
            content=content,
            content_type=message_type,
            metadata={"client_info": "websocket"},
        ))
        await self.store.update_last_message(
            conversation.id, LastMessage.preview(content, user_id, message.created_at),
        )

        sender = await self.store.get_user(user_id)
        payload = message.to_event(sender)
        await self.publish_to_room(conversation.id, Events.NEW_MESSAGE, payload)
        await self.publish_to_user(user_id, Events.MESSAGE_SENT, {
            "success": True,
            "messageId": message.id,
            "timestamp": payload["timestamp"],
        })
        logger.info("message_sent", user_id=user_id, conversation_id=conversation.id,
                    message_id=message.id)
        return message

    async def mark_message(
        self,
        user_id: str,
        message_id: str,
        conversation_id: str = "",
        status: MessageStatus = MessageStatus.READ,
    ) -> bool:
        """Record a read/received receipt and tell the rest of the room."""
        message = await self.store.get_message(message_id)
        if message is None:
            return False
        # The stored message decides the room, not the client's claim
        conversation_id = message.conversation_id
        await self._authorize(user_id, conversation_id)

        await self.store.update_message_status(message_id, status, read_by=user_id)

        conn = self._connections.get(user_id)
        event = Events.MESSAGE_READ if status == MessageStatus.READ else Events.MESSAGE_RECEIVED
        await self.publish_to_room(conversation_id, event, {
            "messageId": message_id,
            "conversationId": conversation_id,
            "userId": user_id,
            "username": conn.user.username if conn else None,
            "status": status.value,
            "timestamp": utcnow().isoformat(),
        }, exclude={user_id})
        return True

    # ── Publishing ────────────────────────────────────────────

    async def _send(self, ws: Any, event: str, data: dict[str, Any]) -> bool:
        try:
            await ws.send_text(json.dumps({"event": event, "data": data}, default=str))
            return True
        except Exception as e:
            logger.warning("socket_push_failed", push_event=event, error=str(e))
            return False

    async def publish_to_room(
        self, room_id: str, event: str, data: dict[str, Any], exclude: set[str] = None,
    ) -> int:
        """Push to every locally connected member of a room. Returns sockets reached."""
        members = await self.presence.list_members(room_id)
        return await self._push(members, event, data, exclude)

    async def publish_to_user(self, user_id: str, event: str, data: dict[str, Any]) -> bool:
        conn = self._connections.get(user_id)
        if conn is None:
            return False
        conn.message_count += 1
        return await self._send(conn.ws, event, data)

    async def broadcast_all(
        self, event: str, data: dict[str, Any], exclude: set[str] = None,
    ) -> int:
        return await self._push(list(self._connections.keys()), event, data, exclude)

    async def _push(
        self, user_ids: Iterable[str], event: str, data: dict[str, Any], exclude: set[str] = None,
    ) -> int:
        exclude = exclude or set()
        targets = []
        for uid in user_ids:
            conn = self._connections.get(uid)
            if conn is not None and uid not in exclude:
                targets.append(conn)
        results = await asyncio.gather(*(self._send(c.ws, event, data) for c in targets))
        return sum(1 for ok in results if ok)

    # ── Client event handling ─────────────────────────────────

    async def handle_client_event(self, user_id: str, message: dict[str, Any]) -> None:
        """
        Route an event from a connected client. Failures are reported back
        to that client as an `error` event and never raised.
        """
        event = message.get("event", "")
        data = message.get("data") or {}
        conversation_id = data.get("conversationId") or data.get("conversation_id", "")

        try:
            if event == "heartbeat":
                conn = self._connections.get(user_id)
                if conn:
                    conn.last_heartbeat = time.monotonic()

            elif event == "join_room":
                if not await self.join_room(user_id, conversation_id):
                    raise ChatDeliveryError("Not connected")

            elif event == "leave_room":
                await self.leave_room(user_id, conversation_id)

            elif event == "send_message":
                await self.send_message(
                    user_id, conversation_id,
                    data.get("content", ""),
                    data.get("messageType", ContentType.TEXT.value),
                )

            elif event == "typing":
                await self.set_typing(user_id, conversation_id, bool(data.get("isTyping", True)))

            elif event in (Events.MESSAGE_RECEIVED, Events.MESSAGE_READ):
                status = MessageStatus.READ if event == Events.MESSAGE_READ else MessageStatus.DELIVERED
                await self.mark_message(
                    user_id, data.get("messageId", ""), conversation_id, status,
                )

            else:
                raise ChatDeliveryError(f"Unknown event '{event}'")

        except ChatDeliveryError as e:
            await self.publish_to_user(user_id, Events.ERROR, {"message": str(e), "event": event})
        except Exception as e:
            logger.error("client_event_error", user_id=user_id, client_event=event,
                         error=str(e), exc_info=True)
            await self.publish_to_user(user_id, Events.ERROR, {
                "message": "Internal error", "event": event,
            })

    # ── Queries ───────────────────────────────────────────────

    def connected_users(self) -> list[dict[str, Any]]:
        return [conn.to_dict() for conn in self._connections.values()]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    async def is_online(self, user_id: str) -> bool:
        return await self.presence.is_online(user_id)

    async def user_rooms(self, user_id: str) -> list[str]:
        return sorted(await self.presence.rooms_of(user_id))

    def typing_in(self, room_id: str) -> set[str]:
        return set(self._typing.get(room_id, set()))

    async def status(self) -> dict[str, Any]:
        return {
            "connected_users": len(self._connections),
            "online_users": len(await self.presence.online_users()),
            "typing_rooms": len(self._typing),
            "presence_backend": type(self.presence).__name__,
        }
