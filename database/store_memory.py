"""
InMemoryChatStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlChatStore
  - Conditional updates are atomic: compare and set never suspend
    between each other on a single event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseChatStore
from models.schemas import (
    Conversation, LastMessage, MessageStatus, PersistedMessage,
    ScheduledMessage, User, utcnow,
)

logger = structlog.get_logger()


class InMemoryChatStore(BaseChatStore):
    """
    Full-featured in-memory store with the same interface as SqlChatStore.
    Returns copies so callers never mutate stored state in place.
    """

    def __init__(self):
        self._users: dict[str, User] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, PersistedMessage] = {}
        self._conversation_messages: dict[str, list[str]] = defaultdict(list)
        self._scheduled: dict[str, ScheduledMessage] = {}

        # Indexes
        self._origin_index: dict[str, str] = {}         # origin_id → message_id
        logger.info("inmemory_store_initialized")

    # ── Users ─────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def upsert_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy(deep=True)
        return user

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy(deep=True) if conv else None

    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def update_last_message(self, conversation_id: str, last_message: LastMessage) -> bool:
        conv = self._conversations.get(conversation_id)
        if not conv:
            return False
        conv.last_message = last_message.model_copy()
        conv.updated_at = utcnow()
        return True

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, message: PersistedMessage) -> PersistedMessage:
        stored = message.model_copy(deep=True)
        self._messages[stored.id] = stored
        self._conversation_messages[stored.conversation_id].append(stored.id)
        if stored.origin_id:
            self._origin_index[stored.origin_id] = stored.id
        return message

    async def upsert_message_by_origin(
        self, message: PersistedMessage,
    ) -> tuple[PersistedMessage, bool]:
        existing_id = self._origin_index.get(message.origin_id) if message.origin_id else None
        if existing_id:
            return self._messages[existing_id].model_copy(deep=True), False
        return await self.create_message(message), True

    async def get_message(self, message_id: str) -> Optional[PersistedMessage]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def get_message_by_origin(self, origin_id: str) -> Optional[PersistedMessage]:
        message_id = self._origin_index.get(origin_id)
        return await self.get_message(message_id) if message_id else None

    async def update_message_status(
        self, message_id: str, status: MessageStatus, read_by: str = None,
    ) -> bool:
        msg = self._messages.get(message_id)
        if not msg:
            return False
        msg.status = status
        if status == MessageStatus.READ:
            msg.read_at = utcnow()
            msg.read_by = read_by
        return True

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 50,
    ) -> list[PersistedMessage]:
        ids = self._conversation_messages.get(conversation_id, [])
        # Last N messages in chronological order
        return [self._messages[i].model_copy(deep=True) for i in ids[-limit:]]

    # ── Scheduled messages ────────────────────────────────

    async def _insert_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        self._scheduled[message.id] = message.model_copy(deep=True)
        return message

    async def get_scheduled_message(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        record = self._scheduled.get(scheduled_id)
        return record.model_copy(deep=True) if record else None

    async def find_due(self, now: datetime, limit: int = 500) -> list[ScheduledMessage]:
        due = [r for r in self._scheduled.values() if r.is_due(now)]
        due.sort(key=lambda r: r.send_at)
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def find_stale_claims(
        self, claimed_before: datetime, limit: int = 500,
    ) -> list[ScheduledMessage]:
        stale = [
            r for r in self._scheduled.values()
            if r.queued and not (r.sent or r.failed)
            and (r.queued_at is None or r.queued_at <= claimed_before)
        ]
        stale.sort(key=lambda r: r.queued_at or r.send_at)
        return [r.model_copy(deep=True) for r in stale[:limit]]

    async def conditional_update(
        self, scheduled_id: str, expected: dict[str, Any], fields: dict[str, Any],
    ) -> bool:
        record = self._scheduled.get(scheduled_id)
        if not record:
            return False
        if any(getattr(record, k) != v for k, v in expected.items()):
            return False
        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        return True

    async def scheduled_stats(self, now: datetime = None) -> dict[str, int]:
        now = now or utcnow()
        records = list(self._scheduled.values())
        return {
            "total": len(records),
            "pending": sum(1 for r in records if r.is_due(now)),
            "queued": sum(1 for r in records if r.queued),
            "sent": sum(1 for r in records if r.sent),
            "failed": sum(1 for r in records if r.failed),
        }

    async def delete_scheduled_message(self, scheduled_id: str) -> bool:
        return self._scheduled.pop(scheduled_id, None) is not None

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "users": len(self._users),
            "conversations": len(self._conversations),
            "messages": len(self._messages),
            "scheduled_messages": len(self._scheduled),
        }
