"""
Abstract Chat Store — Interface for all storage backends.

Implementations:
  - SqlChatStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryChatStore (dict-based, single-process, no persistence)

The scheduler, delivery worker and presence hub only talk to this
interface. Every lifecycle-flag change on a scheduled message goes through
conditional_update(), a single compare-and-set keyed by record id.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.errors import ScheduleValidationError
from models.schemas import (
    Conversation, LastMessage, MessageStatus, PersistedMessage,
    ScheduledMessage, User, utcnow,
)


class BaseChatStore(ABC):
    """Interface that all chat store backends must implement."""

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def update_last_message(self, conversation_id: str, last_message: LastMessage) -> bool:
        """Set the cached last-message pointer and bump updated_at."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message(self, message: PersistedMessage) -> PersistedMessage:
        ...

    @abstractmethod
    async def upsert_message_by_origin(
        self, message: PersistedMessage,
    ) -> tuple[PersistedMessage, bool]:
        """
        Insert the message unless one with the same origin_id exists.
        Returns (stored message, created).
        """
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[PersistedMessage]:
        ...

    @abstractmethod
    async def get_message_by_origin(self, origin_id: str) -> Optional[PersistedMessage]:
        ...

    @abstractmethod
    async def update_message_status(
        self, message_id: str, status: MessageStatus, read_by: str = None,
    ) -> bool:
        ...

    @abstractmethod
    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 50,
    ) -> list[PersistedMessage]:
        ...

    # ── Scheduled messages ────────────────────────────────────

    async def create_scheduled_message(
        self, message: ScheduledMessage, now: datetime = None,
    ) -> ScheduledMessage:
        """Persist a new scheduled message. The send time must be in the future."""
        now = now or utcnow()
        if message.send_at <= now:
            raise ScheduleValidationError("Send time must be in the future")
        if message.queued or message.sent or message.failed:
            raise ScheduleValidationError("New scheduled messages must start pending")
        return await self._insert_scheduled_message(message)

    @abstractmethod
    async def _insert_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def get_scheduled_message(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def find_due(self, now: datetime, limit: int = 500) -> list[ScheduledMessage]:
        """Pending records with send_at <= now, oldest first."""
        ...

    @abstractmethod
    async def find_stale_claims(
        self, claimed_before: datetime, limit: int = 500,
    ) -> list[ScheduledMessage]:
        """Queued, non-terminal records whose queued_at is at or before the cutoff."""
        ...

    @abstractmethod
    async def conditional_update(
        self, scheduled_id: str, expected: dict[str, Any], fields: dict[str, Any],
    ) -> bool:
        """
        Apply `fields` only if every key in `expected` currently matches.
        Returns True if the record was updated.
        """
        ...

    @abstractmethod
    async def scheduled_stats(self, now: datetime = None) -> dict[str, int]:
        """Counts: total, pending (due), queued, sent, failed."""
        ...

    @abstractmethod
    async def delete_scheduled_message(self, scheduled_id: str) -> bool:
        ...
