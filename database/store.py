"""
SqlChatStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Lifecycle flags are only ever changed with a single
UPDATE ... WHERE id = :id AND <expected flags> statement whose rowcount
tells the caller whether it won. Idempotent message creation relies on the
unique index on messages.origin_id.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update, delete, and_, or_, func, case
from sqlalchemy.exc import IntegrityError

from database.models import (
    UserRow, ConversationRow, MessageRow, ScheduledMessageRow,
)
from database.session import get_session
from database.store_base import BaseChatStore
from models.schemas import (
    Conversation, LastMessage, MessageStatus, PersistedMessage,
    ScheduledMessage, User, ensure_utc, utcnow,
)

logger = structlog.get_logger()

_SCHEDULED_COLUMNS = {c.key for c in ScheduledMessageRow.__mapper__.column_attrs}


class SqlChatStore(BaseChatStore):
    """
    Persistent chat store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Users ──────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        async with get_session() as db:
            row = await db.get(UserRow, user_id)
            return self._row_to_user(row) if row else None

    async def upsert_user(self, user: User) -> User:
        async with get_session() as db:
            row = await db.get(UserRow, user.id)
            if row is None:
                row = UserRow(id=user.id)
                db.add(row)
            row.username = user.username
            row.first_name = user.first_name
            row.last_name = user.last_name
            row.display_name = user.display_name
            row.role = user.role
            row.is_active = user.is_active
            return user

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation.id)
            if row is None:
                row = ConversationRow(id=conversation.id, created_at=conversation.created_at)
                db.add(row)
            row.name = conversation.name
            row.type = conversation.type.value
            row.participants = list(conversation.participants)
            row.creator_id = conversation.creator_id
            row.is_active = conversation.is_active
            row.updated_at = conversation.updated_at
            if conversation.last_message:
                row.last_message_content = conversation.last_message.content
                row.last_message_sender = conversation.last_message.sender_id
                row.last_message_at = conversation.last_message.timestamp
            return conversation

    async def update_last_message(self, conversation_id: str, last_message: LastMessage) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(
                    last_message_content=last_message.content,
                    last_message_sender=last_message.sender_id,
                    last_message_at=last_message.timestamp,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    # ── Messages ───────────────────────────────────────────

    async def create_message(self, message: PersistedMessage) -> PersistedMessage:
        async with get_session() as db:
            db.add(self._message_to_row(message))
        return message

    async def upsert_message_by_origin(
        self, message: PersistedMessage,
    ) -> tuple[PersistedMessage, bool]:
        if message.origin_id:
            existing = await self.get_message_by_origin(message.origin_id)
            if existing:
                return existing, False
        try:
            await self.create_message(message)
            return message, True
        except IntegrityError:
            # Lost the race against another worker holding the same envelope
            existing = await self.get_message_by_origin(message.origin_id)
            if existing is None:
                raise
            logger.info("message_origin_conflict", origin_id=message.origin_id)
            return existing, False

    async def get_message(self, message_id: str) -> Optional[PersistedMessage]:
        async with get_session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_message_by_origin(self, origin_id: str) -> Optional[PersistedMessage]:
        async with get_session() as db:
            result = await db.execute(
                select(MessageRow).where(MessageRow.origin_id == origin_id)
            )
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def update_message_status(
        self, message_id: str, status: MessageStatus, read_by: str = None,
    ) -> bool:
        values: dict[str, Any] = {"status": status.value}
        if status == MessageStatus.READ:
            values.update(read_at=utcnow(), read_by=read_by)
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow).where(MessageRow.id == message_id).values(**values)
            )
            return result.rowcount == 1

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 50,
    ) -> list[PersistedMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    # ── Scheduled messages ─────────────────────────────────

    async def _insert_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with get_session() as db:
            db.add(ScheduledMessageRow(
                id=message.id,
                conversation_id=message.conversation_id,
                sender_id=message.sender_id,
                content=message.content,
                content_type=message.content_type.value,
                send_at=message.send_at,
                repeat_type=message.repeat_type.value,
                repeat_interval=message.repeat_interval,
                queued=False, sent=False, failed=False,
                metadata_=message.metadata,
                created_at=message.created_at,
                updated_at=message.updated_at,
            ))
        return message

    async def get_scheduled_message(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        async with get_session() as db:
            row = await db.get(ScheduledMessageRow, scheduled_id)
            return self._row_to_scheduled(row) if row else None

    async def find_due(self, now: datetime, limit: int = 500) -> list[ScheduledMessage]:
        async with get_session() as db:
            stmt = (
                select(ScheduledMessageRow)
                .where(and_(
                    ScheduledMessageRow.send_at <= now,
                    ScheduledMessageRow.queued.is_(False),
                    ScheduledMessageRow.sent.is_(False),
                    ScheduledMessageRow.failed.is_(False),
                ))
                .order_by(ScheduledMessageRow.send_at)
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_scheduled(r) for r in rows]

    async def find_stale_claims(
        self, claimed_before: datetime, limit: int = 500,
    ) -> list[ScheduledMessage]:
        row = ScheduledMessageRow
        async with get_session() as db:
            stmt = (
                select(row)
                .where(and_(
                    row.queued.is_(True),
                    row.sent.is_(False),
                    row.failed.is_(False),
                    or_(row.queued_at.is_(None), row.queued_at <= claimed_before),
                ))
                .order_by(row.queued_at)
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_scheduled(r) for r in rows]

    async def conditional_update(
        self, scheduled_id: str, expected: dict[str, Any], fields: dict[str, Any],
    ) -> bool:
        unknown = (set(expected) | set(fields)) - _SCHEDULED_COLUMNS
        if unknown:
            raise ValueError(f"Unknown scheduled message fields: {sorted(unknown)}")

        conditions = [ScheduledMessageRow.id == scheduled_id]
        for key, value in expected.items():
            conditions.append(getattr(ScheduledMessageRow, key) == value)

        async with get_session() as db:
            result = await db.execute(
                update(ScheduledMessageRow)
                .where(and_(*conditions))
                .values(**fields, updated_at=utcnow())
            )
            return result.rowcount == 1

    async def scheduled_stats(self, now: datetime = None) -> dict[str, int]:
        now = now or utcnow()
        row = ScheduledMessageRow

        def _count(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        async with get_session() as db:
            result = await db.execute(select(
                func.count(row.id),
                _count(and_(row.send_at <= now, row.queued.is_(False),
                            row.sent.is_(False), row.failed.is_(False))),
                _count(row.queued.is_(True)),
                _count(row.sent.is_(True)),
                _count(row.failed.is_(True)),
            ))
            total, pending, queued, sent, failed = result.one()
        return {
            "total": int(total), "pending": int(pending), "queued": int(queued),
            "sent": int(sent), "failed": int(failed),
        }

    async def delete_scheduled_message(self, scheduled_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                delete(ScheduledMessageRow).where(ScheduledMessageRow.id == scheduled_id)
            )
            return result.rowcount == 1

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_user(row: UserRow) -> User:
        return User(
            id=row.id, username=row.username,
            first_name=row.first_name or "", last_name=row.last_name or "",
            display_name=row.display_name or "", role=row.role or "user",
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        last_message = None
        if row.last_message_content is not None:
            last_message = LastMessage(
                content=row.last_message_content,
                sender_id=row.last_message_sender or "",
                timestamp=ensure_utc(row.last_message_at) or utcnow(),
            )
        return Conversation(
            id=row.id, name=row.name or "", type=row.type,
            participants=list(row.participants or []),
            creator_id=row.creator_id or "",
            is_active=bool(row.is_active),
            last_message=last_message,
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _message_to_row(message: PersistedMessage) -> MessageRow:
        return MessageRow(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            content_type=message.content_type.value,
            status=message.status.value,
            origin_id=message.origin_id,
            read_at=message.read_at,
            read_by=message.read_by,
            metadata_=message.metadata,
            created_at=message.created_at,
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> PersistedMessage:
        return PersistedMessage(
            id=row.id, conversation_id=row.conversation_id,
            sender_id=row.sender_id, content=row.content,
            content_type=row.content_type, status=row.status,
            origin_id=row.origin_id, read_at=row.read_at, read_by=row.read_by,
            metadata=row.metadata_ or {}, created_at=row.created_at,
        )

    @staticmethod
    def _row_to_scheduled(row: ScheduledMessageRow) -> ScheduledMessage:
        return ScheduledMessage(
            id=row.id, conversation_id=row.conversation_id,
            sender_id=row.sender_id, content=row.content,
            content_type=row.content_type, send_at=row.send_at,
            repeat_type=row.repeat_type, repeat_interval=row.repeat_interval,
            queued=bool(row.queued), sent=bool(row.sent), failed=bool(row.failed),
            queued_at=row.queued_at, sent_at=row.sent_at, failed_at=row.failed_at,
            error_message=row.error_message, message_id=row.message_id,
            metadata=row.metadata_ or {},
            created_at=row.created_at, updated_at=row.updated_at,
        )
