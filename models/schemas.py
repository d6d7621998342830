"""
Core data models for the scheduled chat delivery system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

LAST_MESSAGE_PREVIEW_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class RepeatType(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    LOCATION = "location"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"


class ScheduledMessageState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Users
# ──────────────────────────────────────────────────────────────

class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    first_name: str = ""
    last_name: str = ""
    display_name: str = ""
    role: str = "user"                        # user | admin | moderator
    is_active: bool = True

    def sender_info(self) -> dict[str, Any]:
        """Sender block attached to outgoing new_message events."""
        return {
            "id": self.id,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name or self.username,
        }


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class LastMessage(BaseModel):
    """Cached last-message pointer on a conversation."""
    content: str
    sender_id: str
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def preview(cls, content: str, sender_id: str, timestamp: datetime = None) -> LastMessage:
        if len(content) > LAST_MESSAGE_PREVIEW_LENGTH:
            content = content[:LAST_MESSAGE_PREVIEW_LENGTH] + "..."
        return cls(content=content, sender_id=sender_id, timestamp=timestamp or utcnow())


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    type: ConversationType = ConversationType.DIRECT
    participants: list[str] = []
    creator_id: str = ""
    is_active: bool = True
    last_message: Optional[LastMessage] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class PersistedMessage(BaseModel):
    """A durable chat message, written by the delivery worker or a live send."""
    id: str = Field(default_factory=new_id)
    conversation_id: str
    sender_id: str
    content: str
    content_type: ContentType = ContentType.TEXT
    status: MessageStatus = MessageStatus.SENT
    origin_id: Optional[str] = None           # idempotency key (scheduled message id)
    read_at: Optional[datetime] = None
    read_by: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "read_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def to_event(self, sender: Optional[User] = None) -> dict[str, Any]:
        """Payload of the new_message event."""
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "senderName": sender.username if sender else None,
            "sender": sender.sender_info() if sender else {"id": self.sender_id},
            "content": self.content,
            "messageType": self.content_type.value,
            "status": self.status.value,
            "timestamp": utcnow().isoformat(),
            "createdAt": self.created_at.isoformat(),
        }


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    """
    A message awaiting future delivery.

    Lifecycle: pending → queued → {sent | failed}. The flags are written
    only through conditional updates keyed by id, so at rest at most one
    of them is true.
    """
    id: str = Field(default_factory=new_id)
    conversation_id: str
    sender_id: str
    content: str = Field(min_length=1, max_length=2000)
    content_type: ContentType = ContentType.TEXT
    send_at: datetime
    repeat_type: RepeatType = RepeatType.NONE
    repeat_interval: Optional[int] = None
    queued: bool = False
    sent: bool = False
    failed: bool = False
    queued_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    message_id: Optional[str] = None          # PersistedMessage created for this record
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("send_at", "queued_at", "sent_at", "failed_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def state(self) -> ScheduledMessageState:
        if self.sent:
            return ScheduledMessageState.SENT
        if self.failed:
            return ScheduledMessageState.FAILED
        if self.queued:
            return ScheduledMessageState.QUEUED
        return ScheduledMessageState.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.sent or self.failed

    def is_due(self, now: datetime) -> bool:
        return self.state == ScheduledMessageState.PENDING and self.send_at <= now


# Expected-state snapshots used with conditional updates
PENDING_FLAGS = {"queued": False, "sent": False, "failed": False}
QUEUED_FLAGS = {"queued": True, "sent": False, "failed": False}
