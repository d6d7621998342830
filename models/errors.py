"""
Exception hierarchy shared by the scheduler, queue, worker and hub.
"""
from __future__ import annotations


class ChatDeliveryError(Exception):
    """Base class for all scheduled-delivery errors."""


class ScheduleValidationError(ChatDeliveryError):
    """A scheduled message was rejected at creation (e.g. send time not in the future)."""


class EnvelopeError(ChatDeliveryError):
    """A queue payload does not have the fixed envelope shape."""


class QueueUnavailableError(ChatDeliveryError):
    """The queue backend is not connected or refused the operation."""


class NonRetriableDeliveryError(ChatDeliveryError):
    """Delivery can never succeed (e.g. the conversation was deleted)."""


class RoomAuthorizationError(ChatDeliveryError):
    """Identity is not a participant of the conversation behind a room."""

    def __init__(self, user_id: str, conversation_id: str):
        self.user_id = user_id
        self.conversation_id = conversation_id
        super().__init__(
            f"User {user_id} is not a participant of conversation {conversation_id}"
        )


class RoomNotFoundError(ChatDeliveryError):
    """The conversation behind a room does not exist."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")
