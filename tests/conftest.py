"""Shared test fixtures for the chat scheduler."""
import json
import pytest
import pytest_asyncio
from datetime import timedelta
from typing import Any

from database.store_memory import InMemoryChatStore
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import (
    Conversation, ConversationType, ScheduledMessage, User, utcnow,
)
from presence.hub import PresenceHub
from presence.store import InMemoryPresenceStore


class FakeWebSocket:
    """Records every event pushed to it, decoded from the JSON wire format."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send_text(self, text: str):
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = True

    def events(self, name: str = None) -> list[dict[str, Any]]:
        return [m["data"] for m in self.sent if name is None or m["event"] == name]

    def names(self) -> list[str]:
        return [m["event"] for m in self.sent]


@pytest.fixture
def alice() -> User:
    return User(id="u-alice", username="alice", first_name="Alice", display_name="Alice A.")


@pytest.fixture
def bob() -> User:
    return User(id="u-bob", username="bob", first_name="Bob")


@pytest.fixture
def mallory() -> User:
    return User(id="u-mallory", username="mallory")


@pytest.fixture
def conversation(alice, bob) -> Conversation:
    return Conversation(
        id="conv-001",
        name="Alice & Bob",
        type=ConversationType.DIRECT,
        participants=[alice.id, bob.id],
        creator_id=alice.id,
    )


@pytest_asyncio.fixture
async def store(alice, bob, mallory, conversation) -> InMemoryChatStore:
    s = InMemoryChatStore()
    for user in (alice, bob, mallory):
        await s.upsert_user(user)
    await s.upsert_conversation(conversation)
    return s


@pytest_asyncio.fixture
async def queue():
    q = InMemoryMessageQueue(retry_delay=0.0)
    await q.connect()
    yield q
    await q.close()


@pytest.fixture
def hub(store) -> PresenceHub:
    return PresenceHub(store, InMemoryPresenceStore())


async def make_due(store, conversation_id="conv-001", sender_id="u-alice",
                   content="Happy birthday!", seconds_ago=1) -> ScheduledMessage:
    """Create a pending record whose send time has already passed."""
    send_at = utcnow() - timedelta(seconds=seconds_ago)
    record = ScheduledMessage(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        send_at=send_at,
    )
    return await store.create_scheduled_message(record, now=send_at - timedelta(minutes=5))


@pytest.fixture
def due(store):
    """Factory fixture: `record = await due(content="...")`."""
    async def _make(**kwargs) -> ScheduledMessage:
        return await make_due(store, **kwargs)
    return _make
