"""
Tests for the FastAPI surface: REST endpoints and the chat WebSocket.

The app runs on the default settings (memory store, memory queue,
memory presence); fixtures seed the store through api.main.chat_store.
"""
import asyncio
import time
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from conftest import FakeWebSocket
from database.store_memory import InMemoryChatStore
from presence.hub import PresenceHub
from presence.store import InMemoryPresenceStore
from models.schemas import Conversation, ScheduledMessage, User, utcnow


@pytest.fixture(scope="module")
def client():
    from api.main import app
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="module")
def seeded(client):
    from api.main import chat_store
    portal = client.portal
    portal.call(chat_store.upsert_user, User(id="api-alice", username="alice"))
    portal.call(chat_store.upsert_user, User(id="api-bob", username="bob"))
    portal.call(chat_store.upsert_user, User(id="api-ghost", username="ghost", is_active=False))
    portal.call(chat_store.upsert_conversation, Conversation(
        id="api-conv", name="API", participants=["api-alice", "api-bob"],
    ))
    return chat_store


def _future(minutes=30) -> str:
    return (utcnow() + timedelta(minutes=minutes)).isoformat()


def _create(client, **overrides):
    body = {
        "conversation_id": "api-conv",
        "sender_id": "api-alice",
        "content": "Stand-up in 5",
        "send_at": _future(),
    }
    body.update(overrides)
    return client.post("/api/v1/scheduled-messages", json=body)


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["scheduler_running"] is True
        assert data["worker_running"] is True
        assert data["queue_backend"] == "InMemoryMessageQueue"


class TestScheduledMessages:
    def test_create_and_get(self, client, seeded):
        resp = _create(client)
        assert resp.status_code == 201
        created = resp.json()
        assert created["state"] == "pending"
        assert created["queued"] is False

        fetched = client.get(f"/api/v1/scheduled-messages/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["content"] == "Stand-up in 5"

    def test_past_send_time_rejected(self, client, seeded):
        resp = _create(client, send_at=(utcnow() - timedelta(minutes=1)).isoformat())
        assert resp.status_code == 400

    def test_unknown_conversation(self, client, seeded):
        assert _create(client, conversation_id="nope").status_code == 404

    def test_non_participant_sender(self, client, seeded):
        assert _create(client, sender_id="api-ghost").status_code == 403

    def test_invalid_body(self, client, seeded):
        assert _create(client, content="").status_code == 422
        assert _create(client, send_at="not-a-date").status_code == 422

    def test_get_missing(self, client):
        assert client.get("/api/v1/scheduled-messages/missing").status_code == 404

    def test_trigger_delivers(self, client, seeded):
        created = _create(client, content="Triggered early").json()

        resp = client.post(f"/api/v1/scheduled-messages/{created['id']}/trigger")
        assert resp.status_code == 200
        assert resp.json()["status"] == "queued"

        state = None
        for _ in range(100):
            state = client.get(f"/api/v1/scheduled-messages/{created['id']}").json()["state"]
            if state == "sent":
                break
            time.sleep(0.05)
        assert state == "sent"

        again = client.post(f"/api/v1/scheduled-messages/{created['id']}/trigger")
        assert again.status_code == 409

    def test_trigger_missing(self, client):
        assert client.post("/api/v1/scheduled-messages/missing/trigger").status_code == 404


class TestSchedulerEndpoints:
    def test_run_once(self, client, seeded):
        from api.main import chat_store
        send_at = utcnow() - timedelta(seconds=1)
        record = client.portal.call(
            chat_store.create_scheduled_message,
            ScheduledMessage(conversation_id="api-conv", sender_id="api-bob",
                             content="overdue", send_at=send_at),
            send_at - timedelta(minutes=1),
        )
        result = client.post("/api/v1/scheduler/run").json()
        assert result["success"] is True
        assert result["result"]["enqueued"] >= 1
        state = client.get(f"/api/v1/scheduled-messages/{record.id}").json()["state"]
        assert state in ("queued", "sent")

    def test_stop_and_start(self, client):
        stopped = client.post("/api/v1/scheduler/stop").json()
        assert stopped["stopped"] is True
        assert stopped["status"]["running"] is False

        started = client.post("/api/v1/scheduler/start").json()
        assert started["started"] is True
        assert client.get("/api/v1/scheduler/status").json()["running"] is True

    def test_stats(self, client, seeded):
        stats = client.get("/api/v1/scheduler/stats").json()
        assert set(stats) >= {"total", "pending", "queued", "sent", "failed"}

    def test_queue_status(self, client):
        status = client.get("/api/v1/queue/status").json()
        assert set(status["lanes"]) == {"scheduled:dispatch", "scheduled:retry", "scheduled:dlq"}
        assert status["worker"]["running"] is True


class TestSocket:
    def test_unknown_user_rejected(self, client, seeded):
        from starlette.websockets import WebSocketDisconnect
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/chat?user_id=nobody") as ws:
                ws.receive_json()
        assert exc.value.code == 4003

    def test_inactive_user_rejected(self, client, seeded):
        from starlette.websockets import WebSocketDisconnect
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/chat?user_id=api-ghost") as ws:
                ws.receive_json()
        assert exc.value.code == 4003

    def test_connect_join_and_send(self, client, seeded):
        with client.websocket_connect("/ws/chat?user_id=api-alice") as ws:
            greeting = ws.receive_json()
            assert greeting["event"] == "connection"
            assert greeting["data"]["user"]["userId"] == "api-alice"

            ws.send_json({"event": "join_room", "data": {"conversationId": "api-conv"}})
            assert ws.receive_json()["event"] == "room_joined"

            rooms = client.get("/api/v1/socket/users/api-alice/rooms").json()
            assert rooms["rooms"] == ["api-conv"]
            assert client.get("/api/v1/socket/users/api-alice/online").json()["isOnline"] is True

            ws.send_json({"event": "send_message",
                          "data": {"conversationId": "api-conv", "content": "hi all"}})
            new_message = ws.receive_json()
            assert new_message["event"] == "new_message"
            assert new_message["data"]["content"] == "hi all"
            assert ws.receive_json()["event"] == "message_sent"

            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["event"] == "error"
            assert error["data"]["message"] == "Invalid JSON"

            resp = client.post("/api/v1/socket/system-message",
                               json={"room_id": "api-conv", "message": "maintenance at 5"})
            assert resp.json()["success"] is True
            pushed = ws.receive_json()
            assert pushed["event"] == "system_message"
            assert pushed["data"]["systemType"] == "info"

            users = client.get("/api/v1/socket/connected-users").json()
            assert users["count"] == 1

    def test_non_participant_join_gets_error(self, client, seeded):
        with client.websocket_connect("/ws/chat?user_id=api-bob") as ws:
            ws.receive_json()
            ws.send_json({"event": "join_room", "data": {"conversationId": "missing-conv"}})
            error = ws.receive_json()
            assert error["event"] == "error"
            assert "not found" in error["data"]["message"]

    def test_private_message_to_offline_user(self, client):
        resp = client.post("/api/v1/socket/private-message",
                           json={"user_id": "offline", "message": "ping"})
        assert resp.status_code == 200
        assert resp.json()["privateMessage"]["messageType"] == "notification"

    def test_socket_status(self, client):
        status = client.get("/api/v1/socket/status").json()
        assert status["success"] is True
        assert status["presence_backend"] == "InMemoryPresenceStore"


class CancelledSocket(FakeWebSocket):
    """A socket whose handler task is cancelled while waiting for input."""

    async def accept(self):
        pass

    async def receive_text(self) -> str:
        raise asyncio.CancelledError()


class TestWebSocketShutdown:
    @pytest.mark.asyncio
    async def test_cancelled_handler_tears_down_and_propagates(self, monkeypatch):
        import api.main

        store = InMemoryChatStore()
        await store.upsert_user(User(id="ws-carol", username="carol"))
        hub = PresenceHub(store, InMemoryPresenceStore())
        monkeypatch.setattr(api.main, "chat_store", store)
        monkeypatch.setattr(api.main, "presence_hub", hub)

        ws = CancelledSocket()
        with pytest.raises(asyncio.CancelledError):
            await api.main.websocket_chat(ws, user_id="ws-carol")

        assert ws.events("connection")[0]["success"] is True
        assert not hub.is_connected("ws-carol")
        assert not await hub.is_online("ws-carol")
