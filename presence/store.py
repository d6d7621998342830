"""
Presence Store — who is online and which rooms they have joined.

Backends:
  - InMemoryPresenceStore  — process-local sets (single instance, dev/test)
  - RedisPresenceStore     — shared Redis sets so every instance sees the
                             same online users and room membership

Redis key layout (prefix defaults to "presence"):
  {prefix}:online              SET of online user ids
  {prefix}:room:{room_id}      SET of user ids joined to the room
  {prefix}:user:{user_id}      SET of room ids the user has joined

Connection handles never live here; they are process-local to the hub.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as aioredis
from tenacity import retry, stop_after_attempt, wait_exponential

logger = structlog.get_logger()


class PresenceStore(ABC):
    """Narrow membership interface used by the presence hub."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def set_online(self, user_id: str) -> None: ...

    @abstractmethod
    async def set_offline(self, user_id: str) -> None: ...

    @abstractmethod
    async def is_online(self, user_id: str) -> bool: ...

    @abstractmethod
    async def online_users(self) -> set[str]: ...

    @abstractmethod
    async def join(self, room_id: str, user_id: str) -> None: ...

    @abstractmethod
    async def leave(self, room_id: str, user_id: str) -> bool:
        """Remove membership. Returns True if the user was a member."""
        ...

    @abstractmethod
    async def list_members(self, room_id: str) -> set[str]: ...

    @abstractmethod
    async def rooms_of(self, user_id: str) -> set[str]: ...

    async def clear_user(self, user_id: str) -> set[str]:
        """Drop every membership of a user. Returns the rooms they were in."""
        rooms = await self.rooms_of(user_id)
        for room_id in rooms:
            await self.leave(room_id, user_id)
        return rooms


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

class InMemoryPresenceStore(PresenceStore):
    """
    Process-local presence. Room membership is not visible to other
    instances; use the Redis backend when running more than one.
    """

    def __init__(self):
        self._online: set[str] = set()
        self._rooms: dict[str, set[str]] = {}
        self._user_rooms: dict[str, set[str]] = {}

    async def set_online(self, user_id: str) -> None:
        self._online.add(user_id)

    async def set_offline(self, user_id: str) -> None:
        self._online.discard(user_id)

    async def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    async def online_users(self) -> set[str]:
        return set(self._online)

    async def join(self, room_id: str, user_id: str) -> None:
        self._rooms.setdefault(room_id, set()).add(user_id)
        self._user_rooms.setdefault(user_id, set()).add(room_id)

    async def leave(self, room_id: str, user_id: str) -> bool:
        members = self._rooms.get(room_id, set())
        was_member = user_id in members
        members.discard(user_id)
        if not members:
            self._rooms.pop(room_id, None)

        rooms = self._user_rooms.get(user_id, set())
        rooms.discard(room_id)
        if not rooms:
            self._user_rooms.pop(user_id, None)
        return was_member

    async def list_members(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, set()))

    async def rooms_of(self, user_id: str) -> set[str]:
        return set(self._user_rooms.get(user_id, set()))

    def snapshot(self) -> dict[str, Any]:
        """Raw registry view, used to check for orphaned entries."""
        return {
            "online": set(self._online),
            "rooms": {k: set(v) for k, v in self._rooms.items()},
            "user_rooms": {k: set(v) for k, v in self._user_rooms.items()},
        }


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisPresenceStore(PresenceStore):
    """Presence shared across instances through Redis sets."""

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "presence"):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis: Optional[aioredis.Redis] = None

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=5), reraise=True)
    async def connect(self) -> None:
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_presence_connected", url=self._redis_url)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _online_key(self) -> str:
        return f"{self._prefix}:online"

    def _room_key(self, room_id: str) -> str:
        return f"{self._prefix}:room:{room_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    async def set_online(self, user_id: str) -> None:
        await self._redis.sadd(self._online_key(), user_id)

    async def set_offline(self, user_id: str) -> None:
        await self._redis.srem(self._online_key(), user_id)

    async def is_online(self, user_id: str) -> bool:
        return bool(await self._redis.sismember(self._online_key(), user_id))

    async def online_users(self) -> set[str]:
        return set(await self._redis.smembers(self._online_key()))

    async def join(self, room_id: str, user_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._room_key(room_id), user_id)
            pipe.sadd(self._user_key(user_id), room_id)
            await pipe.execute()

    async def leave(self, room_id: str, user_id: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._room_key(room_id), user_id)
            pipe.srem(self._user_key(user_id), room_id)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def list_members(self, room_id: str) -> set[str]:
        return set(await self._redis.smembers(self._room_key(room_id)))

    async def rooms_of(self, user_id: str) -> set[str]:
        return set(await self._redis.smembers(self._user_key(user_id)))


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_presence_store(config: dict[str, Any] = None) -> PresenceStore:
    """
    Create the presence backend from the `presence` settings section:
        backend: "memory" | "redis"
        redis_url: redis://localhost:6379
        key_prefix: presence
    """
    config = config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        store = RedisPresenceStore(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "presence"),
        )
    else:
        store = InMemoryPresenceStore()

    logger.info("presence_store_created", backend=backend)
    return store
