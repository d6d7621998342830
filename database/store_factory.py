"""
Store Factory — pick the chat store backend from the `database` settings.

    database:
      url: "sqlite:///./chat_scheduler.db"   # used by the sql backend
      store_backend: "memory"                # memory | sql

The store is a process singleton shared by the scheduler, the delivery
worker and the presence hub.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseChatStore

logger = structlog.get_logger()

_instance: Optional[BaseChatStore] = None

BACKENDS = ("memory", "sql")


def create_store(config: dict[str, Any] = None) -> BaseChatStore:
    """
    Build (once) the chat store.

    Keys:
        store_backend: "memory" | "sql"   (default "memory")
        url: database URL; only recorded here, the engine is built by init_db()
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")
    if backend not in BACKENDS:
        raise ValueError(f"Unknown store backend '{backend}', expected one of {BACKENDS}")

    if backend == "sql":
        from database.store import SqlChatStore
        _instance = SqlChatStore()
        logger.info("store_created", backend=backend,
                    url=str(config.get("url", "")).split("@")[-1])
    else:
        from database.store_memory import InMemoryChatStore
        _instance = InMemoryChatStore()
        logger.info("store_created", backend=backend)

    return _instance


def get_store() -> BaseChatStore:
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Forget the singleton. Tests only."""
    global _instance
    _instance = None
