"""
Database layer — Multi-backend persistence for users, conversations,
messages and scheduled messages.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  due = await store.find_due(now)
"""
from database.models import (
    Base, UserRow, ConversationRow, MessageRow, ScheduledMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db, ping_db
from database.store_base import BaseChatStore
from database.store import SqlChatStore
from database.store_memory import InMemoryChatStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "UserRow", "ConversationRow", "MessageRow", "ScheduledMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "ping_db",
    # Store interface
    "BaseChatStore",
    # Store backends
    "SqlChatStore", "InMemoryChatStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
