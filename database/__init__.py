"""
Database layer — Multi-backend persistence for conversations and messages.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  conversation = await store.create_conversation("Ada")
"""
from database.models import Base, ConversationRow, MessageRow, AdminSessionRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseMessageStore
from database.store import SqlMessageStore
from database.store_memory import InMemoryMessageStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ConversationRow", "MessageRow", "AdminSessionRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseMessageStore",
    # Store backends
    "SqlMessageStore", "InMemoryMessageStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
