"""
Database layer — Job store persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  job = await store.fetch_oldest_queued()
"""
from database.models import Base, OutboxJobRow, MessageRow
from database.session import connect, get_engine, get_session, init_db, close_db
from database.store_base import BaseJobStore
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "OutboxJobRow", "MessageRow",
    # Session management
    "connect", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseJobStore",
    # Store backends
    "SqlJobStore", "InMemoryJobStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
