"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  await store.connect()
  campaign = await store.get_campaign("c1")
"""
from database.models import Base, UserRow, CustomerRow, CampaignRow, CommunicationLogRow
from database.session import create_engine, create_session_factory, session_scope, init_db
from database.store_base import BaseStore, StorageError
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "UserRow", "CustomerRow", "CampaignRow", "CommunicationLogRow",
    # Session management
    "create_engine", "create_session_factory", "session_scope", "init_db",
    # Store interface
    "BaseStore", "StorageError",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store",
]
