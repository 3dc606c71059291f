"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON-lines message documents on disk)

Quick start:
  from database import create_store, create_message_log
  store = create_store({"store_backend": "memory"})
  log = create_message_log({"message_log_backend": "file"})
"""
from database.models import (
    Base, AgentRow, ConversationRow, MessageRow,
    BatchCallRow, BatchHistoryRow, SideEffectRow,
)
from database.session import get_engine, get_session, init_engine, init_db, close_db, ping_db
from database.store_base import BaseRecordStore, BaseMessageLog
from database.store import SqlRecordStore, SqlMessageLog
from database.store_memory import InMemoryRecordStore, InMemoryMessageLog
from database.store_file import FileMessageLog
from database.store_factory import (
    create_store, create_message_log, get_store, get_message_log, reset_store,
)

__all__ = [
    # ORM models
    "Base", "AgentRow", "ConversationRow", "MessageRow",
    "BatchCallRow", "BatchHistoryRow", "SideEffectRow",
    # Session management
    "get_engine", "get_session", "init_engine", "init_db", "close_db", "ping_db",
    # Store interfaces
    "BaseRecordStore", "BaseMessageLog",
    # Backends
    "SqlRecordStore", "SqlMessageLog",
    "InMemoryRecordStore", "InMemoryMessageLog", "FileMessageLog",
    # Factory
    "create_store", "create_message_log", "get_store", "get_message_log", "reset_store",
]
