"""
Database layer — Conversation and message persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_repositories
  conversations, messages = create_repositories({"store_backend": "memory"})
  conv = await conversations.get_or_create("t1", "15550001", SenderRole.CUSTOMER)
"""
from database.models import Base, ConversationRow, MessageRow
from database.session import get_engine, get_session, init_db, ping_db, close_db
from database.store_base import ConversationRepo, MessageRepo, PersistenceFailure
from database.store import SqlConversationRepo, SqlMessageRepo
from database.store_memory import InMemoryConversationRepo, InMemoryMessageRepo
from database.store_factory import create_repositories

__all__ = [
    # ORM models
    "Base", "ConversationRow", "MessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "ping_db", "close_db",
    # Repository interface
    "ConversationRepo", "MessageRepo", "PersistenceFailure",
    # Backends
    "SqlConversationRepo", "SqlMessageRepo",
    "InMemoryConversationRepo", "InMemoryMessageRepo",
    # Factory
    "create_repositories",
]
