"""Database models, engine, and session management."""

from chatrelay.db.base import Base, TimestampMixin
from chatrelay.db.engine import (
    dispose_engine,
    enable_sqlite_foreign_keys,
    get_engine,
    verify_database_connection,
)
from chatrelay.db.models import ApiKey, ChatModel, Conversation, HistoryRecord
from chatrelay.db.session import get_session_factory, reset_session_factory

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Engine
    "dispose_engine",
    "enable_sqlite_foreign_keys",
    "get_engine",
    "verify_database_connection",
    # Session
    "get_session_factory",
    "reset_session_factory",
    # Models
    "ApiKey",
    "ChatModel",
    "Conversation",
    "HistoryRecord",
]
