"""Database layer for persisted feedback (PostgreSQL in production, SQLite in tests)."""

from caseprep.db.engine import Base, get_engine, get_session_factory, init_db
from caseprep.db.models import FeedbackModel
from caseprep.db.repositories import SqlFeedbackRepository

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "init_db",
    "FeedbackModel",
    "SqlFeedbackRepository",
]
