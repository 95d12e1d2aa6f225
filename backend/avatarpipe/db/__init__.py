"""
Database module for avatarpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session snapshot stores, and schema initialization.
"""
import logging

from avatarpipe.db.engine import async_session, engine, shutdown
from avatarpipe.db.models import Base, SessionSnapshotRow
from avatarpipe.db.store import InMemorySessionStore, SessionStore, SqlSessionStore

logger = logging.getLogger(__name__)


async def init_database():
    """Initialize database schema on first run."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "SessionSnapshotRow",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
    "SessionStore",
    "InMemorySessionStore",
    "SqlSessionStore",
]
