"""Session snapshot stores.

The orchestrator only ever talks to a SessionStore: it loads a snapshot,
mutates its own copy, and writes the merged copy back. Deleting sessions
is left to whoever owns the store.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from avatarpipe.db.models import Base, SessionSnapshotRow
from avatarpipe.schemas.session import SessionSnapshot

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Write-through key/value persistence for SessionSnapshots."""

    @abstractmethod
    async def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        """Return the stored snapshot, or None if the session is unknown."""
        ...

    @abstractmethod
    async def save_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> None:
        """Persist ``snapshot`` (last write wins)."""
        ...

    @abstractmethod
    async def list_sessions(self) -> list[SessionSnapshot]:
        """Return all stored snapshots, most recently updated first."""
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store; snapshots are kept in serialized form."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self.save_count = 0

    async def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        data = self._data.get(session_id)
        if data is None:
            return None
        return SessionSnapshot.model_validate(data)

    async def save_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> None:
        self._data[session_id] = snapshot.model_dump(mode="json")
        self.save_count += 1

    async def list_sessions(self) -> list[SessionSnapshot]:
        snapshots = [SessionSnapshot.model_validate(d) for d in self._data.values()]
        return sorted(snapshots, key=lambda s: s.updated_at, reverse=True)


class SqlSessionStore(SessionStore):
    """SQLAlchemy-backed store (SQLite via aiosqlite by default)."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from avatarpipe.db.engine import async_session

            session_factory = async_session
        self._session_factory = session_factory

    async def init_schema(self) -> None:
        """Create the snapshot table if it does not exist."""
        async with self._session_factory() as session:
            conn = await session.connection()
            await conn.run_sync(Base.metadata.create_all)
            await session.commit()

    async def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(SessionSnapshotRow, session_id)
            if row is None:
                return None
            return SessionSnapshot.model_validate(row.snapshot)

    async def save_snapshot(self, session_id: str, snapshot: SessionSnapshot) -> None:
        payload = snapshot.model_dump(mode="json")
        async with self._session_factory() as session:
            row = await session.get(SessionSnapshotRow, session_id)
            if row is None:
                row = SessionSnapshotRow(
                    id=session_id,
                    name=snapshot.name,
                    version=snapshot.version,
                    snapshot=payload,
                )
                session.add(row)
            else:
                row.name = snapshot.name
                row.version = snapshot.version
                row.snapshot = payload
            await session.commit()
        logger.debug(f"Saved snapshot {session_id} (version {snapshot.version})")

    async def list_sessions(self) -> list[SessionSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SessionSnapshotRow).order_by(SessionSnapshotRow.updated_at.desc())
            )
            return [SessionSnapshot.model_validate(row.snapshot) for row in result.scalars().all()]
