"""SQLAlchemy 2.0 ORM models for session snapshot persistence."""

from datetime import datetime

from sqlalchemy import JSON, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class SessionSnapshotRow(Base):
    """One serialized SessionSnapshot per user session.

    The snapshot body is stored whole; ``name`` and ``version`` are copied
    out of it so session listings do not need to parse every document.
    """
    __tablename__ = "session_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, default=0)
    snapshot: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )
