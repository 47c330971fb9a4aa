"""SQLAlchemy-powered key-value slot that holds the marketplace snapshot."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import DateTime, String, Text, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# --------------------------------------------------------------------------------------
# SQLAlchemy setup
# --------------------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class SnapshotSlot(Base):
    __tablename__ = "snapshot_slots"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.current_timestamp(), onupdate=func.current_timestamp()
    )


def create_storage_engine(database_url: str) -> Engine:
    """Build an engine; in-memory SQLite keeps a single shared connection."""

    if database_url.startswith("sqlite"):
        options: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **options)
    return create_engine(database_url, future=True)


# --------------------------------------------------------------------------------------
# Slot storage
# --------------------------------------------------------------------------------------


class SnapshotStorage:
    """Durable named slots, each holding one opaque text blob."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.engine = create_storage_engine(database_url)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def read(self, key: str) -> Optional[str]:
        """Return the blob stored under ``key`` or None when the slot is empty."""

        with self.session_scope() as session:
            return session.execute(select(SnapshotSlot.payload).where(SnapshotSlot.key == key)).scalar_one_or_none()

    def write(self, key: str, payload: str) -> None:
        """Replace the blob stored under ``key``."""

        with self.session_scope() as session:
            slot = session.get(SnapshotSlot, key)
            if slot:
                slot.payload = payload
            else:
                session.add(SnapshotSlot(key=key, payload=payload))

    def keys(self) -> list[str]:
        with self.session_scope() as session:
            return list(session.execute(select(SnapshotSlot.key).order_by(SnapshotSlot.key)).scalars())

    def dispose(self) -> None:
        self.engine.dispose()
