"""Snapshot Storage: namespaced key-value persistence for the client cache.

Invariants:
    - Keys are scoped as "<namespace>:<key>"; two namespaces never see each other's data
    - set() replaces the whole value in one transaction (no partial writes)
    - Every SQLAlchemy failure is rolled back and mapped to StorageError (core/errors.py)

Design Decisions:
    - SQLite through SQLAlchemy async + aiosqlite: survives process restarts
    - InMemorySnapshotStorage implements the same Protocol for single-session use and tests
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession, create_async_engine, async_sessionmaker,
)

from skillchain.core.errors import StorageError
from skillchain.db.base import Base
from skillchain.models.cache_entry import CacheEntry

logger = logging.getLogger(__name__)


class SqlSnapshotStorage:
    """Persisted key-value store backed by a single cache_entries table."""

    def __init__(self, database_url: str, namespace: str = "skillchain"):
        self.namespace = namespace
        self.engine = create_async_engine(database_url)
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        """Create the cache table if missing."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            logger.error(f"Cache init failed: {e}")
            raise StorageError("Could not create cache table", "init")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide session with auto-rollback on exception."""
        session = self._session_factory()
        try:
            yield session
        except OperationalError as e:
            await session.rollback()
            logger.error(f"Cache operational error: {e}")
            raise StorageError("Connection or operational error", "execute")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Cache error: {e}")
            raise StorageError("Cache operation failed", "unknown")
        finally:
            await session.close()

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> str | None:
        async with self.session() as db:
            result = await db.execute(
                select(CacheEntry.value).where(CacheEntry.key == self._key(key)),
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        async with self.session() as db:
            entry = await db.get(CacheEntry, self._key(key))
            if entry is None:
                db.add(CacheEntry(key=self._key(key), value=value))
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)
            await db.commit()

    async def delete(self, key: str) -> None:
        async with self.session() as db:
            entry = await db.get(CacheEntry, self._key(key))
            if entry is not None:
                await db.delete(entry)
                await db.commit()


class InMemorySnapshotStorage:
    """Process-local storage with the same contract, scoped by namespace."""

    def __init__(self, namespace: str = "skillchain"):
        self.namespace = namespace
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(f"{self.namespace}:{key}")

    async def set(self, key: str, value: str) -> None:
        self._data[f"{self.namespace}:{key}"] = value

    async def delete(self, key: str) -> None:
        self._data.pop(f"{self.namespace}:{key}", None)
