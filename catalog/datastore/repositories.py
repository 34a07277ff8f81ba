"""
SQL-backed persistent store for cache records.
"""

from loguru import logger
from sqlalchemy import LargeBinary, cast, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from catalog.datastore.base import QuotaExceededError
from catalog.datastore.engine import (
    build_engine,
    build_session_factory,
    create_schema,
)
from catalog.datastore.models import CacheRecordDB


class SQLStore:
    """
    PersistentStore over a SQLAlchemy async engine.

    Usage:
        store = SQLStore("sqlite+aiosqlite:///./catalog_cache.db")
        await store.open()
        ...
        await store.close()

    ``capacity_bytes`` bounds the total byte size of stored values; a write
    that would exceed it raises QuotaExceededError.
    """

    def __init__(
        self,
        database_url: str,
        capacity_bytes: int | None = None,
        echo: bool = False,
    ):
        self.database_url = database_url
        self.capacity_bytes = capacity_bytes
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    async def open(self) -> None:
        """Create the engine and the schema."""
        if self._engine is not None:
            return
        self._engine = build_engine(self.database_url, echo=self._echo)
        self._sessions = build_session_factory(self._engine)
        await create_schema(self._engine)
        logger.debug(f"SQLStore opened: {self.database_url}")

    async def close(self) -> None:
        """Dispose the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.debug("SQLStore closed")

    async def __aenter__(self) -> "SQLStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("SQLStore not opened. Call open() first.")
        return self._sessions()

    async def get(self, key: str) -> str | None:
        async with self._session() as session:
            result = await session.execute(
                select(CacheRecordDB.value).where(CacheRecordDB.key == key)
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        async with self._session() as session:
            try:
                if self.capacity_bytes is not None:
                    used = await session.scalar(
                        select(
                            func.coalesce(
                                func.sum(
                                    func.length(cast(CacheRecordDB.value, LargeBinary))
                                ),
                                0,
                            )
                        ).where(CacheRecordDB.key != key)
                    )
                    required = int(used or 0) + len(value.encode("utf-8"))
                    if required > self.capacity_bytes:
                        raise QuotaExceededError(key, required, self.capacity_bytes)

                await session.merge(CacheRecordDB(key=key, value=value))
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

    async def remove(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(CacheRecordDB).where(CacheRecordDB.key == key))
            await session.commit()

    async def keys(self) -> list[str]:
        async with self._session() as session:
            result = await session.execute(select(CacheRecordDB.key))
            return list(result.scalars().all())
