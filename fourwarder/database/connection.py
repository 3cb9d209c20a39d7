"""
Async SQLAlchemy engine and session handling for the relay state.

The correlation table and the resume positions are written one short
transaction at a time, so the engine is tuned per backend: SQLite gets WAL
journaling and synchronous commits, an in-memory SQLite database shares a
single connection, and server databases get a small pre-pinged pool.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=FULL",
)


def _is_memory_sqlite(url) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def _engine_options(self) -> Dict[str, Any]:
        url = make_url(self.database_url)
        if _is_memory_sqlite(url):
            # every session must see the same in-memory database
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        if url.get_backend_name() == "sqlite":
            return {}
        return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 5, "max_overflow": 5}

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async database engine."""
        if self._engine is None:
            url = make_url(self.database_url)
            self._engine = create_async_engine(url, echo=False, **self._engine_options())
            if url.get_backend_name() == "sqlite" and not _is_memory_sqlite(url):
                event.listen(self._engine.sync_engine, "connect", _set_sqlite_pragmas)
            logger.debug(f"Created database engine for {url.render_as_string(hide_password=True)}")
        return self._engine

    @property
    def async_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._async_session_factory is None:
            self._async_session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
        return self._async_session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: committed when the block exits, rolled back on error."""
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create the relay tables that do not exist yet."""
        async with self.engine.begin() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
            await conn.run_sync(Base.metadata.create_all)
        created = sorted(set(Base.metadata.tables) - existing)
        if created:
            logger.info(f"Created tables: {', '.join(created)}")

    async def check_connection(self) -> bool:
        """Check if database connection is working."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._async_session_factory = None


async def init_database(db_manager: DatabaseManager) -> None:
    """Verify connectivity and create missing tables."""
    if not await db_manager.check_connection():
        raise RuntimeError(f"Cannot connect to database {db_manager.database_url}")
    await db_manager.create_tables()
    logger.info("Database ready")
