"""Database connection management for SQLite."""

import asyncio
from pathlib import Path
from typing import Optional, AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..foundation.config import ConfigManager
from ..foundation.errors import ConfigurationError
from ..foundation.logging import get_logger

logger = get_logger(__name__)

MEMORY_DATABASE = ":memory:"


class DatabaseManager:
    """Manages SQLite database connections and sessions.

    All sessions share a single aiosqlite connection (``StaticPool``), so
    ``get_session`` hands out one session at a time. Callers must not open a
    session while already holding one.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        database_path: Optional[str] = None
    ):
        self.config_manager = config_manager or ConfigManager()
        self._database_path = database_path
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._session_lock = asyncio.Lock()

    @property
    def database_path(self) -> str:
        """Configured database path, or ``:memory:``."""
        if self._database_path is None:
            self._database_path = self.config_manager.get_setting(
                "storage.database_path",
                "~/.crawlfront/crawlfront.db"
            )
        return self._database_path

    @property
    def database_url(self) -> str:
        """Get the database URL from configuration."""
        if self.database_path == MEMORY_DATABASE:
            return f"sqlite+aiosqlite:///{MEMORY_DATABASE}"

        db_path = Path(self.database_path).expanduser().resolve()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to create database directory {db_path.parent}: {e}",
                config_key="storage.database_path"
            ) from e

        return f"sqlite+aiosqlite:///{db_path}"

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the database engine."""
        if self._engine is None:
            in_memory = self.database_path == MEMORY_DATABASE
            self._engine = create_async_engine(
                self.database_url,
                echo=bool(self.config_manager.get_setting("storage.echo", False)),
                poolclass=StaticPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                if not in_memory:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.close()

            logger.debug(f"Created database engine: {self.database_url}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success and rolls back on error."""
        async with self._session_lock:
            session = self.session_factory()
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise
            else:
                await session.commit()
            finally:
                try:
                    await session.close()
                except SQLAlchemyError as e:
                    logger.warning(f"Failed to close session cleanly: {e}")

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        from .models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug(f"Database tables ready: {sorted(Base.metadata.tables.keys())}")

    async def close(self) -> None:
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.debug("Database engine closed")
