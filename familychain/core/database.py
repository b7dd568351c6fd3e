"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import Settings
from .logging import get_logger


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on SQLite.

    pysqlite's implicit transaction handling breaks SAVEPOINT, which the
    reconciliation engine relies on for per-event atomicity.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, settings: Settings, logger=None):
        self.settings = settings
        self.logger = (logger or get_logger(__name__)).bind(service="database")

        sqlite_path = settings.sqlite_path()
        if sqlite_path is not None:
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(
            settings.async_database_url,
            echo=settings.debug,
            **settings.database_engine_options(),
        )
        if settings.is_sqlite:
            _enable_sqlite_savepoints(self.engine)

        self.session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with automatic cleanup.

        Usage:
            async with database.session() as session:
                # Use session here
                pass
        """
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def create_tables(self) -> None:
        """Create all tables (development and tests; use alembic otherwise)."""
        from ..models import BaseModel

        self.logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(BaseModel.metadata.create_all)
        self.logger.info("Database tables created")

    async def drop_tables(self) -> None:
        """Drop all tables (use with caution!)."""
        from ..models import BaseModel

        self.logger.warning("Dropping all database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(BaseModel.metadata.drop_all)
        self.logger.warning("All database tables dropped")

    async def health_check(self) -> bool:
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            self.logger.error("Database health check failed", error=str(e))
            return False

    async def close(self) -> None:
        self.logger.info("Closing database connections")
        await self.engine.dispose()


async def open_database(settings: Settings, logger=None, create: Optional[bool] = None) -> Database:
    """Create a Database and, for SQLite by default, its tables."""
    database = Database(settings, logger=logger)
    if create is None:
        create = settings.is_sqlite
    if create:
        await database.create_tables()
    return database
