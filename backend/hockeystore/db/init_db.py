"""
Database Initialization

Owns the async engine and session factory for the store. A Database is built
explicitly at startup and handed to every component that needs it; nothing in
the package opens its own connection.

SQLite specifics:
- WAL journal, busy timeout and foreign keys are set on every connection
- Every transaction starts with BEGIN IMMEDIATE so concurrent writers are
  serialized by SQLite itself instead of failing on a stale read snapshot
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def _configure_sqlite(engine) -> None:
    """Install connection and transaction hooks for SQLite engines."""

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy so BEGIN below is honoured
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Store handle with an explicit lifecycle.

    Usage:
        database = Database(settings.database_url)
        await database.create_all()
        async with database.transaction() as session:
            ...
        await database.dispose()
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {
                "timeout": 30,  # 30 second timeout for lock acquisition
                "check_same_thread": False
            }

        self.engine = create_async_engine(
            url,
            echo=echo,
            connect_args=connect_args,
            pool_pre_ping=True,  # Verify connections before using
        )
        if self.engine.dialect.name == "sqlite":
            _configure_sqlite(self.engine)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database schema ready at {self.engine.url.render_as_string(hide_password=True)}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; caller controls transactions."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session inside a single atomic transaction.

        Commits when the block exits normally, rolls back on any exception.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")


def get_database(request: Request) -> Database:
    """FastAPI dependency returning the app's store handle."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions in FastAPI.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_database(request).session() as session:
        yield session
