"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from rideshare.app.core.config import settings


def enable_sqlite_write_locking(engine: AsyncEngine) -> AsyncEngine:
    """
    Emulate row locks on SQLite.
    
    SQLite ignores SELECT ... FOR UPDATE, so every transaction is opened
    with BEGIN IMMEDIATE instead. Writers are serialized at transaction
    start, which gives the same ordering guarantee as locking the row.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine, applying SQLite lock emulation when needed."""
    if database_url.startswith("sqlite"):
        return enable_sqlite_write_locking(
            create_async_engine(database_url, echo=settings.db_echo, future=True)
        )
    
    return create_async_engine(
        database_url,
        echo=settings.db_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        future=True,
    )


# Create async engine
engine = build_engine(settings.database_url)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.
    
    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
