"""Database connection and session management.

All postmortem, embedding and recommendation-cache state lives in one
relational store. SQLite (aiosqlite) is the default backend; any async
SQLAlchemy URL works.
"""

from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from postmortem_kg.config import settings


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Set SQLite pragmas for better concurrency.

    WAL mode lets recommendation readers proceed while a refresh swaps the
    cached set, and foreign keys make incident deletes cascade.
    """
    cursor = dbapi_conn.cursor()
    # WAL mode: allows readers while writing
    cursor.execute("PRAGMA journal_mode=WAL")
    # 30 second timeout for busy connections
    cursor.execute("PRAGMA busy_timeout=30000")
    # Synchronous=NORMAL is safe with WAL and faster
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, enabling the SQLite pragmas when applicable."""
    new_engine = create_async_engine(url, echo=echo)
    if url.startswith("sqlite"):
        event.listen(new_engine.sync_engine, "connect", _set_sqlite_pragma)
    return new_engine


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory for ``bind``."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Create async engine
engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Create session factory
async_session_maker = create_session_maker(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (no migrations; existing tables are left as-is)."""
    from postmortem_kg.db.models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get a database session."""
    async with async_session_maker() as session:
        yield session
