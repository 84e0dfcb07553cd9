"""
Customer Provisioning — Database Engine & Sessions
===================================================

What:  Async SQLAlchemy engine and session factory builders, plus the
       declarative Base shared by models and Alembic.
How:   `make_engine()` receives the URL and pool settings explicitly; the app
       lifespan and the test fixtures build their own engines. Nothing here
       reads configuration at import time.

Connection Pooling Strategy (PostgreSQL):
    pool_size=20, max_overflow=10, pool_pre_ping, pool_recycle=3600.
    PostgreSQL's default max_connections is 100; 30 leaves room for
    migrations and other processes.

SQLite (tests, local development):
    aiosqlite with WAL and busy_timeout so concurrent writers queue on the
    database lock and the loser of an insert race sees the unique constraint
    instead of "database is locked".
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models; its metadata feeds Alembic autogenerate."""
    pass


def normalize_async_url(url: str) -> str:
    """Map plain driver URLs onto their async drivers."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def make_engine(
    database_url: str,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> AsyncEngine:
    """
    Build the async engine for `database_url`.

    Pool sizing only applies to server databases; SQLite gets the pragmas
    that make concurrent inserts behave.
    """
    url = normalize_async_url(database_url)
    kwargs = {"pool_pre_ping": pool_pre_ping, "echo": echo}

    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=3600,
        )

    engine = create_async_engine(url, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.close()

    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory handed to CustomerLinkStore.

    expire_on_commit=False keeps returned CustomerLink objects readable after
    the store's per-call transaction has committed and closed.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables directly. Used by tests and local SQLite setups; production uses Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    """Close all pooled connections. Called during application shutdown."""
    await engine.dispose()
