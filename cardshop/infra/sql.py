from typing import Tuple

from sqlalchemy import event
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Supabase / Heroku hand out postgres:// URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_sqlite(url: str) -> bool:
    return normalize_async_url(url).startswith("sqlite+aiosqlite://")


def make_async_engine(
    database_url: str, *, pool_size: int = 5, max_overflow: int = 5,
    pool_timeout: int = 30,
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    db_url = normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)

    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )
    elif is_sqlite(db_url):
        # one connection per use; nothing pooled across event loops
        kw["poolclass"] = NullPool

    engine = create_async_engine(db_url, **kw)

    if is_sqlite(db_url):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.close()

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, session_factory
