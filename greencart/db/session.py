from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from greencart.config import Settings, settings


def build_engine(url: str, app_settings: Settings = settings) -> AsyncEngine:
    """Async engine for the run store.

    SQLite (aiosqlite) gets no pool: each session opens its own connection, which
    keeps tick tasks and request handlers from sharing one across loops.
    """
    kwargs: dict[str, Any] = {"echo": app_settings.DEBUG}
    if url.startswith("sqlite"):
        return create_async_engine(url, poolclass=NullPool, **kwargs)
    return create_async_engine(
        url,
        pool_pre_ping=app_settings.DB_POOL_PRE_PING,
        pool_size=app_settings.DB_POOL_SIZE,
        max_overflow=app_settings.DB_MAX_OVERFLOW,
        pool_timeout=app_settings.DB_POOL_TIMEOUT_SECONDS,
        pool_recycle=app_settings.DB_POOL_RECYCLE_SECONDS,
        **kwargs,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Run records are read after commit (finalize, list), so attributes must not expire.
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session
