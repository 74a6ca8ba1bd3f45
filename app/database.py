"""Async engine and sessions for the short-link service.

Two kinds of session share one engine:

Session Ownership
=================
::
    request session (get_db)                background session (async_session)
    ────────────────────────                ──────────────────────────────────
    one per HTTP request                    one per unit of background work
    LinkStore, UsageMeter,                  AnalyticsRecorder.record / sweep /
    SubscriptionDirectory                   reports, PlanCatalog.refresh
    quota reservation + link INSERT         click event INSERT + its
    commit together                         "analytics" reservation

    Both are created with expire_on_commit=False so a committed Link can be
    serialized after the commit. A rollback still expires loaded instances;
    callers read ids and values they need before any write that may fail.

Backends
========
- PostgreSQL through asyncpg in deployments, with a sized connection pool.
- SQLite through aiosqlite for tests and local runs; pool sizing is skipped.
- ``UsageMeter`` relies on ``INSERT ... ON CONFLICT DO NOTHING``, available on
  both. Other dialects are rejected when the first usage row is written.

Lifecycle
=========
``init_db()`` creates missing tables at startup (see ``app.main.lifespan``);
``close_db()`` disposes the engine at shutdown and after a standalone sweep run.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

__all__ = ["Base", "async_session", "engine", "get_db", "init_db", "close_db"]

settings = get_settings()

_engine_options: dict = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
if not settings.DATABASE_URL.startswith("sqlite"):
    _engine_options.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)

engine = create_async_engine(settings.DATABASE_URL, **_engine_options)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
