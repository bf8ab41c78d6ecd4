"""
Async engine, session factory and the declarative Base.

The API process shares one module-level engine. Celery tasks get their own
engine per task run via task_session_factory(), since each task runs on a
fresh event loop and asyncpg connections cannot cross loops.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from payhook.core.config import settings

Base = declarative_base()


def _create_engine(**pool_options: Any) -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        **pool_options,
    )


def _session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = _create_engine()
AsyncSessionLocal = _session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request"""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory bound to an engine that lives only for one Celery task run."""
    task_engine = _create_engine(pool_size=5, max_overflow=10)
    try:
        yield _session_factory(task_engine)
    finally:
        await task_engine.dispose()
