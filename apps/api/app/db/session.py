"""Async engine, session factory, and request-scoped session dependency."""
from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import settings

logger = logging.getLogger(__name__)

connect_args: dict[str, object] = {}
if settings.database_ssl_required:
    connect_args["ssl"] = True

engine = create_async_engine(
    settings.database_async_url,
    echo=False,
    pool_pre_ping=True,
    connect_args=connect_args,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for one request.

    The session is handed out outside any transaction; services open their own
    ``session.begin()`` blocks so a failed side effect cannot roll back a
    transcript that was already committed.
    """

    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session with a single committed transaction, for scripts."""

    async with SessionLocal() as session:
        async with session.begin():
            yield session


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database engine disposed")
