from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers the tables on SQLModel.metadata

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Pick the async driver for plain ``sqlite://``/``postgresql://`` URLs."""
    if database_url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    if database_url.startswith("postgres://"):
        return "postgresql+asyncpg://" + database_url[len("postgres://"):]
    if database_url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + database_url[len("postgresql://"):]
    return database_url


class WorkflowDB:
    """Async database helper shared by the SQL store and its transactions."""

    def __init__(self, database_url: str) -> None:
        self.database_url = normalize_database_url(database_url)
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_async_engine(
            self.database_url, echo=False, future=True, connect_args=connect_args
        )
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        self._initialized = False

    async def init_db(self) -> None:
        if self._initialized:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True
        logger.debug(f"Schema ready for {self.engine.url.render_as_string(hide_password=True)}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction that commits on exit."""
        await self.init_db()
        async with self._sessions() as session:
            async with session.begin():
                yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
