from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_url(database_url: str) -> str:
    """Map plain ``sqlite://``/``postgres://`` URLs onto async drivers."""
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


class Database:
    """Simple async database helper for execution persistence."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_url(database_url)
        connect_args = {"check_same_thread": False} if self.url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            self.url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.init_db()
        async with AsyncSession(self.engine) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
