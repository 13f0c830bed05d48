"""Database base classes and engine/session helpers."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    metadata = metadata


class DatabaseNotAvailable(RuntimeError):
    """Raised when the database is used before :meth:`Database.connect`."""


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, url: str, *, echo: bool = False, **engine_options: Any) -> None:
        self._url = url
        self._echo = echo
        self._engine_options = engine_options
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return self._url

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseNotAvailable("Database engine has not been initialised")
        return self._engine

    async def connect(self) -> AsyncEngine:
        """Create the engine and session factory if needed."""

        if self._engine is not None:
            return self._engine

        async with self._lock:
            if self._engine is None:
                self._engine = create_async_engine(
                    self._url,
                    echo=self._echo,
                    **self._engine_options,
                )
                self._session_factory = async_sessionmaker(
                    self._engine,
                    expire_on_commit=False,
                )
        return self._engine

    async def create_all(self) -> None:
        """Create all tables known to :data:`metadata`."""

        engine = await self.connect()
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    def create_session(self, **kwargs: Any) -> AsyncSession:
        """Instantiate a new :class:`AsyncSession`."""

        if self._session_factory is None:
            raise DatabaseNotAvailable("Database session factory has not been initialised")
        return self._session_factory(**kwargs)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that is always closed afterwards."""

        session = self.create_session()
        try:
            yield session
        finally:
            await session.close()

    async def dispose(self) -> None:
        """Dispose of the engine and forget the session factory."""

        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None


__all__ = [
    "AsyncEngine",
    "AsyncSession",
    "Base",
    "Database",
    "DatabaseNotAvailable",
    "metadata",
]
