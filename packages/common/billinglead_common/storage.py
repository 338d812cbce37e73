"""Async storage client shared by the ingestion components.

One ``StorageClient`` is opened at startup and closed at shutdown; every
component that touches the database receives it at construction time.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from billinglead_common.config import DatabaseSettings
from billinglead_common.database import Base

logger = logging.getLogger(__name__)


class StorageNotOpenError(RuntimeError):
    """Raised when the storage client is used before ``open()`` or after ``close()``."""


class StorageClient:
    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self.settings = settings or DatabaseSettings.from_environment()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageNotOpenError("Storage client is not open. Call open() first.")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        """Create the engine and, when configured, the schema."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.settings.database_url, echo=self.settings.echo)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        if self.settings.create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Storage opened (%s)", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Storage closed")

    def session(self) -> AsyncSession:
        if self._session_factory is None:
            raise StorageNotOpenError("Storage client is not open. Call open() first.")
        return self._session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one transaction: commit on success, rollback on error."""
        async with self.session() as session:
            async with session.begin():
                yield session

    async def __aenter__(self) -> "StorageClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
