"""Async database engine and session management."""
from __future__ import annotations

import asyncio

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from notarium.infrastructure.config import DatabaseSettings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Owns the async engine and the session factory for one database URL."""

    def __init__(self, settings: DatabaseSettings) -> None:
        self.url = settings.url
        kwargs: dict = {"echo": settings.echo}
        if self.is_sqlite:
            kwargs["connect_args"] = {"timeout": settings.sqlite_busy_timeout}
        else:
            kwargs.update(
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_timeout=settings.pool_timeout,
                pool_recycle=settings.pool_recycle,
                pool_pre_ping=True,
            )
        self.engine: AsyncEngine = create_async_engine(settings.url, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        # SQLite admits one writer at a time.
        self.write_lock: asyncio.Lock | None = asyncio.Lock() if self.is_sqlite else None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def init_schema(self) -> None:
        from notarium.infrastructure.persistence import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready", url=self.engine.url.render_as_string(hide_password=True))

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("database_disposed")
