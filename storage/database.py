"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages database connections and sessions for the key store.

- Async engine with connection pooling
- Session factory
- Transaction scope with rollback on any failure
- Health checks

============================================================
DATABASE REQUIREMENTS
============================================================
- PostgreSQL (asyncpg) in production
- SQLite (aiosqlite) for development and tests
- SQLAlchemy 2.x async ORM

============================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.exceptions import StorageError
from storage.models import Base


logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./market_data.db"


@dataclass
class DatabaseConfig:
    """Connection settings."""
    url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout_seconds: int = 30
    pool_recycle_seconds: int = 1800

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def safe_url(self) -> str:
        """URL without credentials, for logging."""
        return self.url.split("@")[-1]

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """
        Load from environment variables.

        Environment variables:
        - DATABASE_URL (postgresql:// is rewritten to postgresql+asyncpg://)
        - DATABASE_ECHO
        - DATABASE_POOL_SIZE
        """
        config = cls()
        url = os.getenv("DATABASE_URL")
        if url:
            if url.startswith("postgresql://"):
                url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
            config.url = url
        else:
            logger.warning(f"DATABASE_URL not set, using default: {DEFAULT_DATABASE_URL}")
        if os.getenv("DATABASE_ECHO"):
            config.echo = os.getenv("DATABASE_ECHO", "").lower() in ("1", "true", "yes")
        if os.getenv("DATABASE_POOL_SIZE"):
            config.pool_size = int(os.getenv("DATABASE_POOL_SIZE"))
        return config


class Database:
    """
    Owns the async engine and session factory.

    Usage:
        database = Database(DatabaseConfig.from_env())
        await database.connect()
        async with transaction_scope(database.session_factory) as session:
            ...
        await database.disconnect()
    """

    def __init__(self, config: Optional[DatabaseConfig] = None) -> None:
        self._config = config or DatabaseConfig()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageError("Database is not connected", operation="engine")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise StorageError("Database is not connected", operation="session_factory")
        return self._session_factory

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Create engine and session factory."""
        if self._engine is not None:
            return

        logger.info(f"Creating database engine for: {self._config.safe_url}")

        kwargs = {"echo": self._config.echo}
        if not self._config.is_sqlite:
            kwargs.update(
                pool_size=self._config.pool_size,
                max_overflow=self._config.max_overflow,
                pool_timeout=self._config.pool_timeout_seconds,
                pool_recycle=self._config.pool_recycle_seconds,
                pool_pre_ping=True,
            )

        self._engine = create_async_engine(self._config.url, **kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None

    async def create_tables(self) -> None:
        """Create tables that do not exist yet."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables verified")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise StorageError(f"Table creation failed: {e}", operation="create_tables", cause=e) from e

    async def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False


@asynccontextmanager
async def transaction_scope(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str = "transaction",
) -> AsyncIterator[AsyncSession]:
    """
    Explicit transaction boundary.

    Commits if the block exits normally and a transaction is still
    open (the block may roll back itself to abandon its work).
    Rolls back on ANY exception; database errors are re-raised as
    StorageError.

    Usage:
        async with transaction_scope(factory, "lease_key") as session:
            record = (await session.execute(stmt)).scalars().first()
            ...
    """
    session = session_factory()
    try:
        yield session
        if session.in_transaction():
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction '{operation}' failed, rolling back: {e}")
        await session.rollback()
        raise StorageError(f"Transaction failed: {e}", operation=operation, cause=e) from e
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = [
    "DEFAULT_DATABASE_URL",
    "DatabaseConfig",
    "Database",
    "transaction_scope",
]
