"""Async engine and session factory."""
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from relaygate.config.database import DatabaseConfig
from relaygate.models.base import Base

logger = logging.getLogger(__name__)


def build_engine(config: DatabaseConfig) -> AsyncEngine:
    """asyncpg gets a sized pool, aiosqlite keeps SQLAlchemy's default."""
    if config.is_sqlite:
        return create_async_engine(config.async_database_url, echo=config.DATABASE_ECHO)
    return create_async_engine(
        config.async_database_url,
        pool_size=config.DATABASE_POOL_SIZE,
        max_overflow=config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=config.DATABASE_ECHO,
    )


class DatabaseManager:
    """
    Owns the engine and the session factory.

    Stores and services receive `async_session_maker` and open one short-lived
    session per operation, so they work from request handlers and from the
    monitor's background task alike.
    """

    def __init__(self, config: DatabaseConfig | None = None, engine: AsyncEngine | None = None):
        if engine is None:
            if config is None:
                raise ValueError("DatabaseManager needs a config or an engine")
            engine = build_engine(config)
        self.engine = engine
        self.async_session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Ensured {len(Base.metadata.tables)} database tables")

    async def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            async with self.engine.connect() as conn:
                return (await conn.scalar(text("SELECT 1"))) == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.engine.dispose()


def create_memory_database() -> DatabaseManager:
    """In-memory SQLite database shared across connections."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return DatabaseManager(engine=engine)
