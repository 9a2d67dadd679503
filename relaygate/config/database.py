"""Database configuration."""

from pydantic import Field, field_validator

from .base import BaseSettings


class DatabaseConfig(BaseSettings):
    """Database configuration settings."""

    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./relaygate.db",
        description="PostgreSQL or SQLite database URL",
    )
    DATABASE_POOL_SIZE: int = Field(
        default=5, ge=1, le=20, description="Database connection pool size"
    )
    DATABASE_MAX_OVERFLOW: int = Field(
        default=10, ge=0, le=50, description="Database max overflow connections"
    )
    DATABASE_ECHO: bool = Field(default=False, description="Echo SQL queries")

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(
            ("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")
        ):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite URL")
        return v

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.DATABASE_URL

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")
