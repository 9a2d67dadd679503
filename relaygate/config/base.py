"""Base configuration settings."""
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings as PydanticBaseSettings
from pydantic_settings import NoDecode, SettingsConfigDict


class BaseSettings(PydanticBaseSettings):
    """Settings every Relaygate process reads, whatever it serves."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    ENVIRONMENT: Literal["development", "test", "production"] = Field(
        default="development", description="Deployment environment"
    )
    DEBUG: bool = Field(default=True, description="Verbose logs and error details")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )

    API_V1_STR: str = Field(default="/api/v1", description="Prefix for the HTTP API")
    PROJECT_NAME: str = Field(default="Relaygate")

    SECRET_KEY: str = Field(
        ..., min_length=32, description="HS256 key for user bearer tokens"
    )

    # Accepts "https://a.example, https://b.example" from the environment
    CORS_ORIGINS: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Origins allowed to call the session API from a browser",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"
