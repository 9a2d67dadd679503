"""Gateway entrypoint configuration."""
from typing import Literal

from pydantic import Field, field_validator

from .database import DatabaseConfig

WEBHOOK_PATH = "/api/v1/webhooks/whatsapp"


class GatewaySettings(DatabaseConfig):
    """Configuration for the Relaygate service."""

    # Service Info
    SERVICE_NAME: str = Field(default="relaygate")
    VERSION: str = Field(default="0.1.0")

    # Relay provider
    WHATSAPP_ENABLED: bool = Field(default=True, description="Enable the WhatsApp gateway")
    WHATSAPP_PROVIDER: Literal["koyeb", "flyio"] = Field(
        default="koyeb", description="Hosted relay backend"
    )
    KOYEB_BAILEYS_URL: str = Field(
        default="http://localhost:3001", description="Koyeb relay base URL"
    )
    KOYEB_API_KEY: str | None = Field(default=None, description="Koyeb relay API key")
    FLYIO_BAILEYS_URL: str = Field(
        default="http://localhost:3002", description="Fly.io relay base URL"
    )
    FLYIO_API_KEY: str | None = Field(default=None, description="Fly.io relay API key")
    RELAY_REQUEST_TIMEOUT: float = Field(
        default=30.0, ge=1.0, le=300.0, description="Relay request timeout in seconds"
    )

    # Webhook
    WHATSAPP_WEBHOOK_SECRET: str | None = Field(
        default=None, description="Shared secret for webhook HMAC signatures"
    )
    WHATSAPP_WEBHOOK_BASE_URL: str = Field(
        default="http://localhost:8000",
        description="Public base URL the relay delivers webhooks to",
    )

    # Sessions
    WHATSAPP_MAX_SESSIONS_PER_USER: int = Field(
        default=1, ge=1, le=10, description="Non-terminal sessions allowed per user"
    )
    QR_CODE_TTL: int = Field(default=300, ge=30, description="QR code lifetime in seconds")

    # Completion collaborator
    COMPLETION_API_URL: str = Field(
        default="http://localhost:3000/api/chat",
        description="Streaming chat completion endpoint",
    )
    COMPLETION_API_KEY: str | None = Field(default=None)
    COMPLETION_TIMEOUT: float = Field(default=120.0, ge=5.0, le=600.0)
    WHATSAPP_DEFAULT_MODEL: str = Field(default="openai/gpt-4o-mini")
    WHATSAPP_ENABLE_WEB_SEARCH: bool = Field(default=False)
    WHATSAPP_ENABLE_MCP: bool = Field(default=True)
    WHATSAPP_MAX_OUTPUT_TOKENS: int = Field(default=4096, ge=1)

    # Reconnection policy
    RECONNECT_MAX_ATTEMPTS: int = Field(default=5, ge=1, le=20)
    RECONNECT_BASE_DELAY: float = Field(default=1.0, ge=0.0)
    RECONNECT_MAX_DELAY: float = Field(default=30.0, ge=0.0)

    # Send retry
    SEND_MAX_RETRIES: int = Field(default=3, ge=1, le=10)
    SEND_RETRY_DELAY: float = Field(default=5.0, ge=0.0)
    KEEP_ALIVE_INTERVAL: float = Field(default=10.0, gt=0.0)

    # Connection monitor
    MONITOR_ENABLED: bool = Field(default=True)
    MONITOR_INTERVAL: float = Field(default=10.0, gt=0.0)
    MONITOR_CLEANUP_INTERVAL: float = Field(default=3600.0, gt=0.0)
    MONITOR_RECENT_ACTIVITY_WINDOW: int = Field(default=300, ge=0)
    STALE_SESSION_MAX_AGE: int = Field(default=86400, ge=60)

    @field_validator("WHATSAPP_PROVIDER", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        """Accept common spellings of the Fly.io backend."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v in ("fly", "fly.io"):
                return "flyio"
        return v

    @property
    def webhook_url(self) -> str:
        """Get full webhook URL, empty when no public base URL is configured."""
        base = self.WHATSAPP_WEBHOOK_BASE_URL.rstrip("/")
        if not base:
            return ""
        if base.endswith(WEBHOOK_PATH):
            return base
        return f"{base}{WEBHOOK_PATH}"
