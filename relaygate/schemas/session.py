from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relaygate.models.session import PENDING_PHONE_PREFIX, SessionStatus
from relaygate.schemas.message import ContentPart


class SessionRead(BaseModel):
    """Session as shown to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    external_session_id: str
    user_id: str
    phone_number: str
    status: SessionStatus
    qr_code: str | None = None
    qr_expires_at: datetime | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("phone_number")
    @classmethod
    def hide_placeholder(cls, v: str) -> str:
        """Placeholder numbers are an internal detail."""
        return "" if v.startswith(PENDING_PHONE_PREFIX) else v


class QRCodeRead(BaseModel):
    session_id: str
    qr_code: str
    expires_at: datetime | None = None


class SessionStatusRead(BaseModel):
    session_id: str
    status: SessionStatus
    is_connected: bool
    phone_number: str = ""
    provider_reachable: bool = True


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chat_id: str
    external_contact_id: str
    phone_number: str
    contact_name: str | None = None
    session_id: str | None = None
    created_at: datetime
    updated_at: datetime


class SendMessageRequest(BaseModel):
    to: str = Field(..., min_length=3, description="Recipient JID or phone number")
    content: str | list[ContentPart]


class SendMessageResult(BaseModel):
    message_id: str
    status: str


class MonitorAction(str, Enum):
    START = "start"
    STOP = "stop"
    FORCE_RECONNECT = "force_reconnect"


class MonitorCommand(BaseModel):
    action: MonitorAction
    session_id: str | None = None


class MonitorStatusRead(BaseModel):
    running: bool
    interval: float
    last_tick_at: datetime | None = None
    last_cleanup_at: datetime | None = None
    sessions_checked: int = 0
    failures: int = 0


class ProviderInfoRead(BaseModel):
    name: str
    base_url: str
    supports_keep_alive: bool
