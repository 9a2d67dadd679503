import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

PENDING_PHONE_PREFIX = "pending_"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class SessionStatus(str, enum.Enum):
    """Lifecycle status of a relay session."""

    CONNECTING = "connecting"
    QR_PENDING = "qr_pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.DISCONNECTED, SessionStatus.FAILED})
ACTIVE_STATUSES = frozenset(
    {
        SessionStatus.CONNECTING,
        SessionStatus.QR_PENDING,
        SessionStatus.CONNECTED,
        SessionStatus.RECONNECTING,
    }
)


class WhatsAppSession(Base):
    """A user's session on the hosted relay."""

    __tablename__ = "whatsapp_session"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_session_id: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    phone_number: Mapped[str] = mapped_column(String(160), nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=SessionStatus.CONNECTING,
        index=True,
    )
    qr_code: Mapped[str | None] = mapped_column(Text)
    qr_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)
    provider_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, default=dict)

    @property
    def has_confirmed_phone(self) -> bool:
        return bool(self.phone_number) and not self.phone_number.startswith(
            PENDING_PHONE_PREFIX
        )

    @property
    def display_phone_number(self) -> str:
        return self.phone_number if self.has_confirmed_phone else ""

    def __repr__(self) -> str:
        return (
            f"<WhatsAppSession {self.external_session_id} "
            f"user={self.user_id} status={self.status.value}>"
        )
