import enum
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .session import _enum_values

if TYPE_CHECKING:
    from .conversation import Conversation


class MessageDirection(str, enum.Enum):
    """Message direction enum."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"


class DeliveryStatus(str, enum.Enum):
    """Delivery status of an outgoing message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class TrackedMessage(Base):
    """Delivery observability record for one channel message."""

    __tablename__ = "whatsapp_message"

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("whatsapp_conversation.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_message_id: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    direction: Mapped[MessageDirection] = mapped_column(
        Enum(MessageDirection, native_enum=False, length=16, values_callable=_enum_values), nullable=False
    )
    status: Mapped[DeliveryStatus | None] = mapped_column(
        Enum(DeliveryStatus, native_enum=False, length=16, values_callable=_enum_values)
    )
    error_message: Mapped[str | None] = mapped_column(Text)

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")
