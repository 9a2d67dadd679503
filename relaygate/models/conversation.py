from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .message import TrackedMessage


class Conversation(Base):
    """Maps one external contact address to one chat thread."""

    __tablename__ = "whatsapp_conversation"
    __table_args__ = (UniqueConstraint("user_id", "external_contact_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chat_id: Mapped[str] = mapped_column(ForeignKey("chat.id"), nullable=False)
    external_contact_id: Mapped[str] = mapped_column(String(160), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(255))
    # External id of the session the conversation was first seen on
    session_id: Mapped[str | None] = mapped_column(String(128), index=True)

    messages: Mapped[list["TrackedMessage"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )
