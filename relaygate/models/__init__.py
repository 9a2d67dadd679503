"""Database models for Relaygate."""
from .base import Base
from .chat import DEFAULT_CHAT_TITLE, Chat
from .conversation import Conversation
from .message import DeliveryStatus, MessageDirection, TrackedMessage
from .session import ACTIVE_STATUSES, TERMINAL_STATUSES, SessionStatus, WhatsAppSession

__all__ = [
    "ACTIVE_STATUSES",
    "Base",
    "Chat",
    "Conversation",
    "DEFAULT_CHAT_TITLE",
    "DeliveryStatus",
    "MessageDirection",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "TrackedMessage",
    "WhatsAppSession",
]
