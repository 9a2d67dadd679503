"""Pydantic schemas for Relaygate."""
from .message import CanonicalMessage, OutboundMessage
from .session import SessionRead
from .webhook import InboundMessage, WebhookEnvelope, WebhookEventType

__all__ = [
    "CanonicalMessage",
    "InboundMessage",
    "OutboundMessage",
    "SessionRead",
    "WebhookEnvelope",
    "WebhookEventType",
]
