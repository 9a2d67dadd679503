"""Hosted WhatsApp relay backends."""
from .base import (
    KeepAliveCapable,
    QRCodeResponse,
    RelayClient,
    RelaySession,
    SendMessageResponse,
    SessionStatusResponse,
    is_session_error,
)
from .factory import create_relay_client
from .flyio import FlyioRelayClient
from .koyeb import KoyebRelayClient

__all__ = [
    "FlyioRelayClient",
    "KeepAliveCapable",
    "KoyebRelayClient",
    "QRCodeResponse",
    "RelayClient",
    "RelaySession",
    "SendMessageResponse",
    "SessionStatusResponse",
    "create_relay_client",
    "is_session_error",
]
