"""FastAPI dependencies that hand out the gateway's collaborators."""
from fastapi import Depends, HTTPException, Request, status

from relaygate.adapters.relay import RelayClient
from relaygate.core.dependencies import Gateway
from relaygate.core.security import get_current_user_id
from relaygate.models.session import WhatsAppSession
from relaygate.services.connection_monitor import ConnectionMonitor
from relaygate.services.conversation_service import ConversationService
from relaygate.services.session_manager import SessionManager
from relaygate.services.webhook_handler import WebhookHandler


def get_gateway(request: Request) -> Gateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WhatsApp gateway is not running",
        )
    return gateway


def get_session_manager(gateway: Gateway = Depends(get_gateway)) -> SessionManager:
    return gateway.session_manager


def get_conversation_service(gateway: Gateway = Depends(get_gateway)) -> ConversationService:
    return gateway.conversations


def get_webhook_handler(gateway: Gateway = Depends(get_gateway)) -> WebhookHandler:
    return gateway.webhook_handler


def get_connection_monitor(gateway: Gateway = Depends(get_gateway)) -> ConnectionMonitor:
    return gateway.monitor


def get_relay_client(gateway: Gateway = Depends(get_gateway)) -> RelayClient:
    return gateway.relay


async def get_owned_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    session_manager: SessionManager = Depends(get_session_manager),
) -> WhatsAppSession:
    """Session from the path, 404 when missing and 403 when someone else owns it."""
    record = await session_manager.get_session_by_id(session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if record.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session")
    return record
