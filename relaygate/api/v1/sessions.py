"""Session endpoints for the signed-in user."""
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from relaygate.adapters.relay import RelayClient
from relaygate.api.deps import get_owned_session, get_relay_client, get_session_manager
from relaygate.core.exceptions import GatewayError, SessionAlreadyExists, SessionNotFound
from relaygate.core.security import get_current_user_id
from relaygate.models.session import SessionStatus, WhatsAppSession
from relaygate.schemas.session import (
    ProviderInfoRead,
    QRCodeRead,
    SendMessageRequest,
    SendMessageResult,
    SessionRead,
    SessionStatusRead,
)
from relaygate.services.message_converter import format_phone_number, to_outbound_message
from relaygate.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


@router.post("/sessions", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def connect(
    user_id: str = Depends(get_current_user_id),
    session_manager: SessionManager = Depends(get_session_manager),
):
    """Create a relay session and return it with its first QR code."""
    try:
        record = await session_manager.create_session(user_id)
    except SessionAlreadyExists as e:
        existing = await session_manager.get_active_session(user_id)
        details = dict(e.details)
        if existing is not None:
            details["session"] = SessionRead.model_validate(existing).model_dump(mode="json")
        return JSONResponse(
            status_code=e.status_code,
            content={"error": e.error_code, "message": e.message, "details": details},
        )
    return SessionRead.model_validate(record)


@router.get("/sessions", response_model=list[SessionRead])
async def list_sessions(
    user_id: str = Depends(get_current_user_id),
    session_manager: SessionManager = Depends(get_session_manager),
):
    sessions = await session_manager.get_user_sessions(user_id)
    return [SessionRead.model_validate(s) for s in sessions]


@router.get("/sessions/{session_id}/status", response_model=SessionStatusRead)
async def session_status(
    record: WhatsAppSession = Depends(get_owned_session),
    session_manager: SessionManager = Depends(get_session_manager),
    relay: RelayClient = Depends(get_relay_client),
):
    """Live status from the relay, correcting the stored status when they disagree."""
    session_id = record.external_session_id
    try:
        live = await relay.get_session_status(session_id)
    except SessionNotFound:
        logger.warning(f"Session {session_id} is gone on the relay")
        if not record.status.is_terminal:
            record = await session_manager.update_session_status(
                session_id, SessionStatus.DISCONNECTED, error="Session no longer exists on relay"
            )
        return SessionStatusRead(session_id=session_id, status=record.status, is_connected=False)
    except GatewayError as e:
        logger.warning(f"Relay status check failed for {session_id}: {e.message}")
        return SessionStatusRead(
            session_id=session_id,
            status=record.status,
            is_connected=record.status == SessionStatus.CONNECTED,
            phone_number=record.display_phone_number,
            provider_reachable=False,
        )

    if live.is_connected and record.status != SessionStatus.CONNECTED:
        record = await session_manager.mark_connected(session_id, live.phone_number)
    elif not live.is_connected and record.status == SessionStatus.CONNECTED:
        # a lost connection is retried with backoff, only a logout ends the session
        await session_manager.handle_disconnection(session_id, "status_check_failed")
        record = await session_manager.get_session_by_id(session_id) or record

    return SessionStatusRead(
        session_id=session_id,
        status=record.status,
        is_connected=live.is_connected,
        phone_number=record.display_phone_number,
    )


@router.get("/sessions/{session_id}/qr", response_model=QRCodeRead)
async def refresh_qr(
    record: WhatsAppSession = Depends(get_owned_session),
    session_manager: SessionManager = Depends(get_session_manager),
):
    updated = await session_manager.refresh_qr_code(record.external_session_id)
    return QRCodeRead(
        session_id=updated.external_session_id,
        qr_code=updated.qr_code or "",
        expires_at=updated.qr_expires_at,
    )


@router.delete("/sessions/{session_id}", response_model=SessionRead)
async def disconnect(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    session_manager: SessionManager = Depends(get_session_manager),
):
    record = await session_manager.disconnect_session(session_id, user_id)
    return SessionRead.model_validate(record)


@router.post("/sessions/{session_id}/messages", response_model=SendMessageResult)
async def send_message(
    request: SendMessageRequest,
    record: WhatsAppSession = Depends(get_owned_session),
    relay: RelayClient = Depends(get_relay_client),
):
    """Send canonical content from the user's account."""
    message = to_outbound_message(request.content)
    result = await relay.send_message(
        record.external_session_id, format_phone_number(request.to), message
    )
    return SendMessageResult(message_id=result.message_id, status=result.status)


@router.get("/provider", response_model=ProviderInfoRead)
async def provider_info(
    _: str = Depends(get_current_user_id),
    relay: RelayClient = Depends(get_relay_client),
):
    return ProviderInfoRead(**relay.info())
