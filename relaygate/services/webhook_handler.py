"""Webhook handler service for processing relay events."""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from relaygate.adapters.completion import CompletionClient
from relaygate.adapters.relay import KeepAliveCapable, RelayClient
from relaygate.core.exceptions import GatewayError, InvalidState, SessionNotFound
from relaygate.models import (
    Conversation,
    DeliveryStatus,
    MessageDirection,
    SessionStatus,
    WhatsAppSession,
)
from relaygate.models.base import utcnow
from relaygate.schemas.message import CanonicalMessage
from relaygate.schemas.webhook import WebhookEnvelope, WebhookEventType, normalize_inbound_message
from relaygate.services.conversation_service import ConversationService
from relaygate.services.message_converter import (
    extract_phone_number,
    format_plain_text,
    is_reset_command,
    split_long_message,
    to_canonical,
)
from relaygate.services.session_manager import SessionManager
from relaygate.services.stream_reassembler import FALLBACK_REPLY, reassemble

logger = logging.getLogger(__name__)

RESET_CONFIRMATION = (
    "✅ Conversation reset! I'm ready to help you with a fresh start. "
    "What can I assist you with today?"
)
ERROR_REPLY = "Sorry, I encountered an error processing your message. Please try again."
QR_EVENT_TTL = timedelta(minutes=5)


@dataclass
class _SendLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class WebhookHandler:
    """Service for handling relay webhook events."""

    def __init__(
        self,
        session_manager: SessionManager,
        conversations: ConversationService,
        client: RelayClient,
        completion: CompletionClient,
    ):
        self.session_manager = session_manager
        self.conversations = conversations
        self.client = client
        self.completion = completion
        # one outbound response at a time per session
        self._send_locks: dict[str, _SendLock] = {}

    async def handle_webhook(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        """Process incoming webhook event."""
        logger.info(f"Processing webhook event: {envelope.event} for session {envelope.session_id}")

        handlers = {
            WebhookEventType.MESSAGE: self._handle_message,
            WebhookEventType.STATUS: self._handle_status,
            WebhookEventType.QR: self._handle_qr,
            WebhookEventType.CONNECTED: self._handle_connected,
            WebhookEventType.DISCONNECTED: self._handle_disconnected,
        }

        try:
            event_type = WebhookEventType(envelope.event)
        except ValueError:
            logger.warning(f"Unknown event type: {envelope.event}")
            return {"status": "ignored", "reason": "unknown_event_type"}

        try:
            return await handlers[event_type](envelope)
        except (SessionNotFound, InvalidState) as e:
            logger.warning(f"Ignoring {event_type.value} event for {envelope.session_id}: {e.message}")
            return {"status": "ignored", "reason": e.error_code.lower()}

    # Messages

    async def _handle_message(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        inbound = normalize_inbound_message(envelope)
        if inbound is None:
            logger.warning("Invalid message payload, no sender found")
            return {"status": "ignored", "reason": "missing_sender"}
        if inbound.from_me:
            return {"status": "ignored", "reason": "own_message"}

        logger.info(
            f"Processing message from {inbound.from_jid} with ID {inbound.external_message_id}"
        )
        session = await self.session_manager.get_session_by_id(inbound.session_id)
        if session is None:
            logger.error(f"Session not found: {inbound.session_id}")
            return {"status": "ignored", "reason": "unknown_session"}

        if session.status != SessionStatus.CONNECTED:
            await self._reconcile_session_status(session)

        conversation = await self.conversations.find_or_create(
            user_id=session.user_id,
            external_contact_id=inbound.from_jid,
            phone_number=extract_phone_number(inbound.from_jid),
            contact_name=inbound.push_name,
            session_id=session.external_session_id,
        )

        canonical = to_canonical(inbound, session.user_id)
        if canonical is None:
            logger.warning(f"No usable content in message {inbound.external_message_id}")
            return {"status": "ignored", "reason": "unsupported_content"}

        if isinstance(canonical.content, str) and is_reset_command(canonical.content):
            return await self._handle_reset(session, conversation, inbound.from_jid)

        await self._track(conversation.id, inbound.external_message_id, MessageDirection.INCOMING)
        await self.conversations.append_chat_messages(conversation.chat_id, canonical)

        replied = await self._process_with_completion(
            session, conversation, canonical, inbound.from_jid
        )
        return {
            "status": "processed" if replied else "failed",
            "message_id": inbound.external_message_id,
            "conversation_id": conversation.id,
        }

    async def _reconcile_session_status(self, session: WhatsAppSession) -> None:
        """A message arrived, so the relay may know better than the stored status."""
        session_id = session.external_session_id
        logger.warning(f"Message for session {session_id} in status {session.status.value}")
        try:
            status = await self.client.get_session_status(session_id)
            if status.is_connected:
                logger.info(f"Relay reports {session_id} connected, correcting stored status")
                await self.session_manager.mark_connected(session_id, status.phone_number)
        except GatewayError as e:
            logger.error(f"Failed to reconcile status of {session_id}: {e.message}")

    async def _handle_reset(
        self, session: WhatsAppSession, conversation: Conversation, to: str
    ) -> dict[str, Any]:
        logger.info(f"Reset command received, clearing chat {conversation.chat_id}")
        removed = await self.conversations.reset_chat_history(conversation.chat_id)
        try:
            result = await self.client.send_text(session.external_session_id, to, RESET_CONFIRMATION)
        except GatewayError as e:
            logger.error(f"Failed to confirm reset to {to}: {e.message}")
        else:
            await self._track(
                conversation.id, result.message_id, MessageDirection.OUTGOING, DeliveryStatus.SENT
            )
        return {"status": "reset", "removed_messages": removed, "conversation_id": conversation.id}

    async def _process_with_completion(
        self,
        session: WhatsAppSession,
        conversation: Conversation,
        message: CanonicalMessage,
        to: str,
    ) -> bool:
        session_id = session.external_session_id
        try:
            reply = await reassemble(
                self.completion.stream(
                    message,
                    chat_id=conversation.chat_id,
                    session_id=session_id,
                    phone_number=conversation.phone_number,
                )
            )
            if not reply:
                logger.warning(f"Empty completion for chat {conversation.chat_id}, using fallback")
                reply = FALLBACK_REPLY

            await self.send_response(session_id, to, reply, conversation_id=conversation.id)

            assistant = CanonicalMessage(id=str(uuid.uuid4()), role="assistant", content=reply)
            await self.conversations.append_chat_messages(conversation.chat_id, assistant)
            await self.conversations.update_title_if_default(
                conversation.chat_id, message.text or reply
            )
            return True
        except Exception as e:
            logger.error(f"Completion processing failed for chat {conversation.chat_id}: {e}", exc_info=True)
            await self._notify_failure(session_id, to)
            return False

    async def _notify_failure(self, session_id: str, to: str) -> None:
        try:
            await self.client.send_text(session_id, to, ERROR_REPLY)
        except GatewayError as e:
            if e.status_code >= 500:
                logger.error(
                    f"Cannot send error message, session {session_id} appears disconnected "
                    f"on the {self.client.name} relay ({e.message})"
                )
                logger.error(
                    f"Reauthenticate session {session_id}: restart the relay deployment "
                    "and scan the QR code again"
                )
            else:
                logger.error(f"Could not deliver error message to {to}: {e.message}")

    @asynccontextmanager
    async def session_send_lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the send lock of a session. The lock is dropped once nobody uses it."""
        entry = self._send_locks.setdefault(session_id, _SendLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._send_locks[session_id]

    async def send_response(
        self,
        session_id: str,
        to: str,
        text: str,
        conversation_id: int | None = None,
    ) -> list[str]:
        """
        Format, split and send a reply in order.

        Keep-alive runs for the whole send on backends that support it and is
        stopped even when a part fails.
        """
        async with self.session_send_lock(session_id):
            keep_alive = isinstance(self.client, KeepAliveCapable)
            if keep_alive:
                self.client.start_keep_alive(session_id)
                logger.info(f"Started keep-alive for session {session_id}")
            try:
                formatted = format_plain_text(text)
                if "\\n" in formatted and "\n" not in formatted:
                    logger.warning("Reply contains escaped newlines, unescaping")
                    formatted = formatted.replace("\\n", "\n")
                if not formatted.strip():
                    logger.warning(f"Reply for {to} is empty after formatting, using fallback")
                    formatted = FALLBACK_REPLY

                parts = [part for part in split_long_message(formatted) if part.strip()]
                logger.info(f"Message split into {len(parts)} parts")

                message_ids = []
                for index, part in enumerate(parts, start=1):
                    logger.debug(f"Sending part {index}/{len(parts)}, length: {len(part)}")
                    result = await self.client.send_text(session_id, to, part)
                    message_ids.append(result.message_id)
                    if conversation_id is not None:
                        await self._track(
                            conversation_id,
                            result.message_id,
                            MessageDirection.OUTGOING,
                            DeliveryStatus.SENT,
                        )
                return message_ids
            finally:
                if keep_alive:
                    self.client.stop_keep_alive(session_id)
                    logger.info(f"Stopped keep-alive for session {session_id}")

    async def _track(
        self,
        conversation_id: int,
        external_message_id: str,
        direction: MessageDirection,
        status: DeliveryStatus | None = None,
    ) -> None:
        try:
            await self.conversations.track_message(
                conversation_id, external_message_id, direction, status
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to track message {external_message_id}: {e}")

    # Delivery and connection events

    async def _handle_status(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        data = envelope.data
        message_id = data.message_id or (data.key.id if data.key else None)
        if not message_id or not data.status:
            return {"status": "ignored", "reason": "missing_fields"}
        try:
            status = DeliveryStatus(data.status.lower())
        except ValueError:
            logger.warning(f"Unknown delivery status {data.status!r} for {message_id}")
            return {"status": "ignored", "reason": "unknown_status"}

        tracked = await self.conversations.update_message_status(message_id, status, data.error)
        if tracked is None:
            logger.warning(f"Message not found for update: {message_id}")
            return {"status": "not_found", "message_id": message_id}
        logger.info(f"Updated message status: {message_id} -> {status.value}")
        return {"status": "updated", "message_id": message_id}

    async def _handle_qr(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        qr_code = envelope.data.qr or envelope.data.qr_code
        if not qr_code:
            return {"status": "ignored", "reason": "missing_qr"}
        await self.session_manager.update_session_status(
            envelope.session_id,
            SessionStatus.QR_PENDING,
            qr_code=qr_code,
            qr_expires_at=utcnow() + QR_EVENT_TTL,
        )
        return {"status": "updated", "session_id": envelope.session_id}

    async def _handle_connected(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        phone = envelope.data.phone_number
        if phone and "@" in phone:
            phone = extract_phone_number(phone)
        await self.session_manager.mark_connected(envelope.session_id, phone or None)
        logger.info(f"Session connected: {envelope.session_id} ({phone or 'unknown number'})")
        return {"status": "connected", "session_id": envelope.session_id}

    async def _handle_disconnected(self, envelope: WebhookEnvelope) -> dict[str, Any]:
        data = envelope.data
        reason = data.reason or data.error or "connection_closed"
        await self.session_manager.handle_disconnection(envelope.session_id, reason)
        return {"status": "disconnected", "session_id": envelope.session_id, "reason": reason}
