"""Session lifecycle: creation, status transitions and automatic reconnection."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from relaygate.adapters.relay import RelayClient
from relaygate.config.gateway import GatewaySettings
from relaygate.core.exceptions import (
    GatewayError,
    InvalidState,
    RateLimitExceeded,
    SessionAlreadyExists,
    SessionNotFound,
    Unauthorized,
)
from relaygate.models.base import as_utc, utcnow
from relaygate.models.session import (
    ACTIVE_STATUSES,
    PENDING_PHONE_PREFIX,
    SessionStatus,
    WhatsAppSession,
)
from relaygate.services.retry_handler import BackoffPolicy
from relaygate.services.session_store import SessionStore

logger = logging.getLogger(__name__)

# Every live status can end in disconnected so a user can abandon pairing or a
# reconnect loop. Pre-pairing statuses can also fail outright.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CONNECTING: frozenset(
        {
            SessionStatus.QR_PENDING,
            SessionStatus.CONNECTED,
            SessionStatus.DISCONNECTED,
            SessionStatus.FAILED,
        }
    ),
    SessionStatus.QR_PENDING: frozenset(
        {SessionStatus.CONNECTING, SessionStatus.DISCONNECTED, SessionStatus.FAILED}
    ),
    SessionStatus.CONNECTED: frozenset(
        {SessionStatus.DISCONNECTED, SessionStatus.RECONNECTING}
    ),
    SessionStatus.RECONNECTING: frozenset(
        {SessionStatus.CONNECTED, SessionStatus.DISCONNECTED, SessionStatus.FAILED}
    ),
    SessionStatus.DISCONNECTED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


def can_transition(current: SessionStatus, new: SessionStatus) -> bool:
    """Staying in the same status is always allowed, terminal statuses included."""
    return new == current or new in ALLOWED_TRANSITIONS[current]


def is_logout_reason(reason: str | None) -> bool:
    if not reason:
        return False
    reason = reason.lower()
    return "logout" in reason or "logged out" in reason or "logged_out" in reason


class SessionManager:
    """Owns session records and the in-memory reconnection state for them."""

    def __init__(self, store: SessionStore, client: RelayClient, settings: GatewaySettings):
        self.store = store
        self.client = client
        self.settings = settings
        self.max_reconnect_attempts = settings.RECONNECT_MAX_ATTEMPTS
        self.backoff = BackoffPolicy(
            attempts=settings.RECONNECT_MAX_ATTEMPTS,
            base_delay=settings.RECONNECT_BASE_DELAY,
            max_delay=settings.RECONNECT_MAX_DELAY,
        )
        self._reconnect_attempts: dict[str, int] = {}
        self._reconnect_timers: dict[str, asyncio.Task] = {}
        self._closed = False

    # Creation and lookup

    async def create_session(
        self, user_id: str, metadata: dict[str, Any] | None = None
    ) -> WhatsAppSession:
        """Start a new relay session for a user and wait for its QR scan."""
        logger.info(f"Creating session for user: {user_id}")

        existing = await self.get_active_session(user_id)
        if existing is not None:
            raise SessionAlreadyExists(
                details={
                    "session_id": existing.external_session_id,
                    "status": existing.status.value,
                }
            )

        max_sessions = self.settings.WHATSAPP_MAX_SESSIONS_PER_USER
        if await self.store.count(user_id, ACTIVE_STATUSES) >= max_sessions:
            raise RateLimitExceeded(
                f"Maximum number of sessions ({max_sessions}) reached",
                details={"max_sessions": max_sessions},
            )

        removed = await self.store.delete_unconfirmed(user_id)
        if removed:
            logger.info(f"Removed {removed} unconfirmed sessions for user {user_id}")

        relay_session = await self.client.create_session(
            user_id, {"source": "relaygate", "timestamp": utcnow().isoformat(), **(metadata or {})}
        )
        external_id = relay_session.external_session_id

        try:
            record = await self.store.create(
                user_id=user_id,
                external_session_id=external_id,
                phone_number=f"{PENDING_PHONE_PREFIX}{external_id}",
                status=SessionStatus.QR_PENDING,
                qr_code=relay_session.qr_code,
                qr_expires_at=relay_session.expires_at,
                provider_metadata=relay_session.model_dump(mode="json"),
            )
        except Exception:
            logger.error(f"Failed to store session {external_id}, disconnecting it on the relay")
            await self.client.disconnect_session(external_id)
            raise

        webhook_url = self.settings.webhook_url
        try:
            await self.client.register_webhook(external_id, webhook_url)
        except GatewayError as e:
            logger.warning(
                f"Webhook registration failed for {external_id} ({e.message}), "
                "the session will not receive pushed events"
            )

        logger.info(f"Session {external_id} created for user {user_id}")
        return record

    async def get_active_session(self, user_id: str) -> WhatsAppSession | None:
        sessions = await self.store.find(user_id=user_id, statuses=ACTIVE_STATUSES)
        return sessions[0] if sessions else None

    async def get_user_sessions(self, user_id: str) -> list[WhatsAppSession]:
        return await self.store.find(user_id=user_id)

    async def get_session_by_id(self, session_id: str) -> WhatsAppSession | None:
        return await self.store.get(session_id)

    async def _require(self, session_id: str) -> WhatsAppSession:
        record = await self.store.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    # Status transitions

    async def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        phone_number: str | None = None,
        qr_code: str | None = None,
        qr_expires_at: datetime | None = None,
        error: str | None = None,
    ) -> WhatsAppSession:
        """Move a session along an allowed edge and persist the extra fields."""
        record = await self._require(session_id)
        if not can_transition(record.status, status):
            raise InvalidState(
                f"Cannot move session {session_id} from {record.status.value} to {status.value}",
                current=record.status.value,
            )
        logger.info(f"Updating session {session_id} status: {record.status.value} -> {status.value}")

        fields: dict[str, Any] = {"status": status}
        if phone_number:
            removed = await self.store.delete_duplicates(record.user_id, phone_number, session_id)
            if removed:
                logger.info(f"Removed {removed} older sessions using {phone_number}")
            fields["phone_number"] = phone_number
        if qr_code:
            fields["qr_code"] = qr_code
        if qr_expires_at:
            fields["qr_expires_at"] = qr_expires_at
        if error:
            fields["error"] = error
        elif status == SessionStatus.CONNECTED:
            fields["error"] = None

        if status == SessionStatus.CONNECTED:
            self._clear_reconnect_state(session_id)
            self.client.reset_reconnect_attempts(session_id)

        updated = await self.store.update(session_id, **fields)
        if updated is None:
            raise SessionNotFound(session_id)
        return updated

    async def mark_connected(
        self, session_id: str, phone_number: str | None = None
    ) -> WhatsAppSession:
        """Confirm a connection. A QR scan is first recorded as connecting."""
        record = await self._require(session_id)
        if record.status == SessionStatus.QR_PENDING:
            await self.update_session_status(session_id, SessionStatus.CONNECTING)
        return await self.update_session_status(
            session_id, SessionStatus.CONNECTED, phone_number=phone_number
        )

    async def refresh_qr_code(self, session_id: str) -> WhatsAppSession:
        record = await self._require(session_id)
        if record.status != SessionStatus.QR_PENDING:
            raise InvalidState(
                "Session is not waiting for a QR code", current=record.status.value
            )
        qr = await self.client.get_qr_code(session_id)
        expires_at = qr.expires_at or utcnow() + timedelta(seconds=self.settings.QR_CODE_TTL)
        return await self.update_session_status(
            session_id, SessionStatus.QR_PENDING, qr_code=qr.qr_code, qr_expires_at=expires_at
        )

    async def disconnect_session(self, session_id: str, user_id: str | None) -> WhatsAppSession:
        """
        Log a session out.

        With a user_id the caller must own the session. user_id=None is a
        system-initiated disconnect.
        """
        record = await self.store.get(session_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise Unauthorized("Session not found or not owned by user")

        logger.info(f"Disconnecting session: {session_id}")
        self._clear_reconnect_state(session_id)
        try:
            await self.client.disconnect_session(session_id)
        except GatewayError as e:
            logger.error(f"Failed to disconnect {session_id} on the relay: {e.message}")

        if record.status.is_terminal:
            return record
        return await self.update_session_status(session_id, SessionStatus.DISCONNECTED)

    # Reconnection

    def reconnect_delay(self, attempts: int) -> float:
        return self.backoff.delay(attempts)

    def reconnect_attempts(self, session_id: str) -> int:
        return self._reconnect_attempts.get(session_id, 0)

    def has_pending_reconnect(self, session_id: str) -> bool:
        timer = self._reconnect_timers.get(session_id)
        return timer is not None and not timer.done()

    async def handle_disconnection(self, session_id: str, reason: str | None = None) -> None:
        """
        React to a lost connection.

        Logouts end the session. Anything else schedules a reconnection check
        with exponential backoff until the attempts run out, then the session
        is marked failed.
        """
        logger.warning(f"Session disconnected: {session_id}, reason: {reason}")
        if self._closed:
            logger.info(f"Shutting down, not handling disconnection of {session_id}")
            return
        record = await self.store.get(session_id)
        if record is None:
            logger.warning(f"Disconnection for unknown session {session_id} ignored")
            self._clear_reconnect_state(session_id)
            return
        if record.status.is_terminal:
            self._clear_reconnect_state(session_id)
            return

        if is_logout_reason(reason):
            logger.info(f"Session {session_id} logged out, not attempting reconnection")
            self._clear_reconnect_state(session_id)
            await self.update_session_status(session_id, SessionStatus.DISCONNECTED)
            return

        if record.status not in (SessionStatus.CONNECTED, SessionStatus.RECONNECTING):
            # never connected, so there is nothing to resume
            self._clear_reconnect_state(session_id)
            await self.update_session_status(
                session_id, SessionStatus.FAILED, error=f"Connection lost before pairing: {reason}"
            )
            return

        attempts = self._reconnect_attempts.get(session_id, 0)
        if attempts >= self.max_reconnect_attempts:
            logger.error(f"Max reconnection attempts reached for session: {session_id}")
            self._clear_reconnect_state(session_id)
            self.client.reset_reconnect_attempts(session_id)
            await self.update_session_status(
                session_id,
                SessionStatus.FAILED,
                error=f"Connection lost after {attempts} reconnection attempts",
            )
            return

        await self.update_session_status(session_id, SessionStatus.RECONNECTING)

        delay = self.reconnect_delay(attempts)
        logger.info(
            f"Attempting reconnection {attempts + 1}/{self.max_reconnect_attempts} "
            f"for {session_id} in {delay}s"
        )
        self._cancel_timer(session_id)
        self._reconnect_attempts[session_id] = attempts + 1
        self._reconnect_timers[session_id] = asyncio.create_task(
            self._reconnect_after(session_id, delay), name=f"reconnect:{session_id}"
        )

    async def _reconnect_after(self, session_id: str, delay: float) -> None:
        # stays registered until the attempt finishes so shutdown can cancel it
        try:
            await asyncio.sleep(delay)
            try:
                await self._attempt_reconnection(session_id)
            except Exception as e:
                logger.error(
                    f"Reconnection attempt failed for session {session_id}: {e}", exc_info=True
                )
                await self.handle_disconnection(session_id, "reconnection_failed")
        finally:
            if self._reconnect_timers.get(session_id) is asyncio.current_task():
                del self._reconnect_timers[session_id]

    async def _attempt_reconnection(self, session_id: str) -> None:
        logger.info(f"Attempting to reconnect session: {session_id}")
        record = await self.store.get(session_id)
        if record is None or record.status.is_terminal:
            logger.info(f"Session {session_id} is gone or ended, dropping reconnection")
            self._clear_reconnect_state(session_id)
            return

        try:
            status = await self.client.get_session_status(session_id)
            if not status.is_connected:
                logger.info(f"Restarting session {session_id}")
                if self.settings.webhook_url:
                    await self.client.register_webhook(session_id, self.settings.webhook_url)
                status = await self.client.get_session_status(session_id)
        except GatewayError as e:
            logger.error(f"Failed to reconnect session {session_id}: {e.message}")
            await self.handle_disconnection(session_id, "reconnection_error")
            return

        if status.is_connected:
            logger.info(f"Session {session_id} reconnected successfully")
            await self.update_session_status(
                session_id, SessionStatus.CONNECTED, phone_number=status.phone_number
            )
        else:
            await self.handle_disconnection(session_id, "still_disconnected")

    async def force_reconnect(self, session_id: str) -> None:
        """Start over with a fresh attempt budget and check right away."""
        record = await self._require(session_id)
        if record.status not in (SessionStatus.CONNECTED, SessionStatus.RECONNECTING):
            raise InvalidState(
                "Only connected or reconnecting sessions can be reconnected",
                current=record.status.value,
            )
        self._clear_reconnect_state(session_id)
        self.client.reset_reconnect_attempts(session_id)
        await self._attempt_reconnection(session_id)

    def _cancel_timer(self, session_id: str) -> None:
        timer = self._reconnect_timers.pop(session_id, None)
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    def _clear_reconnect_state(self, session_id: str) -> None:
        self._cancel_timer(session_id)
        self._reconnect_attempts.pop(session_id, None)

    # Health and cleanup

    async def monitor_session_health(self, session_id: str) -> None:
        """One health check for one session, as run by the connection monitor."""
        record = await self.store.get(session_id)
        if record is None or record.status.is_terminal:
            return

        if record.status in (SessionStatus.QR_PENDING, SessionStatus.CONNECTING):
            await self._check_pairing(record)
            return
        if record.status == SessionStatus.RECONNECTING:
            # a scheduled attempt owns the session
            return

        try:
            status = await self.client.get_session_status(session_id)
        except GatewayError as e:
            logger.error(f"Health check failed for session {session_id}: {e.message}")
            await self.handle_disconnection(session_id, "health_check_error")
            return
        if not status.is_connected:
            await self.handle_disconnection(session_id, "health_check_failed")

    async def _check_pairing(self, record: WhatsAppSession) -> None:
        session_id = record.external_session_id
        if record.status == SessionStatus.QR_PENDING and record.qr_expires_at is not None:
            if as_utc(record.qr_expires_at) < utcnow():
                await self.update_session_status(
                    session_id, SessionStatus.FAILED, error="QR code expired"
                )
                return
        try:
            status = await self.client.get_session_status(session_id)
        except GatewayError as e:
            logger.debug(f"Pairing check for {session_id} failed: {e.message}")
            return
        if status.is_connected:
            await self.mark_connected(session_id, status.phone_number)

    async def cleanup_expired_sessions(self) -> int:
        """Fail sessions whose QR code expired before it was scanned."""
        expired = await self.store.list_expired_qr(utcnow())
        for record in expired:
            session_id = record.external_session_id
            try:
                await self.update_session_status(
                    session_id, SessionStatus.FAILED, error="QR code expired"
                )
                await self.client.disconnect_session(session_id)
            except GatewayError as e:
                logger.error(f"Failed to clean up session {session_id}: {e.message}")
        if expired:
            logger.info(f"Marked {len(expired)} sessions with expired QR codes as failed")
        return len(expired)

    async def shutdown(self) -> None:
        """Cancel every pending or running reconnection and stop scheduling new ones."""
        self._closed = True
        timers = list(self._reconnect_timers.values())
        self._reconnect_timers.clear()
        self._reconnect_attempts.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
            logger.info(f"Cancelled {len(timers)} pending reconnections")
