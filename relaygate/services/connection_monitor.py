"""Background health checks and cleanup for relay sessions."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from relaygate.adapters.relay import RelayClient
from relaygate.config.gateway import GatewaySettings
from relaygate.core.exceptions import GatewayError
from relaygate.models.base import as_utc, utcnow
from relaygate.models.session import TERMINAL_STATUSES, SessionStatus, WhatsAppSession
from relaygate.services.conversation_service import ConversationService
from relaygate.services.session_manager import SessionManager
from relaygate.services.session_store import SessionStore

logger = logging.getLogger(__name__)

MONITORED_STATUSES = frozenset(
    {SessionStatus.CONNECTED, SessionStatus.CONNECTING, SessionStatus.QR_PENDING}
)
# Session id some relay builds report before a real session exists
PLACEHOLDER_SESSION_ID = "default"


class ConnectionMonitor:
    """Periodically checks every live session and prunes dead records."""

    def __init__(
        self,
        session_manager: SessionManager,
        store: SessionStore,
        conversations: ConversationService,
        client: RelayClient,
        settings: GatewaySettings,
    ):
        self.session_manager = session_manager
        self.store = store
        self.conversations = conversations
        self.client = client
        self.interval = settings.MONITOR_INTERVAL
        self.cleanup_interval = settings.MONITOR_CLEANUP_INTERVAL
        self.recent_activity_window = timedelta(seconds=settings.MONITOR_RECENT_ACTIVITY_WINDOW)
        self.stale_session_max_age = timedelta(seconds=settings.STALE_SESSION_MAX_AGE)

        self._task: asyncio.Task | None = None
        self._last_cleanup_at: datetime | None = None
        self.last_tick_at: datetime | None = None
        self.sessions_checked = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False when it was already running."""
        if self.is_running:
            logger.warning("Connection monitor is already running")
            return False
        self._task = asyncio.create_task(self._run(), name="connection-monitor")
        logger.info(f"Connection monitor started with {self.interval}s interval")
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Connection monitor stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "interval": self.interval,
            "last_tick_at": self.last_tick_at,
            "last_cleanup_at": self._last_cleanup_at,
            "sessions_checked": self.sessions_checked,
            "failures": self.failures,
        }

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
                if self._cleanup_due():
                    await self.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in connection monitor loop: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def _cleanup_due(self) -> bool:
        if self._last_cleanup_at is None:
            return True
        return utcnow() - self._last_cleanup_at >= timedelta(seconds=self.cleanup_interval)

    def _recently_active(self, record: WhatsAppSession, now: datetime) -> bool:
        return (
            record.status == SessionStatus.CONNECTED
            and now - as_utc(record.updated_at) < self.recent_activity_window
        )

    async def tick(self) -> int:
        """Check all monitored sessions concurrently. Returns how many were checked."""
        now = utcnow()
        self.last_tick_at = now
        sessions = await self.store.find(statuses=MONITORED_STATUSES)
        due = [s for s in sessions if not self._recently_active(s, now)]
        if not due:
            return 0

        session_ids = [s.external_session_id for s in due]
        results = await asyncio.gather(
            *(self.session_manager.monitor_session_health(sid) for sid in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                self.failures += 1
                logger.error(f"Health check for session {session_id} raised: {result}")
        self.sessions_checked += len(session_ids)
        logger.debug(f"Checked {len(session_ids)} of {len(sessions)} monitored sessions")
        return len(session_ids)

    async def cleanup(self) -> dict[str, int]:
        """Remove placeholder and long-dead sessions, orphaned conversations and stale QRs."""
        self._last_cleanup_at = utcnow()
        removed_placeholder = await self.store.delete(PLACEHOLDER_SESSION_ID)

        stale = await self.store.list_stale(
            TERMINAL_STATUSES, updated_before=utcnow() - self.stale_session_max_age
        )
        for record in stale:
            session_id = record.external_session_id
            try:
                await self.client.disconnect_session(session_id)
            except GatewayError as e:
                logger.debug(f"Relay disconnect for stale session {session_id} failed: {e.message}")
            await self.store.delete(session_id)

        orphaned = await self.conversations.delete_orphaned()
        expired = await self.session_manager.cleanup_expired_sessions()

        summary = {
            "placeholder_sessions": removed_placeholder,
            "stale_sessions": len(stale),
            "orphaned_conversations": orphaned,
            "expired_qr_sessions": expired,
        }
        logger.info(f"Session cleanup finished: {summary}")
        return summary

    async def force_reconnect(self, session_id: str) -> None:
        await self.session_manager.force_reconnect(session_id)
