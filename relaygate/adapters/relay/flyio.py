"""Fly.io-hosted Baileys relay with keep-alive support."""

import asyncio
import logging
import time
from typing import Any

from relaygate.core.exceptions import GatewayError

from .base import RelayClient, RelaySession, SessionStatusResponse

logger = logging.getLogger(__name__)


class FlyioRelayClient(RelayClient):
    """
    Relay backend on Fly.io machines.

    Machines stop idle sessions, so long operations should be wrapped in
    start_keep_alive/stop_keep_alive. Its 5xx responses are reported as
    connection errors and therefore retried by the send path.
    """

    name = "flyio"
    default_error_code = "CONNECTION_ERROR"
    default_qr_ttl = 60

    def __init__(self, *args: Any, keep_alive_interval: float = 10.0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.keep_alive_interval = keep_alive_interval
        self._keep_alive_tasks: dict[str, asyncio.Task] = {}

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop_all_keep_alive()
        await super().__aexit__(exc_type, exc_val, exc_tb)

    async def create_session(
        self, user_id: str, metadata: dict[str, Any] | None = None
    ) -> RelaySession:
        session_id = f"flyio_{user_id}_{int(time.time() * 1000)}"
        logger.info(f"Creating Fly.io session {session_id} for user {user_id}")
        data = await self._request(
            "POST",
            "/api/sessions/create",
            json={"sessionId": session_id, "userId": user_id, "metadata": metadata or {}},
        )
        return RelaySession(
            external_session_id=data.get("sessionId") or session_id,
            status=data.get("status") or "qr_pending",
            qr_code=data.get("qr") or data.get("qrCode"),
            expires_at=self._expiry(data.get("expiresAt")),
        )

    def _parse_status(self, session_id: str, data: dict[str, Any]) -> SessionStatusResponse:
        status = data.get("status") or "disconnected"
        return SessionStatusResponse(
            session_id=session_id,
            status=status,
            is_connected=status == "connected" or data.get("isConnected") is True,
            phone_number=data.get("phoneNumber") or data.get("phone"),
        )

    def _webhook_registration_body(self, session_id: str, url: str) -> dict[str, Any]:
        return {"sessionId": session_id, "url": url, "secret": self.webhook_secret}

    async def disconnect_session(self, session_id: str) -> None:
        self.stop_keep_alive(session_id)
        await super().disconnect_session(session_id)

    async def _request_reconnect(self, session_id: str) -> None:
        """Try reconnect, then refresh. The caller verifies with a status probe."""
        try:
            await super()._request_reconnect(session_id)
            return
        except GatewayError as e:
            logger.warning(f"Reconnect endpoint failed for {session_id}: {e.message}")
        try:
            await self._request(
                "POST", f"/api/sessions/{session_id}/refresh", session_id=session_id, json={}
            )
        except GatewayError as e:
            logger.warning(f"Refresh endpoint failed for {session_id}: {e.message}")

    # Keep-alive

    def start_keep_alive(self, session_id: str) -> None:
        """(Re)start the ping timer for a session."""
        self.stop_keep_alive(session_id)
        self._keep_alive_tasks[session_id] = asyncio.create_task(
            self._keep_alive_loop(session_id), name=f"keep-alive:{session_id}"
        )
        logger.debug(f"Keep-alive started for {session_id} every {self.keep_alive_interval}s")

    def stop_keep_alive(self, session_id: str) -> None:
        task = self._keep_alive_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"Keep-alive stopped for {session_id}")

    def stop_all_keep_alive(self) -> None:
        for session_id in list(self._keep_alive_tasks):
            self.stop_keep_alive(session_id)

    def has_keep_alive(self, session_id: str) -> bool:
        task = self._keep_alive_tasks.get(session_id)
        return task is not None and not task.done()

    async def _keep_alive_loop(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.keep_alive_interval)
            try:
                await self.ping(session_id)
            except Exception as e:
                logger.error(f"Keep-alive ping crashed for {session_id}: {e}", exc_info=True)

    async def ping(self, session_id: str) -> None:
        """Ping the session, falling back to a status check."""
        try:
            await self._request(
                "POST",
                f"/api/sessions/{session_id}/ping",
                session_id=session_id,
                json={"timestamp": int(time.time() * 1000)},
            )
            return
        except GatewayError as e:
            logger.debug(f"Ping failed for {session_id} ({e.message}), checking status instead")
        try:
            await self.get_session_status(session_id)
        except GatewayError as e:
            logger.warning(f"Keep-alive status check failed for {session_id}: {e.message}")
