"""Koyeb-hosted Baileys relay."""

import logging
from typing import Any

from relaygate.core.exceptions import ProviderError

from .base import RelayClient, RelaySession, SessionStatusResponse

logger = logging.getLogger(__name__)


class KoyebRelayClient(RelayClient):
    """Relay backend that assigns its own session ids."""

    name = "koyeb"
    default_error_code = "KOYEB_API_ERROR"

    async def create_session(
        self, user_id: str, metadata: dict[str, Any] | None = None
    ) -> RelaySession:
        logger.info(f"Creating Koyeb session for user {user_id}")
        data = await self._request(
            "POST",
            "/api/sessions/create",
            json={"userId": user_id, "metadata": metadata or {}},
        )
        session_id = data.get("sessionId")
        if not session_id:
            raise ProviderError(
                "Koyeb relay did not return a session id",
                error_code=self.default_error_code,
                details={"response": data},
            )
        return RelaySession(
            external_session_id=session_id,
            status=data.get("status") or "qr_pending",
            qr_code=data.get("qr") or data.get("qrCode"),
            expires_at=self._expiry(data.get("expiresAt")),
        )

    def _parse_status(self, session_id: str, data: dict[str, Any]) -> SessionStatusResponse:
        # Older deployments report `connected` instead of `isConnected`
        is_connected = bool(data.get("isConnected", data.get("connected", False)))
        status = data.get("status") or ("connected" if is_connected else "disconnected")
        return SessionStatusResponse(
            session_id=session_id,
            status=status,
            is_connected=is_connected,
            phone_number=data.get("phoneNumber"),
        )

    def _webhook_registration_body(self, session_id: str, url: str) -> dict[str, Any]:
        return {"sessionId": session_id, "webhookUrl": url, "secret": self.webhook_secret}
