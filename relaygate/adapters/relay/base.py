"""Relay provider capability interface and the HTTP plumbing shared by backends."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, ClassVar, Protocol, TypeVar, runtime_checkable

import httpx
from pydantic import BaseModel

from relaygate.core.exceptions import (
    ConnectionError,
    GatewayError,
    MediaError,
    ProviderError,
    ProviderUnavailable,
    RateLimitExceeded,
    SessionAlreadyExists,
    SessionError,
    SessionExpired,
    SessionNotFound,
    Unauthorized,
    ValidationError,
)
from relaygate.core.webhook_security import WebhookValidator
from relaygate.models.base import utcnow
from relaygate.schemas.message import OutboundMessage
from relaygate.services.retry_handler import BackoffPolicy, RetryHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSION_ERROR_MARKERS = (
    "session not connected",
    "session expired",
    "session not found",
    "connection closed",
    "disconnected",
)
RETRYABLE_ERROR_CODES = frozenset({"SESSION_ERROR", "CONNECTION_ERROR"})


def is_session_error(exc: BaseException) -> bool:
    """Whether a send failure is worth a reconnect-and-retry."""
    message = str(getattr(exc, "message", exc)).lower()
    if any(marker in message for marker in SESSION_ERROR_MARKERS):
        return True
    return getattr(exc, "error_code", None) in RETRYABLE_ERROR_CODES


# Pydantic models for the relay HTTP API


class RelaySession(BaseModel):
    """Session as created on the relay."""

    external_session_id: str
    status: str = "qr_pending"
    qr_code: str | None = None
    expires_at: datetime | None = None


class QRCodeResponse(BaseModel):
    qr_code: str
    expires_at: datetime | None = None


class SessionStatusResponse(BaseModel):
    session_id: str
    status: str
    is_connected: bool
    phone_number: str | None = None


class SendMessageResponse(BaseModel):
    message_id: str
    status: str = "sent"


class MediaUploadResponse(BaseModel):
    media_id: str
    url: str | None = None
    mime_type: str | None = None


@runtime_checkable
class KeepAliveCapable(Protocol):
    """Backends that can ping a session to keep it from idling out."""

    def start_keep_alive(self, session_id: str) -> None: ...

    def stop_keep_alive(self, session_id: str) -> None: ...


class RelayClient(ABC):
    """Authenticated HTTP client for one hosted relay backend."""

    name: ClassVar[str] = "relay"
    default_error_code: ClassVar[str] = "PROVIDER_ERROR"
    default_qr_ttl: ClassVar[int | None] = None

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = 30.0,
        max_send_retries: int = 3,
        send_retry_delay: float = 5.0,
        reconnect_settle_delay: float = 2.0,
    ):
        """
        Initialize relay client.

        Args:
            base_url: Base URL of the hosted relay
            api_key: Bearer token for the relay API
            webhook_secret: Shared secret for webhook signatures
            timeout: Upper bound for a single request in seconds
            max_send_retries: Attempts made by the send-with-retry wrapper
            send_retry_delay: First backoff delay of the send-with-retry wrapper
            reconnect_settle_delay: Wait between asking for a reconnect and verifying it
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.max_send_retries = max_send_retries
        self.send_retry_delay = send_retry_delay
        self.reconnect_settle_delay = reconnect_settle_delay
        self._send_retry = RetryHandler(
            BackoffPolicy(attempts=max_send_retries, base_delay=send_retry_delay),
            retry_if=is_session_error,
        )
        self._client: httpx.AsyncClient | None = None
        self._reconnect_attempts: dict[str, int] = {}

    async def __aenter__(self) -> "RelayClient":
        """Async context manager entry."""
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if not self._client:
            raise RuntimeError(f"{type(self).__name__} must be used as async context manager")
        return self._client

    # Transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        session_id: str | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and map every failure into the gateway taxonomy."""
        try:
            response = await asyncio.wait_for(
                self.client.request(method, path, json=json, data=data, files=files),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ConnectionError(
                f"Request to {self.name} relay timed out after {self.timeout}s",
                status_code=504,
                details={"path": path},
            ) from e
        except httpx.ConnectError as e:
            raise ProviderUnavailable(
                f"Unable to reach {self.name} relay at {self.base_url}",
                details={"path": path, "reason": str(e)},
            ) from e
        except httpx.RequestError as e:
            raise ConnectionError(
                f"Failed to communicate with {self.name} relay: {e}",
                details={"path": path},
            ) from e

        payload = self._decode(response)
        if response.status_code >= 400:
            raise self._map_error(response.status_code, payload, path, session_id)
        return payload

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204:
            return {}
        try:
            body = response.json()
        except ValueError:
            text = response.text
            return {"message": text} if text else {}
        if isinstance(body, dict):
            return body
        return {"data": body}

    def _map_error(
        self, status: int, payload: dict[str, Any], path: str, session_id: str | None
    ) -> GatewayError:
        message = (
            payload.get("error")
            or payload.get("message")
            or f"{self.name} relay request failed with HTTP {status}"
        )
        if not isinstance(message, str):
            message = str(message)
        details = {"status": status, "path": path, "response": payload}
        logger.error(f"{self.name} relay error {status} on {path}: {message}")

        if status in (401, 403):
            return Unauthorized(message, details=details)
        if status == 404 and session_id:
            return SessionNotFound(session_id, details=details)
        if status == 409:
            return SessionAlreadyExists(message, details=details)
        if status == 410:
            return SessionExpired(message, details=details)
        if status == 429:
            return RateLimitExceeded(message, details=details)
        return ProviderError(
            message,
            error_code=payload.get("code") or self.default_error_code,
            status_code=status,
            details=details,
        )

    # Capability interface

    @abstractmethod
    async def create_session(
        self, user_id: str, metadata: dict[str, Any] | None = None
    ) -> RelaySession:
        """Create a session on the relay for a user."""

    @abstractmethod
    def _parse_status(self, session_id: str, data: dict[str, Any]) -> SessionStatusResponse:
        """Normalize the backend's status body."""

    @abstractmethod
    def _webhook_registration_body(self, session_id: str, url: str) -> dict[str, Any]:
        """Backend-specific webhook registration body."""

    async def get_qr_code(self, session_id: str) -> QRCodeResponse:
        data = await self._request("GET", f"/api/sessions/{session_id}/qr", session_id=session_id)
        qr_code = data.get("qr") or data.get("qrCode")
        if not qr_code:
            raise SessionError(f"No QR code available for session {session_id}")
        return QRCodeResponse(
            qr_code=qr_code, expires_at=self._expiry(data.get("expiresAt"))
        )

    async def get_session_status(self, session_id: str) -> SessionStatusResponse:
        data = await self._request(
            "GET", f"/api/sessions/{session_id}/status", session_id=session_id
        )
        return self._parse_status(session_id, data)

    async def disconnect_session(self, session_id: str) -> None:
        """Log the session out on the relay. Unknown sessions count as gone."""
        try:
            await self._request("DELETE", f"/api/sessions/{session_id}", session_id=session_id)
        except SessionNotFound:
            logger.info(f"Session {session_id} already gone on {self.name} relay")
            return
        logger.info(f"Session {session_id} disconnected on {self.name} relay")

    async def register_webhook(self, session_id: str, url: str) -> None:
        if not url or not url.strip():
            raise ValidationError("Webhook URL is required", field="url")
        await self._request(
            "POST",
            "/api/webhook/register",
            session_id=session_id,
            json=self._webhook_registration_body(session_id, url),
        )
        logger.info(f"Webhook registered for session {session_id}: {url}")

    async def send_message(
        self, session_id: str, to: str, message: OutboundMessage
    ) -> SendMessageResponse:
        """Send a message through the send-with-retry path."""
        body = {"sessionId": session_id, "to": to, "message": message.to_payload()}

        async def _send() -> SendMessageResponse:
            data = await self._request(
                "POST", "/api/messages/send", session_id=session_id, json=body
            )
            return SendMessageResponse(
                message_id=str(data.get("messageId") or data.get("id") or ""),
                status=data.get("status") or "sent",
            )

        response = await self.send_with_retry(session_id, _send)
        logger.info(f"Message sent to {to} via {self.name}: {response.message_id}")
        return response

    async def send_text(self, session_id: str, to: str, text: str) -> SendMessageResponse:
        return await self.send_message(session_id, to, OutboundMessage(text=text))

    async def send_media(
        self,
        session_id: str,
        to: str,
        media_url: str,
        mime_type: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> SendMessageResponse:
        """Send an image, or anything else as a document."""
        if mime_type.startswith("image/"):
            message = OutboundMessage(image={"url": media_url, "caption": caption})
        else:
            name = filename or media_url.rsplit("/", 1)[-1].split("?", 1)[0] or "file"
            message = OutboundMessage(
                text=caption,
                document={"url": media_url, "filename": name, "mimetype": mime_type},
            )
        try:
            return await self.send_message(session_id, to, message)
        except (ValidationError, ProviderError) as e:
            raise MediaError(f"Failed to send media: {e.message}", details=e.details) from e

    async def upload_media(
        self, session_id: str, content: bytes, filename: str, mime_type: str
    ) -> MediaUploadResponse:
        try:
            data = await self._request(
                "POST",
                "/api/media/upload",
                session_id=session_id,
                data={"sessionId": session_id},
                files={"file": (filename, content, mime_type)},
            )
        except GatewayError as e:
            raise MediaError(f"Media upload failed: {e.message}", details=e.details) from e
        media_id = data.get("mediaId") or data.get("id")
        if not media_id:
            raise MediaError("Media upload response had no media id", details=data)
        logger.info(f"Media uploaded for session {session_id}: {media_id}")
        return MediaUploadResponse(
            media_id=str(media_id), url=data.get("url"), mime_type=mime_type
        )

    def validate_webhook_signature(self, signature: str | None, raw_payload: bytes) -> bool:
        return WebhookValidator(self.webhook_secret).validate_signature(raw_payload, signature)

    async def health_check(self) -> bool:
        """Reachability probe, never raises."""
        try:
            await self._request("GET", "/health")
            return True
        except GatewayError as e:
            logger.warning(f"{self.name} relay health check failed: {e.message}")
            return False

    # Send-with-retry

    async def send_with_retry(
        self, session_id: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Run a send, reconnecting and retrying on session-class errors.

        Before each attempt the session status is checked and a reconnect is
        tried when it is not connected. Other errors propagate immediately.
        """

        async def _attempt() -> T:
            await self._ensure_connected(session_id)
            return await operation()

        result = await self._send_retry.run(_attempt, name=f"send[{session_id}]")
        self.reset_reconnect_attempts(session_id)
        return result

    async def _ensure_connected(self, session_id: str) -> None:
        try:
            status = await self.get_session_status(session_id)
            connected = status.is_connected
        except GatewayError as e:
            logger.warning(f"Status check before send failed for {session_id}: {e.message}")
            connected = False
        if connected:
            return
        logger.info(f"Session {session_id} not connected, attempting reconnection before send")
        if not await self.attempt_reconnection(session_id):
            raise SessionError(f"Session not connected and reconnection failed: {session_id}")

    async def attempt_reconnection(self, session_id: str) -> bool:
        """Ask the relay to revive a session. Bounded per session by max_send_retries."""
        attempts = self._reconnect_attempts.get(session_id, 0)
        if attempts >= self.max_send_retries:
            logger.error(
                f"Reconnection attempts exhausted for {session_id} ({attempts}/{self.max_send_retries})"
            )
            return False
        self._reconnect_attempts[session_id] = attempts + 1

        try:
            status = await self.get_session_status(session_id)
            if status.is_connected:
                self.reset_reconnect_attempts(session_id)
                return True

            await self._request_reconnect(session_id)
            await asyncio.sleep(self.reconnect_settle_delay)

            status = await self.get_session_status(session_id)
        except GatewayError as e:
            logger.error(f"Reconnection attempt failed for {session_id}: {e.message}")
            return False

        if status.is_connected:
            logger.info(f"Session {session_id} reconnected")
            self.reset_reconnect_attempts(session_id)
            return True
        return False

    async def _request_reconnect(self, session_id: str) -> None:
        await self._request(
            "POST",
            f"/api/sessions/{session_id}/reconnect",
            session_id=session_id,
            json={"force": True},
        )

    def reset_reconnect_attempts(self, session_id: str) -> None:
        self._reconnect_attempts.pop(session_id, None)

    def reconnect_attempts(self, session_id: str) -> int:
        return self._reconnect_attempts.get(session_id, 0)

    # Helpers

    def _expiry(self, value: Any) -> datetime | None:
        if value:
            try:
                return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Unparseable expiresAt from {self.name}: {value!r}")
        if self.default_qr_ttl is None:
            return None

        return utcnow() + timedelta(seconds=self.default_qr_ttl)

    def info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "base_url": self.base_url,
            "supports_keep_alive": isinstance(self, KeepAliveCapable),
        }
