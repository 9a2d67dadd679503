"""Client for the streaming chat-completion backend."""

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from relaygate.core.exceptions import ExternalServiceError
from relaygate.schemas.message import CanonicalMessage

logger = logging.getLogger(__name__)


class CompletionClient:
    """Submits one message to the chat backend and streams the answer back."""

    service_name = "completion"

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        model: str = "openai/gpt-4o-mini",
        web_search: bool = False,
        mcp_enabled: bool = True,
        max_output_tokens: int = 4096,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.model = model
        self.web_search = web_search
        self.mcp_enabled = mcp_enabled
        self.max_output_tokens = max_output_tokens
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CompletionClient":
        headers = {"Accept": "text/event-stream, text/plain, */*"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("CompletionClient must be used as async context manager")
        return self._client

    def build_request(
        self,
        message: CanonicalMessage,
        chat_id: str,
        session_id: str,
        phone_number: str,
    ) -> dict[str, Any]:
        """Only the current message is sent, the backend assembles history itself."""
        return {
            "messages": [message.to_completion_payload()],
            "data": {
                "chatId": chat_id,
                "settings": {
                    "model": self.model,
                    "webSearch": self.web_search,
                    "mcpEnabled": self.mcp_enabled,
                    "maxOutputTokens": self.max_output_tokens,
                },
                "metadata": {
                    "source": "whatsapp",
                    "sessionId": session_id,
                    "phoneNumber": phone_number,
                },
                "disableRAG": False,
            },
        }

    async def stream(
        self,
        message: CanonicalMessage,
        chat_id: str,
        session_id: str,
        phone_number: str,
    ) -> AsyncIterator[bytes]:
        """Yield raw response chunks as they arrive."""
        body = self.build_request(message, chat_id, session_id, phone_number)
        logger.info(f"Submitting message {message.id} for chat {chat_id} to completion backend")
        try:
            async with self.client.stream("POST", self.url, json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise ExternalServiceError(
                        self.service_name,
                        f"HTTP {response.status_code}",
                        details={"body": detail[:500]},
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as e:
            raise ExternalServiceError(
                self.service_name, f"timed out after {self.timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise ExternalServiceError(self.service_name, f"request failed: {e}") from e
