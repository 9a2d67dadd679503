import asyncio
import json
import os
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing settings
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test_secret_key_for_testing_12345678901234567890"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WHATSAPP_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["MONITOR_ENABLED"] = "false"

from relaygate.adapters.completion import CompletionClient  # noqa: E402
from relaygate.adapters.relay import (  # noqa: E402
    KoyebRelayClient,
    QRCodeResponse,
    RelaySession,
    SendMessageResponse,
    SessionStatusResponse,
)
from relaygate.config.gateway import GatewaySettings  # noqa: E402
from relaygate.core.database import create_memory_database  # noqa: E402
from relaygate.core.security import create_access_token  # noqa: E402
from relaygate.core.webhook_security import WebhookValidator, compute_signature  # noqa: E402
from relaygate.main import create_app  # noqa: E402
from relaygate.services.conversation_service import ConversationService  # noqa: E402
from relaygate.services.session_store import SessionStore  # noqa: E402

TEST_SECRET_KEY = os.environ["SECRET_KEY"]
WEBHOOK_SECRET = os.environ["WHATSAPP_WEBHOOK_SECRET"]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")


@pytest.fixture
def settings() -> GatewaySettings:
    """Settings with zero backoff so scheduled reconnections run immediately."""
    return GatewaySettings(
        ENVIRONMENT="test",
        SECRET_KEY=TEST_SECRET_KEY,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        WHATSAPP_WEBHOOK_SECRET=WEBHOOK_SECRET,
        WHATSAPP_WEBHOOK_BASE_URL="https://gateway.example.com",
        RECONNECT_MAX_ATTEMPTS=3,
        RECONNECT_BASE_DELAY=0.0,
        RECONNECT_MAX_DELAY=0.0,
        SEND_RETRY_DELAY=0.0,
        MONITOR_ENABLED=False,
    )


@pytest.fixture
async def database():
    """In-memory database with all tables."""
    db = create_memory_database()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def store(database) -> SessionStore:
    return SessionStore(database.async_session_maker)


@pytest.fixture
def conversations(database) -> ConversationService:
    return ConversationService(database.async_session_maker)


def make_relay_mock(spec=KoyebRelayClient) -> MagicMock:
    """Relay client double whose session is connected unless told otherwise."""
    relay = MagicMock(spec=spec)
    relay.name = spec.name
    relay.base_url = "https://relay.example.com"
    relay.create_session = AsyncMock(
        return_value=RelaySession(external_session_id="sess-1", qr_code="qr-data")
    )
    relay.get_session_status = AsyncMock(
        return_value=SessionStatusResponse(
            session_id="sess-1", status="connected", is_connected=True, phone_number="15550001111"
        )
    )
    relay.get_qr_code = AsyncMock(return_value=QRCodeResponse(qr_code="qr-refreshed"))
    relay.disconnect_session = AsyncMock()
    relay.register_webhook = AsyncMock()

    sent = iter(range(1, 10_000))
    relay.send_text = AsyncMock(
        side_effect=lambda *args, **kwargs: SendMessageResponse(message_id=f"out-{next(sent)}")
    )
    relay.send_message = AsyncMock(return_value=SendMessageResponse(message_id="out-direct"))
    relay.reset_reconnect_attempts = MagicMock()
    relay.info = MagicMock(
        return_value={
            "name": spec.name,
            "base_url": "https://relay.example.com",
            "supports_keep_alive": False,
        }
    )
    relay.__aenter__.return_value = relay
    return relay


@pytest.fixture
def relay() -> MagicMock:
    return make_relay_mock()


def stream_of(*chunks: bytes):
    """A completion stream yielding the given raw chunks."""

    async def _stream(*args, **kwargs) -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk

    return _stream


@pytest.fixture
def completion() -> MagicMock:
    client = MagicMock(spec=CompletionClient)
    client.stream = MagicMock(side_effect=stream_of(b'0:"Hello"\n', b'0:" there!"\n'))
    client.__aenter__.return_value = client
    return client


async def wait_for(predicate, timeout: float = 2.0):
    """Poll an async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def auth_headers(user_id: str = "user-1") -> dict[str, str]:
    token = create_access_token({"sub": user_id}, TEST_SECRET_KEY)
    return {"Authorization": f"Bearer {token}"}


def post_webhook(client, payload, signature: str | None = None):
    """POST a relay event, signed with the shared secret unless a signature is given."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    if signature is None:
        signature = compute_signature(WEBHOOK_SECRET, body)
    return client.post(
        "/api/v1/webhooks/whatsapp",
        content=body,
        headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
    )


@pytest.fixture
def api_client(settings, relay, completion):
    """TestClient running the full lifespan against an in-memory database."""
    validator = WebhookValidator(WEBHOOK_SECRET)
    relay.validate_webhook_signature.side_effect = (
        lambda signature, body: validator.validate_signature(body, signature)
    )
    app = create_app(
        settings, database=create_memory_database(), relay=relay, completion=completion
    )
    with TestClient(app) as client:
        yield client
