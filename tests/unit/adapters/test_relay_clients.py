"""Unit tests for the relay backends."""

import asyncio
import json

import httpx
import pytest

from relaygate.adapters.relay import (
    FlyioRelayClient,
    KeepAliveCapable,
    KoyebRelayClient,
    is_session_error,
)
from relaygate.core.exceptions import (
    ConnectionError,
    MediaError,
    ProviderError,
    ProviderUnavailable,
    SessionError,
    SessionNotFound,
    Unauthorized,
    ValidationError,
)
from relaygate.core.webhook_security import compute_signature


class FakeRelay:
    """Routes requests to canned responses and records them."""

    def __init__(self):
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"error": "no route"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response


def body(request: httpx.Request):
    return json.loads(request.content)


@pytest.fixture
def fake():
    return FakeRelay()


def attach(client, fake):
    client._client = httpx.AsyncClient(
        base_url=client.base_url, transport=httpx.MockTransport(fake)
    )
    return client


@pytest.fixture
async def koyeb(fake):
    client = attach(
        KoyebRelayClient(
            "https://koyeb.example.com/",
            api_key="key",
            webhook_secret="secret",
            send_retry_delay=0,
            reconnect_settle_delay=0,
            max_send_retries=2,
        ),
        fake,
    )
    yield client
    await client.__aexit__(None, None, None)


@pytest.fixture
async def flyio(fake):
    client = attach(
        FlyioRelayClient(
            "https://fly.example.com",
            webhook_secret="secret",
            send_retry_delay=0,
            reconnect_settle_delay=0,
            keep_alive_interval=0.01,
        ),
        fake,
    )
    yield client
    await client.__aexit__(None, None, None)


class TestIsSessionError:
    def test_markers(self):
        assert is_session_error(ProviderError("Session not connected"))
        assert is_session_error(Exception("connection closed by peer"))

    def test_codes(self):
        assert is_session_error(ConnectionError("timed out"))
        assert is_session_error(SessionError("whatever"))

    def test_other_errors(self):
        assert not is_session_error(ValidationError("bad number"))
        assert not is_session_error(ProviderError("invalid recipient"))


class TestClientLifecycle:
    def test_requires_context_manager(self):
        client = KoyebRelayClient("https://koyeb.example.com")

        with pytest.raises(RuntimeError):
            client.client

    async def test_context_manager_sets_auth_header(self):
        async with KoyebRelayClient("https://koyeb.example.com/", api_key="key") as client:
            assert client.client.headers["Authorization"] == "Bearer key"
            assert client.base_url == "https://koyeb.example.com"
        assert client._client is None


@pytest.mark.asyncio
class TestKoyebRelayClient:
    async def test_create_session(self, koyeb, fake):
        fake.on(
            "POST",
            "/api/sessions/create",
            httpx.Response(200, json={"sessionId": "k-1", "qr": "QR", "status": "qr_pending"}),
        )

        session = await koyeb.create_session("user-1", {"source": "test"})

        assert session.external_session_id == "k-1"
        assert session.qr_code == "QR"
        assert session.expires_at is None
        assert body(fake.requests[0]) == {"userId": "user-1", "metadata": {"source": "test"}}

    async def test_create_session_without_id(self, koyeb, fake):
        fake.on("POST", "/api/sessions/create", httpx.Response(200, json={"status": "ok"}))

        with pytest.raises(ProviderError):
            await koyeb.create_session("user-1")

    async def test_status_legacy_connected_field(self, koyeb, fake):
        fake.on(
            "GET",
            "/api/sessions/k-1/status",
            httpx.Response(200, json={"connected": True, "phoneNumber": "15550001111"}),
        )

        status = await koyeb.get_session_status("k-1")

        assert status.is_connected is True
        assert status.status == "connected"
        assert status.phone_number == "15550001111"

    async def test_qr_code(self, koyeb, fake):
        fake.on(
            "GET",
            "/api/sessions/k-1/qr",
            httpx.Response(200, json={"qrCode": "QR2", "expiresAt": "2030-01-01T00:00:00Z"}),
        )

        qr = await koyeb.get_qr_code("k-1")

        assert qr.qr_code == "QR2"
        assert qr.expires_at.year == 2030

    async def test_missing_qr_code(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/qr", httpx.Response(200, json={}))

        with pytest.raises(SessionError):
            await koyeb.get_qr_code("k-1")

    @pytest.mark.parametrize(
        "status, payload, expected",
        [
            (404, {"error": "missing"}, SessionNotFound),
            (401, {"error": "bad key"}, Unauthorized),
            (403, {"error": "forbidden"}, Unauthorized),
        ],
    )
    async def test_error_mapping(self, koyeb, fake, status, payload, expected):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(status, json=payload))

        with pytest.raises(expected):
            await koyeb.get_session_status("k-1")

    async def test_provider_error_keeps_code(self, koyeb, fake):
        fake.on(
            "GET",
            "/api/sessions/k-1/status",
            httpx.Response(500, json={"error": "boom", "code": "BAILEYS_CRASH"}),
        )

        with pytest.raises(ProviderError) as exc_info:
            await koyeb.get_session_status("k-1")

        assert exc_info.value.error_code == "BAILEYS_CRASH"
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "boom"

    async def test_provider_error_default_code(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(502, text="Bad gateway"))

        with pytest.raises(ProviderError) as exc_info:
            await koyeb.get_session_status("k-1")

        assert exc_info.value.error_code == "KOYEB_API_ERROR"
        assert exc_info.value.message == "Bad gateway"

    async def test_unreachable(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.ConnectError("refused"))

        with pytest.raises(ProviderUnavailable):
            await koyeb.get_session_status("k-1")

    async def test_timeout(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.ReadTimeout("slow"))

        with pytest.raises(ConnectionError) as exc_info:
            await koyeb.get_session_status("k-1")

        assert exc_info.value.status_code == 504

    async def test_disconnect_unknown_session_is_fine(self, koyeb, fake):
        fake.on("DELETE", "/api/sessions/k-1", httpx.Response(404, json={"error": "gone"}))

        await koyeb.disconnect_session("k-1")

        assert len(fake.calls("DELETE", "/api/sessions/k-1")) == 1

    async def test_register_webhook(self, koyeb, fake):
        fake.on("POST", "/api/webhook/register", httpx.Response(200, json={"ok": True}))

        await koyeb.register_webhook("k-1", "https://gw/api/v1/webhooks/whatsapp")

        assert body(fake.requests[0]) == {
            "sessionId": "k-1",
            "webhookUrl": "https://gw/api/v1/webhooks/whatsapp",
            "secret": "secret",
        }

    @pytest.mark.parametrize("url", ["", "   "])
    async def test_register_webhook_requires_url(self, koyeb, fake, url):
        with pytest.raises(ValidationError):
            await koyeb.register_webhook("k-1", url)

        assert fake.requests == []

    async def test_send_text(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": True}))
        fake.on("POST", "/api/messages/send", httpx.Response(200, json={"messageId": "m-1"}))

        response = await koyeb.send_text("k-1", "15551234567@s.whatsapp.net", "hi")

        assert response.message_id == "m-1"
        assert body(fake.calls("POST", "/api/messages/send")[0]) == {
            "sessionId": "k-1",
            "to": "15551234567@s.whatsapp.net",
            "message": "hi",
        }

    async def test_send_retries_session_errors(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": True}))
        fake.on(
            "POST",
            "/api/messages/send",
            httpx.Response(500, json={"error": "Session not connected"}),
            httpx.Response(200, json={"id": "m-2"}),
        )

        response = await koyeb.send_text("k-1", "to", "hi")

        assert response.message_id == "m-2"
        assert len(fake.calls("POST", "/api/messages/send")) == 2
        assert koyeb.reconnect_attempts("k-1") == 0

    async def test_send_does_not_retry_other_errors(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": True}))
        fake.on("POST", "/api/messages/send", httpx.Response(400, json={"error": "invalid recipient"}))

        with pytest.raises(ProviderError):
            await koyeb.send_text("k-1", "to", "hi")

        assert len(fake.calls("POST", "/api/messages/send")) == 1

    async def test_send_reconnects_first(self, koyeb, fake):
        state = {"connected": False}

        def status(request):
            return httpx.Response(200, json={"isConnected": state["connected"]})

        def reconnect(request):
            state["connected"] = True
            return httpx.Response(200, json={})

        fake.on("GET", "/api/sessions/k-1/status", status)
        fake.on("POST", "/api/sessions/k-1/reconnect", reconnect)
        fake.on("POST", "/api/messages/send", httpx.Response(200, json={"messageId": "m-3"}))

        response = await koyeb.send_text("k-1", "to", "hi")

        assert response.message_id == "m-3"
        assert body(fake.calls("POST", "/api/sessions/k-1/reconnect")[0]) == {"force": True}
        assert koyeb.reconnect_attempts("k-1") == 0

    async def test_send_gives_up_when_reconnection_fails(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": False}))
        fake.on("POST", "/api/sessions/k-1/reconnect", httpx.Response(200, json={}))

        with pytest.raises(SessionError):
            await koyeb.send_text("k-1", "to", "hi")

        assert fake.calls("POST", "/api/messages/send") == []
        assert koyeb.reconnect_attempts("k-1") == 2
        assert await koyeb.attempt_reconnection("k-1") is False

        koyeb.reset_reconnect_attempts("k-1")
        assert koyeb.reconnect_attempts("k-1") == 0

    async def test_send_media_document(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": True}))
        fake.on("POST", "/api/messages/send", httpx.Response(200, json={"messageId": "m-4"}))

        await koyeb.send_media(
            "k-1", "to", "https://cdn/files/report.pdf?sig=1", "application/pdf", caption="Q3"
        )

        message = body(fake.calls("POST", "/api/messages/send")[0])["message"]
        assert message == {
            "text": "Q3",
            "document": {
                "url": "https://cdn/files/report.pdf?sig=1",
                "filename": "report.pdf",
                "mimetype": "application/pdf",
            },
        }

    async def test_send_media_failure(self, koyeb, fake):
        fake.on("GET", "/api/sessions/k-1/status", httpx.Response(200, json={"isConnected": True}))
        fake.on("POST", "/api/messages/send", httpx.Response(400, json={"error": "too large"}))

        with pytest.raises(MediaError):
            await koyeb.send_media("k-1", "to", "https://cdn/i.png", "image/png")

    async def test_upload_media(self, koyeb, fake):
        fake.on(
            "POST",
            "/api/media/upload",
            httpx.Response(200, json={"mediaId": "med-1", "url": "https://cdn/med-1"}),
        )

        uploaded = await koyeb.upload_media("k-1", b"data", "a.png", "image/png")

        assert uploaded.media_id == "med-1"
        assert uploaded.mime_type == "image/png"

    async def test_upload_media_without_id(self, koyeb, fake):
        fake.on("POST", "/api/media/upload", httpx.Response(200, json={}))

        with pytest.raises(MediaError):
            await koyeb.upload_media("k-1", b"data", "a.png", "image/png")

    async def test_health_check(self, koyeb, fake):
        fake.on("GET", "/health", httpx.Response(200, json={"ok": True}))
        assert await koyeb.health_check() is True

        fake.on("GET", "/health", httpx.Response(500, json={"error": "down"}))
        assert await koyeb.health_check() is False

    async def test_webhook_signature(self, koyeb):
        payload = b'{"event": "qr"}'

        assert koyeb.validate_webhook_signature(compute_signature("secret", payload), payload)
        assert not koyeb.validate_webhook_signature("deadbeef", payload)

    async def test_info(self, koyeb):
        assert not isinstance(koyeb, KeepAliveCapable)
        assert koyeb.info() == {
            "name": "koyeb",
            "base_url": "https://koyeb.example.com",
            "supports_keep_alive": False,
        }


@pytest.mark.asyncio
class TestFlyioRelayClient:
    async def test_create_session_generates_id(self, flyio, fake):
        fake.on("POST", "/api/sessions/create", httpx.Response(200, json={"qr": "QR"}))

        session = await flyio.create_session("user-1")

        assert session.external_session_id.startswith("flyio_user-1_")
        assert session.expires_at is not None
        assert body(fake.requests[0])["sessionId"] == session.external_session_id

    async def test_status(self, flyio, fake):
        fake.on(
            "GET",
            "/api/sessions/f-1/status",
            httpx.Response(200, json={"status": "connected", "phone": "1555"}),
        )

        status = await flyio.get_session_status("f-1")

        assert status.is_connected
        assert status.phone_number == "1555"

    async def test_webhook_body(self, flyio, fake):
        fake.on("POST", "/api/webhook/register", httpx.Response(200, json={}))

        await flyio.register_webhook("f-1", "https://gw/hook")

        assert body(fake.requests[0]) == {
            "sessionId": "f-1",
            "url": "https://gw/hook",
            "secret": "secret",
        }

    async def test_server_errors_are_retryable(self, flyio, fake):
        fake.on("GET", "/api/sessions/f-1/status", httpx.Response(503, json={"error": "machine stopped"}))

        with pytest.raises(ProviderError) as exc_info:
            await flyio.get_session_status("f-1")

        assert is_session_error(exc_info.value)

    async def test_reconnect_falls_back_to_refresh(self, flyio, fake):
        state = {"connected": False}

        def refresh(request):
            state["connected"] = True
            return httpx.Response(200, json={})

        fake.on(
            "GET",
            "/api/sessions/f-1/status",
            lambda request: httpx.Response(
                200, json={"status": "connected" if state["connected"] else "disconnected"}
            ),
        )
        fake.on("POST", "/api/sessions/f-1/reconnect", httpx.Response(500, json={"error": "nope"}))
        fake.on("POST", "/api/sessions/f-1/refresh", refresh)

        assert await flyio.attempt_reconnection("f-1") is True
        assert len(fake.calls("POST", "/api/sessions/f-1/refresh")) == 1

    async def test_keep_alive_pings(self, flyio, fake):
        fake.on("POST", "/api/sessions/f-1/ping", httpx.Response(200, json={}))
        assert isinstance(flyio, KeepAliveCapable)

        flyio.start_keep_alive("f-1")
        for _ in range(200):
            if len(fake.calls("POST", "/api/sessions/f-1/ping")) >= 2:
                break
            await asyncio.sleep(0.01)

        assert flyio.has_keep_alive("f-1")
        flyio.stop_keep_alive("f-1")
        assert not flyio.has_keep_alive("f-1")
        assert len(fake.calls("POST", "/api/sessions/f-1/ping")) >= 2

    async def test_keep_alive_survives_unexpected_error(self, flyio, monkeypatch):
        pings = []

        async def flaky_ping(session_id):
            pings.append(session_id)
            if len(pings) == 1:
                raise RuntimeError("boom")

        monkeypatch.setattr(flyio, "ping", flaky_ping)

        flyio.start_keep_alive("f-1")
        for _ in range(200):
            if len(pings) >= 3:
                break
            await asyncio.sleep(0.01)

        assert len(pings) >= 3
        assert flyio.has_keep_alive("f-1")
        flyio.stop_keep_alive("f-1")

    async def test_ping_falls_back_to_status(self, flyio, fake):
        fake.on("POST", "/api/sessions/f-1/ping", httpx.Response(500, json={"error": "no ping"}))
        fake.on("GET", "/api/sessions/f-1/status", httpx.Response(200, json={"status": "connected"}))

        await flyio.ping("f-1")

        assert len(fake.calls("GET", "/api/sessions/f-1/status")) == 1

    async def test_disconnect_stops_keep_alive(self, flyio, fake):
        fake.on("DELETE", "/api/sessions/f-1", httpx.Response(204))

        flyio.start_keep_alive("f-1")
        await flyio.disconnect_session("f-1")

        assert not flyio.has_keep_alive("f-1")

    async def test_exit_stops_all_keep_alive(self, fake):
        client = attach(FlyioRelayClient("https://fly.example.com", keep_alive_interval=60), fake)
        client.start_keep_alive("a")
        client.start_keep_alive("b")

        await client.__aexit__(None, None, None)

        assert not client.has_keep_alive("a")
        assert not client.has_keep_alive("b")
