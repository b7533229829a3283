"""Tests for the Avito API connector (HTTP mocked with httpx.MockTransport)."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from app.models.integration_state import INTEGRATION_STATE_ID, IntegrationState
from app.services.avito_client import (
    AvitoAPIError,
    AvitoClient,
    AvitoConfigError,
    MockAvitoClient,
    build_avito_client,
)
from app.services.rate_limiter import AvitoRateLimiter, endpoint_key

from conftest import ACCOUNT_ID, make_settings


class _Recorder:
    """MockTransport handler: token endpoint + pluggable API responder."""

    def __init__(self, api):
        self.api = api
        self.requests = []
        self.tokens_issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token/":
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.tokens_issued}", "expires_in": 86400})
        self.requests.append(request)
        return self.api(request)

    @property
    def api_paths(self):
        return [(r.method, r.url.path) for r in self.requests]


def _client(session_factory, api, **kwargs):
    recorder = _Recorder(api)
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    client = AvitoClient(
        client_id="cid",
        client_secret="secret",
        account_id=ACCOUNT_ID,
        base_url="https://avito.test",
        session_factory=session_factory,
        http_client=http,
        backoff_base=0,
        **kwargs,
    )
    return client, recorder


def _ok(payload=None):
    return lambda request: httpx.Response(200, json=payload if payload is not None else {"ok": True})


# ---------------------------------------------------------------------------
# Token handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_token_fetched_once_and_persisted(session_factory):
    client, recorder = _client(session_factory, _ok({"messages": []}))

    await client.list_messages("chat-1")
    await client.list_messages("chat-1")

    assert recorder.tokens_issued == 1
    assert all(r.headers["Authorization"] == "Bearer tok-1" for r in recorder.requests)

    async with session_factory() as db:
        state = await db.get(IntegrationState, INTEGRATION_STATE_ID)
        assert state.access_token == "tok-1"
        assert state.expires_at is not None


@pytest.mark.asyncio
async def test_token_reused_from_integration_state(session_factory):
    async with session_factory() as db:
        db.add(IntegrationState(
            id=INTEGRATION_STATE_ID,
            access_token="db-token",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ))
        await db.commit()

    client, recorder = _client(session_factory, _ok())
    await client.get_chat_info("chat-1")

    assert recorder.tokens_issued == 0
    assert recorder.requests[0].headers["Authorization"] == "Bearer db-token"


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed(session_factory):
    async with session_factory() as db:
        db.add(IntegrationState(
            id=INTEGRATION_STATE_ID,
            access_token="stale",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
        ))
        await db.commit()

    client, recorder = _client(session_factory, _ok())
    await client.get_chat_info("chat-1")

    assert recorder.tokens_issued == 1


@pytest.mark.asyncio
async def test_401_invalidates_token_and_retries_once(session_factory):
    calls = {"n": 0}

    def api(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(401, text="expired")
        return httpx.Response(200, json={"id": "m-1"})

    client, recorder = _client(session_factory, api)
    resp = await client.send_text_message("chat-1", "Здравствуйте")

    assert resp == {"id": "m-1"}
    assert recorder.tokens_issued == 2
    assert recorder.requests[-1].headers["Authorization"] == "Bearer tok-2"


@pytest.mark.asyncio
async def test_second_401_is_an_error(session_factory):
    client, _ = _client(session_factory, lambda request: httpx.Response(401, text="nope"))

    with pytest.raises(AvitoAPIError) as exc_info:
        await client.send_text_message("chat-1", "x")
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_missing_credentials_raise_config_error(session_factory):
    client = AvitoClient(client_id="", client_secret=None, account_id=ACCOUNT_ID, session_factory=session_factory)

    with pytest.raises(AvitoConfigError):
        await client.list_messages("chat-1")


@pytest.mark.asyncio
async def test_missing_account_id_raises_config_error(session_factory):
    client, _ = _client(session_factory, _ok())
    client.account_id = None

    with pytest.raises(AvitoConfigError):
        await client.get_chat_info("chat-1")


# ---------------------------------------------------------------------------
# Retry / fallback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_429_backs_off_then_succeeds(session_factory):
    calls = {"n": 0}

    def api(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(429, text="slow down")
        return httpx.Response(200, json={"id": "m-1"})

    client, _ = _client(session_factory, api)
    assert await client.send_text_message("chat-1", "x") == {"id": "m-1"}
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_429_gives_up_after_max_attempts(session_factory):
    client, recorder = _client(session_factory, lambda request: httpx.Response(429, text="slow down"))

    with pytest.raises(AvitoAPIError) as exc_info:
        await client.send_text_message("chat-1", "x")

    assert exc_info.value.status_code == 429
    assert len(recorder.requests) == 3


def _throttled_once(retry_after="7"):
    calls = {"n": 0}

    def api(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": retry_after}, text="slow down")
        return httpx.Response(200, json={"id": "m-1"})

    return api


@pytest.mark.asyncio
async def test_429_retry_after_holds_endpoint_in_limiter(session_factory):
    now = {"t": 500.0}

    async def fake_sleep(seconds):
        now["t"] += seconds

    limiter = AvitoRateLimiter(max_requests_per_minute=100, clock=lambda: now["t"])
    client, recorder = _client(session_factory, _throttled_once("7"), rate_limiter=limiter)

    with patch("app.services.rate_limiter.asyncio.sleep", side_effect=fake_sleep) as mock_sleep:
        assert await client.send_text_message("chat-1", "x") == {"id": "m-1"}

    mock_sleep.assert_called_once_with(7.0)
    assert len(recorder.requests) == 2

    # the hold is per endpoint template
    endpoint = endpoint_key("POST", recorder.requests[0].url.path)
    assert endpoint.endswith("/chats/{id}/messages")
    assert await limiter.acquire("cid", endpoint_key("GET", "/messenger/v2/accounts/1/chats")) == 0.0


@pytest.mark.asyncio
async def test_429_retry_after_used_as_delay_without_limiter(session_factory):
    client, _ = _client(session_factory, _throttled_once("3"))

    with patch("app.services.avito_client.asyncio.sleep") as mock_sleep:
        mock_sleep.return_value = None
        assert await client.send_text_message("chat-1", "x") == {"id": "m-1"}

    mock_sleep.assert_called_once_with(3.0)


@pytest.mark.asyncio
async def test_first_success_without_variants_raises_api_error(session_factory):
    client, recorder = _client(session_factory, _ok())

    with pytest.raises(AvitoAPIError) as exc_info:
        await client._first_success([], "noop")

    assert exc_info.value.status_code == 0
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_list_messages_falls_back_through_versions(session_factory):
    def api(request):
        if "/messenger/v3/" in request.url.path:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, json={"messages": [{"id": "m1"}]})

    client, recorder = _client(session_factory, api)
    resp = await client.list_messages("chat-1", limit=50, offset=100)

    assert resp == {"messages": [{"id": "m1"}]}
    assert [p for _, p in recorder.api_paths] == [
        f"/messenger/v3/accounts/{ACCOUNT_ID}/chats/chat-1/messages",
        f"/messenger/v2/accounts/{ACCOUNT_ID}/chats/chat-1/messages",
    ]
    assert recorder.requests[-1].url.params["limit"] == "50"
    assert recorder.requests[-1].url.params["offset"] == "100"


@pytest.mark.asyncio
async def test_fallback_raises_last_error_when_all_fail(session_factory):
    client, recorder = _client(session_factory, lambda request: httpx.Response(500, text="down"))

    with pytest.raises(AvitoAPIError) as exc_info:
        await client.get_chat_info("chat-1")

    assert exc_info.value.status_code == 500
    assert "/messenger/v1/" in exc_info.value.path
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_mark_chat_read_tries_body_variants(session_factory):
    def api(request):
        body = json.loads(request.content) if request.content else None
        if request.method == "PUT" and "/messenger/v2/" in request.url.path and body == {"lastMessageId": "m9"}:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(400, text="bad request")

    client, recorder = _client(session_factory, api)
    await client.mark_chat_read("chat-1", "m9")

    # v3 (POST+PUT, 6 bodies each), v2 POST (6), then v2 PUT up to the 5th body
    assert len(recorder.requests) == 23
    assert recorder.api_paths[0] == ("POST", f"/messenger/v3/accounts/{ACCOUNT_ID}/chats/chat-1/read")
    assert recorder.requests[0].content == b""


@pytest.mark.asyncio
async def test_mark_chat_read_without_message_id_sends_no_body(session_factory):
    client, recorder = _client(session_factory, _ok())
    await client.mark_chat_read("chat-1")

    assert len(recorder.requests) == 1
    assert recorder.requests[0].content == b""


# ---------------------------------------------------------------------------
# Items / subscriptions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_item_info_parses_response(session_factory):
    client, _ = _client(session_factory, _ok({"title": "Утюг", "price": "2 590 ₽", "url": "https://avito.ru/x_42"}))

    info = await client.get_item_info(42)

    assert info.item_id == 42
    assert info.title == "Утюг"
    assert info.price == 2590


@pytest.mark.asyncio
async def test_get_item_info_none_when_every_variant_404(session_factory):
    client, recorder = _client(session_factory, lambda request: httpx.Response(404, text="no item"))

    assert await client.get_item_info(42) is None
    assert [p for _, p in recorder.api_paths] == [
        f"/core/v1/accounts/{ACCOUNT_ID}/items/42/",
        f"/core/v1/accounts/{ACCOUNT_ID}/items/42",
    ]


@pytest.mark.asyncio
async def test_get_item_info_raises_on_server_error(session_factory):
    client, _ = _client(session_factory, lambda request: httpx.Response(503, text="maintenance"))

    with pytest.raises(AvitoAPIError) as exc_info:
        await client.get_item_info(42)
    assert not exc_info.value.is_not_found


@pytest.mark.asyncio
async def test_subscribe_webhook_falls_back_and_keeps_url(session_factory):
    def api(request):
        if request.url.path.endswith("/webhook"):
            return httpx.Response(404, text="no v3")
        return httpx.Response(200, json={"id": 77})

    client, recorder = _client(session_factory, api)
    subscription = await client.subscribe_webhook("https://crm.example.com/webhook?key=k")

    assert subscription.id == "77"
    assert subscription.url == "https://crm.example.com/webhook?key=k"
    assert json.loads(recorder.requests[-1].content) == {"url": "https://crm.example.com/webhook?key=k"}


@pytest.mark.asyncio
async def test_get_webhook_subscriptions_list_shapes(session_factory):
    client, _ = _client(session_factory, _ok({"subscriptions": [{"url": "https://a/webhook", "id": "s1"}]}))

    subs = await client.get_webhook_subscriptions()

    assert [(s.id, s.url) for s in subs] == [("s1", "https://a/webhook")]


# ---------------------------------------------------------------------------
# Mock connector / factory
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_mock_client_fakes_outbound_ids():
    client = MockAvitoClient(account_id=ACCOUNT_ID)

    resp = await client.send_text_message("chat-1", "hi")

    assert resp["id"].startswith("mock_out_")
    assert client.sent == [("chat-1", "hi")]
    assert await client.get_item_info(1) is None
    assert await client.list_messages("chat-1") == {"messages": []}


def test_build_avito_client_follows_mock_mode():
    assert isinstance(build_avito_client(make_settings(MOCK_MODE=True)), MockAvitoClient)

    real = build_avito_client(make_settings(MOCK_MODE=False, AVITO_CLIENT_ID="cid", AVITO_CLIENT_SECRET="s"))
    assert isinstance(real, AvitoClient)
    assert real.account_id == ACCOUNT_ID
