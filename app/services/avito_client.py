"""Avito API connector - асинхронный клиент Avito Messenger / Core API.

Особенности Avito API:
- OAuth client_credentials (``POST /token/``), токен живёт ~24ч; кэшируем в
  ``integration_state`` (id=1) и обновляем, когда осталось меньше 60с
- Messenger API существует в версиях v1/v2/v3, набор доступных эндпоинтов
  зависит от аккаунта, поэтому почти каждая операция перебирает версии
- Ответы разных версий по-разному оборачивают данные; разбор формы вынесен в
  ``payload_normalizer``
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from prometheus_client import Counter

from app.config import Settings, get_settings
from app.models.integration_state import INTEGRATION_STATE_ID, IntegrationState
from app.services.base_connector import BaseChannelConnector, WebhookSubscription
from app.services.payload_normalizer import ItemInfo, normalize_item_info, pick_first_id
from app.services.rate_limiter import AvitoRateLimiter, endpoint_key, get_rate_limiter, parse_retry_after

logger = logging.getLogger(__name__)

AVITO_API_REQUESTS_TOTAL = Counter(
    "avito_api_requests_total",
    "Avito API requests by outcome",
    ["method", "outcome"],
)

_TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
_MAX_ATTEMPTS = 3

MARK_READ_BODY_KEYS = (
    "message_id",
    "messageId",
    "last_message_id",
    "lastMessageId",
    "last_read_message_id",
)

# Module-level shared httpx client with connection pooling.
# Auth headers are passed per-request, so a single client serves every account.
_shared_client: Optional[httpx.AsyncClient] = None
_client_loop: Optional[asyncio.AbstractEventLoop] = None


def _get_shared_client() -> httpx.AsyncClient:
    """Return the shared client, recreating it when the running event loop changed (Celery run_async)."""
    global _shared_client, _client_loop
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        current_loop = None

    needs_new = (
        _shared_client is None
        or _shared_client.is_closed
        or (current_loop is not None and current_loop is not _client_loop)
    )
    if needs_new:
        _shared_client = httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=120,
            ),
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0),
        )
        _client_loop = current_loop
    return _shared_client


async def close_shared_client() -> None:
    """Close the shared httpx client (call on app shutdown)."""
    global _shared_client
    if _shared_client is not None and not _shared_client.is_closed:
        await _shared_client.aclose()
    _shared_client = None


class AvitoConfigError(RuntimeError):
    """Avito credentials / account id are not configured."""


class AvitoAPIError(Exception):
    """Non-success response from the Avito API."""

    def __init__(self, status_code: int, path: str, body: str = ""):
        self.status_code = status_code
        self.path = path
        self.body = body
        super().__init__(f"Avito API error {status_code} on {path}: {body[:500]}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _subscription_from(resp: Any, fallback_url: Optional[str] = None) -> WebhookSubscription:
    data = resp if isinstance(resp, dict) else {}
    return WebhookSubscription(
        id=pick_first_id(data.get("id"), data.get("subscription_id"), data.get("subscriptionId")),
        url=data.get("url") if isinstance(data.get("url"), str) else fallback_url,
        raw=resp,
    )


class AvitoClient(BaseChannelConnector):
    """
    Асинхронный коннектор для Avito API.

    Все запросы идут через ``_request``: rate limiter, Bearer-токен, повтор после
    401 (токен сбрасывается), экспоненциальный backoff на 429 и повтор по таймауту.
    """

    marketplace = "avito"
    channel = "chat"

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        account_id: Optional[int],
        base_url: str = "https://api.avito.ru",
        scope: str = "messenger:read messenger:write items:info",
        session_factory: Optional[Callable[[], Any]] = None,
        rate_limiter: Optional[AvitoRateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_base: float = 1.0,
    ):
        self.client_id = (client_id or "").strip() or None
        self.client_secret = (client_secret or "").strip() or None
        self.account_id = account_id
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self._session_factory = session_factory
        self._rate_limiter = rate_limiter
        self._http_client = http_client
        self._backoff_base = backoff_base

        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or _get_shared_client()

    def _sessions(self):
        if self._session_factory is None:
            from app.database import AsyncSessionLocal

            self._session_factory = AsyncSessionLocal
        return self._session_factory

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise AvitoConfigError("AVITO_CLIENT_ID / AVITO_CLIENT_SECRET are not configured")

    def _acct(self) -> int:
        if not self.account_id:
            raise AvitoConfigError("AVITO_ACCOUNT_ID is missing")
        return self.account_id

    def _token_valid(self, token: Optional[str], expires_at: Optional[datetime]) -> bool:
        if not token or expires_at is None:
            return False
        return _as_utc(expires_at) - datetime.now(timezone.utc) > _TOKEN_REFRESH_MARGIN

    async def _get_access_token(self) -> str:
        """Cached token from memory / integration_state, refreshed under a lock."""
        if self._token_valid(self._token, self._token_expires_at):
            return self._token  # type: ignore[return-value]

        async with self._token_lock:
            if self._token_valid(self._token, self._token_expires_at):
                return self._token  # type: ignore[return-value]

            async with self._sessions()() as db:
                state = await db.get(IntegrationState, INTEGRATION_STATE_ID)
                if state is not None and self._token_valid(state.access_token, state.expires_at):
                    self._token = state.access_token
                    self._token_expires_at = _as_utc(state.expires_at)
                    return self._token

            token, expires_at = await self._fetch_token()

            async with self._sessions()() as db:
                state = await db.get(IntegrationState, INTEGRATION_STATE_ID)
                if state is None:
                    state = IntegrationState(id=INTEGRATION_STATE_ID)
                    db.add(state)
                state.access_token = token
                state.expires_at = expires_at
                await db.commit()

            self._token = token
            self._token_expires_at = expires_at
            return token

    async def _fetch_token(self) -> Tuple[str, datetime]:
        self._require_credentials()
        response = await self._client().post(
            f"{self.base_url}/token/",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": self.scope,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code >= 400:
            AVITO_API_REQUESTS_TOTAL.labels(method="POST", outcome="token_error").inc()
            raise AvitoAPIError(response.status_code, "/token/", response.text)

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise AvitoAPIError(response.status_code, "/token/", "access_token missing in response")
        expires_in = int(payload.get("expires_in") or 0)
        logger.info("Avito access token refreshed (expires_in=%ss)", expires_in)
        return token, datetime.now(timezone.utc) + timedelta(seconds=expires_in)

    async def invalidate_token(self) -> None:
        """Drop the cached token (memory + DB) so the next call re-authenticates."""
        self._token = None
        self._token_expires_at = None
        async with self._sessions()() as db:
            state = await db.get(IntegrationState, INTEGRATION_STATE_ID)
            if state is not None:
                state.access_token = None
                state.expires_at = None
                await db.commit()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: float = 15.0,
    ) -> Any:
        """
        Make async HTTP request to Avito API with retry logic.

        Returns:
            Parsed JSON (or text for non-JSON bodies, None for empty ones)

        Raises:
            AvitoAPIError: On non-success HTTP status (after retries)
            AvitoConfigError: When credentials are missing
            httpx.TimeoutException: After the last timed-out attempt
        """
        self._require_credentials()
        url = f"{self.base_url}{path}"
        endpoint = endpoint_key(method, path)
        auth_retried = False

        attempt = 0
        while True:
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire(self.client_id, endpoint)
            token = await self._get_access_token()
            try:
                response = await self._client().request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=timeout,
                )
            except httpx.TimeoutException:
                logger.warning("Avito API timeout %s %s, attempt %s/%s", method, path, attempt + 1, _MAX_ATTEMPTS)
                attempt += 1
                if attempt >= _MAX_ATTEMPTS:
                    AVITO_API_REQUESTS_TOTAL.labels(method=method, outcome="timeout").inc()
                    raise
                await asyncio.sleep(self._backoff_base)
                continue

            status = response.status_code
            if status == 401 and not auth_retried:
                logger.info("Avito API 401 on %s, refreshing token", path)
                auth_retried = True
                await self.invalidate_token()
                continue

            if status == 429:
                attempt += 1
                if attempt >= _MAX_ATTEMPTS:
                    AVITO_API_REQUESTS_TOTAL.labels(method=method, outcome="rate_limited").inc()
                    raise AvitoAPIError(status, path, response.text)
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None and self._rate_limiter is not None:
                    # acquire() at the top of the loop waits the hold out
                    self._rate_limiter.block(self.client_id, endpoint, retry_after)
                    continue
                delay = retry_after if retry_after is not None else self._backoff_base * (2 ** (attempt - 1))
                logger.warning("Avito API 429 on %s, backing off %.1fs", path, delay)
                await asyncio.sleep(delay)
                continue

            if status >= 400:
                AVITO_API_REQUESTS_TOTAL.labels(method=method, outcome="error").inc()
                raise AvitoAPIError(status, path, response.text)

            AVITO_API_REQUESTS_TOTAL.labels(method=method, outcome="ok").inc()
            if not response.content:
                return None
            if "application/json" in response.headers.get("content-type", ""):
                return response.json()
            return response.text

    async def _first_success(self, attempts: Iterable[Tuple[str, str, Dict[str, Any]]], what: str) -> Any:
        """Try (method, path, kwargs) variants in order; raise the last error if all fail."""
        last_error: Optional[Exception] = None
        for method, path, kwargs in attempts:
            try:
                return await self._request(method, path, **kwargs)
            except (AvitoAPIError, httpx.HTTPError) as exc:
                logger.debug("Avito %s: %s %s failed: %s", what, method, path, exc)
                last_error = exc
        if last_error is None:
            raise AvitoAPIError(0, what, "no endpoint variant succeeded")
        raise last_error

    # ------------------------------------------------------------------
    # Messenger
    # ------------------------------------------------------------------

    def _messenger(self, version: str, suffix: str) -> str:
        return f"/messenger/{version}/accounts/{self._acct()}{suffix}"

    async def list_chats(self, *, limit: int = 100, offset: int = 0) -> Any:
        params = {"limit": limit, "offset": offset}
        return await self._first_success(
            (("GET", self._messenger(v, "/chats"), {"params": params}) for v in ("v3", "v2", "v1")),
            "list_chats",
        )

    async def get_chat_info(self, chat_id: str) -> Any:
        suffix = f"/chats/{_segment(chat_id)}"
        return await self._first_success(
            (("GET", self._messenger(v, suffix), {}) for v in ("v2", "v1")),
            "get_chat_info",
        )

    async def list_messages(self, chat_id: str, *, limit: int = 100, offset: int = 0) -> Any:
        suffix = f"/chats/{_segment(chat_id)}/messages"
        params = {"limit": limit, "offset": offset}
        return await self._first_success(
            (("GET", self._messenger(v, suffix), {"params": params}) for v in ("v3", "v2", "v1")),
            "list_messages",
        )

    async def send_text_message(self, chat_id: str, text: str) -> Any:
        return await self._request(
            "POST",
            self._messenger("v1", f"/chats/{_segment(chat_id)}/messages"),
            json={"type": "text", "message": {"text": text}},
        )

    async def mark_chat_read(self, chat_id: str, last_message_id: Optional[str] = None) -> None:
        bodies: List[Optional[Dict[str, str]]] = [None]
        if last_message_id:
            bodies.extend({key: last_message_id} for key in MARK_READ_BODY_KEYS)

        suffix = f"/chats/{_segment(chat_id)}/read"
        attempts = [
            (method, self._messenger(version, suffix), {"json": body})
            for version in ("v3", "v2", "v1")
            for method in ("POST", "PUT")
            for body in bodies
        ]
        await self._first_success(attempts, "mark_chat_read")

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def get_item_info(self, item_id: int) -> Optional[ItemInfo]:
        """Item info, or None if every endpoint variant answered 404."""
        acct = self._acct()
        paths = (
            f"/core/v1/accounts/{acct}/items/{item_id}/",
            f"/core/v1/accounts/{acct}/items/{item_id}",
        )
        errors: List[AvitoAPIError] = []
        for path in paths:
            try:
                resp = await self._request("GET", path)
            except AvitoAPIError as exc:
                errors.append(exc)
                continue
            return normalize_item_info(item_id, resp)

        if errors and all(e.is_not_found for e in errors):
            return None
        raise errors[-1]

    async def whoami(self) -> Dict[str, Any]:
        resp = await self._request("GET", "/core/v1/accounts/self")
        return resp if isinstance(resp, dict) else {"raw": resp}

    # ------------------------------------------------------------------
    # Webhook subscription
    # ------------------------------------------------------------------

    async def subscribe_webhook(self, url: str) -> WebhookSubscription:
        acct = self._acct()
        paths = (
            f"/messenger/v3/accounts/{acct}/webhook",
            f"/messenger/v2/accounts/{acct}/subscriptions_v2",
            f"/messenger/v2/accounts/{acct}/subscriptions",
            f"/messenger/v1/subscriptions/{acct}",
        )
        resp = await self._first_success(
            (("POST", path, {"json": {"url": url}}) for path in paths),
            "subscribe_webhook",
        )
        return _subscription_from(resp, url)

    async def unsubscribe_webhook(self, subscription_id: Optional[str] = None) -> None:
        acct = self._acct()
        paths: List[str] = [f"/messenger/v3/accounts/{acct}/webhook"]
        if subscription_id:
            paths.append(f"/messenger/v2/accounts/{acct}/subscriptions/{_segment(subscription_id)}")
        paths.append(f"/messenger/v1/subscriptions/{acct}")
        await self._first_success((("DELETE", path, {}) for path in paths), "unsubscribe_webhook")

    async def get_webhook_subscriptions(self) -> List[WebhookSubscription]:
        acct = self._acct()
        paths = (
            f"/messenger/v3/accounts/{acct}/webhook",
            f"/messenger/v2/accounts/{acct}/subscriptions",
            f"/messenger/v1/subscriptions/{acct}",
        )
        resp = await self._first_success((("GET", path, {}) for path in paths), "get_webhook_subscriptions")

        items: Sequence[Any]
        if isinstance(resp, list):
            items = resp
        elif isinstance(resp, dict) and isinstance(resp.get("subscriptions"), list):
            items = resp["subscriptions"]
        elif isinstance(resp, dict) and isinstance(resp.get("items"), list):
            items = resp["items"]
        elif isinstance(resp, dict) and resp.get("url"):
            items = [resp]
        else:
            items = []
        return [_subscription_from(item) for item in items]


class MockAvitoClient(BaseChannelConnector):
    """Offline connector for MOCK_MODE: no network, fake outbound ids, empty lookups."""

    marketplace = "avito"
    channel = "chat"

    def __init__(self, account_id: Optional[int] = None):
        self.account_id = account_id
        self.sent: List[Tuple[str, str]] = []

    async def send_text_message(self, chat_id: str, text: str) -> Any:
        message_id = f"mock_out_{uuid.uuid4().hex[:12]}"
        self.sent.append((chat_id, text))
        logger.info("MOCK send to chat=%s id=%s", chat_id, message_id)
        return {"id": message_id, "mock": True}

    async def get_chat_info(self, chat_id: str) -> Any:
        return {}

    async def get_item_info(self, item_id: int) -> Optional[ItemInfo]:
        return None

    async def list_chats(self, *, limit: int = 100, offset: int = 0) -> Any:
        return {"chats": []}

    async def list_messages(self, chat_id: str, *, limit: int = 100, offset: int = 0) -> Any:
        return {"messages": []}

    async def mark_chat_read(self, chat_id: str, last_message_id: Optional[str] = None) -> None:
        return None

    async def subscribe_webhook(self, url: str) -> WebhookSubscription:
        return WebhookSubscription(id="mock", url=url, raw={"mock": True})

    async def unsubscribe_webhook(self, subscription_id: Optional[str] = None) -> None:
        return None

    async def get_webhook_subscriptions(self) -> List[WebhookSubscription]:
        return []

    async def whoami(self) -> Dict[str, Any]:
        return {"id": self.account_id, "mock": True}


def build_avito_client(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[Callable[[], Any]] = None,
) -> BaseChannelConnector:
    """Connector for the current configuration (mock in MOCK_MODE)."""
    settings = settings or get_settings()
    if settings.MOCK_MODE:
        return MockAvitoClient(account_id=settings.AVITO_ACCOUNT_ID)
    return AvitoClient(
        client_id=settings.AVITO_CLIENT_ID,
        client_secret=settings.AVITO_CLIENT_SECRET,
        account_id=settings.AVITO_ACCOUNT_ID,
        base_url=settings.AVITO_BASE_URL,
        scope=settings.AVITO_SCOPE,
        session_factory=session_factory,
        rate_limiter=get_rate_limiter(),
    )
