"""
Pytest configuration and fixtures for the Avito CRM API tests.
"""
import os

# Settings are read once (lru_cache); configure them before any app import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"
os.environ["MOCK_MODE"] = "true"
os.environ["CRM_TOKEN"] = "test-crm-token"
os.environ["DEV_TOKEN"] = "test-dev-token"
os.environ["CRM_WEBHOOK_KEY"] = "test-webhook-key"
os.environ["AVITO_ACCOUNT_ID"] = "1000"
os.environ["SENTRY_DSN"] = ""

from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import models  # noqa: F401
from app.config import Settings
from app.database import Base, get_db
from app.services.base_connector import BaseChannelConnector, WebhookSubscription
from app.services.payload_normalizer import ItemInfo
from app.services.rate_limiter import reset_rate_limiter

ACCOUNT_ID = 1000
CRM_TOKEN = "test-crm-token"
DEV_TOKEN = "test-dev-token"


class FakeAvitoConnector(BaseChannelConnector):
    """In-memory connector: canned lookups, records what was sent."""

    marketplace = "avito"
    channel = "chat"

    def __init__(self):
        self.chat_info: Dict[str, Any] = {}
        self.items: Dict[int, Optional[ItemInfo]] = {}
        self.history: Dict[str, List[Dict[str, Any]]] = {}
        self.sent: List[tuple] = []
        self.read_calls: List[tuple] = []
        self.item_calls: List[int] = []
        self.chat_info_calls: List[str] = []
        self.send_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.subscribed: List[str] = []
        self.unsubscribed: List[Optional[str]] = []
        self.unsubscribe_error: Optional[Exception] = None
        self._next_id = 0

    async def send_text_message(self, chat_id: str, text: str) -> Any:
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        self.sent.append((chat_id, text))
        return {"id": f"sent_{self._next_id}", "created": 1735689600}

    async def get_chat_info(self, chat_id: str) -> Any:
        self.chat_info_calls.append(chat_id)
        return self.chat_info.get(chat_id, {})

    async def get_item_info(self, item_id: int) -> Optional[ItemInfo]:
        self.item_calls.append(item_id)
        value = self.items.get(item_id)
        if isinstance(value, Exception):
            raise value
        return value

    async def list_messages(self, chat_id: str, *, limit: int = 100, offset: int = 0) -> Any:
        messages = self.history.get(chat_id, [])
        return {"messages": messages[offset:offset + limit]}

    async def mark_chat_read(self, chat_id: str, last_message_id: Optional[str] = None) -> None:
        if self.read_error is not None:
            raise self.read_error
        self.read_calls.append((chat_id, last_message_id))

    async def subscribe_webhook(self, url: str) -> WebhookSubscription:
        self.subscribed.append(url)
        return WebhookSubscription(id="sub-1", url=url, raw={"ok": True})

    async def unsubscribe_webhook(self, subscription_id: Optional[str] = None) -> None:
        self.unsubscribed.append(subscription_id)
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error


def make_settings(**overrides) -> Settings:
    values = {
        "ENVIRONMENT": "development",
        "MOCK_MODE": True,
        "AVITO_ACCOUNT_ID": ACCOUNT_ID,
        "CRM_TOKEN": CRM_TOKEN,
        "DEV_TOKEN": DEV_TOKEN,
        "CRM_WEBHOOK_KEY": "test-webhook-key",
    }
    values.update(overrides)
    return Settings(**values)


def webhook_body(
    *,
    event_id: str = "evt-1",
    chat_id: str = "chat-1",
    message_id: Optional[str] = "msg-1",
    author_id: Optional[int] = 555,
    text: str = "Здравствуйте! Товар в наличии?",
    created: int = 1735689600,
    item_id: Optional[int] = None,
    **value_extra,
) -> Dict[str, Any]:
    """Avito v3 ``message`` webhook."""
    value: Dict[str, Any] = {
        "chat_id": chat_id,
        "user_id": ACCOUNT_ID,
        "created": created,
        "type": "text",
        "chat_type": "u2i",
        "content": {"text": text},
    }
    if message_id is not None:
        value["id"] = message_id
    if author_id is not None:
        value["author_id"] = author_id
    if item_id is not None:
        value["item_id"] = item_id
    value.update(value_extra)
    return {
        "id": event_id,
        "version": "v3.0.0",
        "timestamp": created,
        "payload": {"type": "message", "value": value},
    }


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_client() -> FakeAvitoConnector:
    return FakeAvitoConnector()


@pytest.fixture(autouse=True)
def _clean_rate_limiter():
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Session factory over a file-backed SQLite database (one per test).

    File-backed so that services opening their own sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app_client(session_factory, fake_client, settings):
    """
    ASGI client over the real app with services bound to the test database.

    Startup hooks do not run under ASGITransport, so services are built here.
    """
    from app.main import app, init_services, shutdown_services

    init_services(app, settings, session_factory, client=fake_client)

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
    await shutdown_services(app)


@pytest.fixture
def auth_headers() -> dict:
    """Operator Authorization header."""
    return {"Authorization": f"Bearer {CRM_TOKEN}"}
