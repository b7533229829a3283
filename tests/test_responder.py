"""Tests for the responder chain (dev test bot, AI replies, outbound delivery)."""

import pytest

from app.models.chat import STATUS_BOT, STATUS_MANAGER, Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT, Message
from app.services.avito_client import AvitoAPIError
from app.services.chat_store import insert_message, recount_unread, utcnow
from app.services.realtime import EVENT_CHAT_READ, EVENT_CHAT_UPDATED, EVENT_MESSAGE_CREATED, RealtimeBus
from app.services.responder import (
    DEV_ESCALATE_RE,
    DEV_TEST_BOT_GREETING,
    ProviderSendError,
    ResponderDispatcher,
    normalize_human_name,
)
from sqlalchemy import select

from conftest import make_settings


class _StubAssistant:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def get_reply(self, chat_id, text):
        self.calls.append((chat_id, text))
        return self.reply


async def _chat_with_inbound(session_factory, *, status=STATUS_BOT, customer_name=None, text="Есть в наличии?") -> int:
    async with session_factory() as db:
        chat = Chat(avito_chat_id="chat-1", status=status, customer_name=customer_name)
        db.add(chat)
        await db.flush()
        await insert_message(
            db,
            chat_id=chat.id,
            avito_message_id="in-1",
            direction=DIRECTION_IN,
            text=text,
            sent_at=utcnow(),
        )
        await recount_unread(db, chat.id)
        await db.commit()
        return chat.id


def _dispatcher(session_factory, client, *, assistant=None, settings=None):
    bus = RealtimeBus()
    return ResponderDispatcher(
        client=client,
        bus=bus,
        assistant=assistant,
        session_factory=session_factory,
        settings=settings or make_settings(),
    ), bus.subscribe(chat_id=1)


async def _load(session_factory, chat_id):
    async with session_factory() as db:
        chat = await db.get(Chat, chat_id)
        messages = (await db.execute(select(Message).where(Message.chat_id == chat_id).order_by(Message.id))).scalars().all()
        return chat, messages


def _types(sub):
    types = []
    while not sub.queue.empty():
        event = sub.queue.get_nowait()
        if event is not None:
            types.append(event.type)
    return types


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_and_record_persists_and_publishes_in_order(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    dispatcher, sub = _dispatcher(session_factory, fake_client)

    message = await dispatcher.send_and_record(chat_id, "Да, в наличии", source="operator", set_status=STATUS_MANAGER)

    assert message.direction == DIRECTION_OUT
    assert message.avito_message_id == "sent_1"
    assert fake_client.sent == [("chat-1", "Да, в наличии")]

    chat, messages = await _load(session_factory, chat_id)
    assert chat.status == STATUS_MANAGER
    assert chat.unread_count == 0
    assert chat.last_message_text == "Да, в наличии"
    assert all(m.is_read for m in messages)
    assert _types(sub) == [EVENT_CHAT_READ, EVENT_MESSAGE_CREATED, EVENT_CHAT_UPDATED]


@pytest.mark.asyncio
async def test_send_without_mark_read_keeps_unread(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    dispatcher, sub = _dispatcher(session_factory, fake_client)

    await dispatcher.send_and_record(chat_id, "Секунду", source="operator", mark_read=False)

    chat, _ = await _load(session_factory, chat_id)
    assert chat.unread_count == 1
    assert EVENT_CHAT_READ not in _types(sub)


@pytest.mark.asyncio
async def test_provider_failure_raises_and_persists_nothing(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    fake_client.send_error = AvitoAPIError(403, "/messenger/v1/accounts/1000/chats/chat-1/messages", "forbidden")
    dispatcher, sub = _dispatcher(session_factory, fake_client)

    with pytest.raises(ProviderSendError):
        await dispatcher.send_and_record(chat_id, "x", source="operator")

    _, messages = await _load(session_factory, chat_id)
    assert len(messages) == 1
    assert _types(sub) == []


@pytest.mark.asyncio
async def test_require_status_skips_send(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, status=STATUS_MANAGER)
    dispatcher, _ = _dispatcher(session_factory, fake_client)

    assert await dispatcher.send_and_record(chat_id, "x", source="ai_assistant", require_status=STATUS_BOT) is None
    assert fake_client.sent == []


# ---------------------------------------------------------------------------
# AI replies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ai_reply_is_sent_for_bot_chat(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    assistant = _StubAssistant("  Да, есть в наличии.  ")
    dispatcher, _ = _dispatcher(session_factory, fake_client, assistant=assistant)

    outcome = await dispatcher.dispatch_ai_reply(chat_id, "Есть в наличии?")

    assert outcome == "sent"
    assert fake_client.sent == [("chat-1", "Да, есть в наличии.")]
    chat, messages = await _load(session_factory, chat_id)
    assert chat.status == STATUS_BOT
    assert messages[-1].raw["from"] == "ai_assistant"


@pytest.mark.asyncio
async def test_ai_escalation_sends_nothing_and_flips_status(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    assistant = _StubAssistant("Передаю менеджеру.\n[ESCALATE]")
    dispatcher, sub = _dispatcher(session_factory, fake_client, assistant=assistant)

    outcome = await dispatcher.dispatch_ai_reply(chat_id, "Хочу возврат")

    assert outcome == "escalated"
    assert fake_client.sent == []
    chat, messages = await _load(session_factory, chat_id)
    assert chat.status == STATUS_MANAGER
    assert chat.raw["escalation"]["reason"] == "assistant"
    assert len(messages) == 1
    assert _types(sub) == [EVENT_CHAT_UPDATED]


@pytest.mark.asyncio
async def test_ai_skipped_for_manager_chat(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, status=STATUS_MANAGER)
    assistant = _StubAssistant("ответ")
    dispatcher, _ = _dispatcher(session_factory, fake_client, assistant=assistant)

    assert await dispatcher.dispatch_ai_reply(chat_id, "вопрос") is None
    assert assistant.calls == []


@pytest.mark.asyncio
async def test_ai_no_reply_does_nothing(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    dispatcher, sub = _dispatcher(session_factory, fake_client, assistant=_StubAssistant(None))

    assert await dispatcher.dispatch_ai_reply(chat_id, "вопрос") is None
    assert fake_client.sent == []
    assert _types(sub) == []


@pytest.mark.asyncio
async def test_ai_send_failure_is_logged_not_raised(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    fake_client.send_error = AvitoAPIError(500, "/messenger", "down")
    dispatcher, _ = _dispatcher(session_factory, fake_client, assistant=_StubAssistant("ответ"))

    assert await dispatcher.dispatch_ai_reply(chat_id, "вопрос") is None


# ---------------------------------------------------------------------------
# Dev test bot
# ---------------------------------------------------------------------------


def test_normalize_human_name():
    assert normalize_human_name("  Вадим   ЛИ ") == "вадим ли"
    assert normalize_human_name(None) == ""


@pytest.mark.parametrize(
    "text, matches",
    [
        ("Переведите на оператора", True),
        ("передайте на менеджера!", True),
        ("переключи на менеджера, пожалуйста", True),
        ("позовите оператора", False),
        ("переведите на операторский пульт", False),
    ],
)
def test_dev_escalate_phrases(text, matches):
    assert bool(DEV_ESCALATE_RE.search(text)) is matches


@pytest.mark.asyncio
async def test_dev_bot_greets_test_customer(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, customer_name="Вадим Ли", text="Привет")
    dispatcher, _ = _dispatcher(session_factory, fake_client, assistant=_StubAssistant("не должен вызываться"))

    await dispatcher.handle_incoming(chat_id, "Привет", message_id="in-1")

    assert fake_client.sent == [("chat-1", DEV_TEST_BOT_GREETING)]
    assert dispatcher.assistant.calls == []
    chat, _ = await _load(session_factory, chat_id)
    assert chat.raw["testBot"]["lastInMessageId"] == "in-1"
    assert "greetedAt" in chat.raw["testBot"]


@pytest.mark.asyncio
async def test_dev_bot_ignores_repeated_message_id(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, customer_name="Вадим Ли")
    dispatcher, _ = _dispatcher(session_factory, fake_client)

    assert await dispatcher.run_dev_test_bot(chat_id, "Привет", message_id="in-1")
    assert not await dispatcher.run_dev_test_bot(chat_id, "Привет", message_id="in-1")
    assert len(fake_client.sent) == 1


@pytest.mark.asyncio
async def test_dev_bot_escalates_on_request(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, customer_name="вадим ли")
    dispatcher, _ = _dispatcher(session_factory, fake_client)

    handled = await dispatcher.run_dev_test_bot(chat_id, "Переведите на оператора", message_id="in-2")

    assert handled
    assert fake_client.sent == []
    chat, _ = await _load(session_factory, chat_id)
    assert chat.status == STATUS_MANAGER
    assert chat.raw["testBot"]["reason"] == "operator_requested"


@pytest.mark.asyncio
async def test_dev_bot_looks_up_name_when_missing(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory)
    fake_client.chat_info["chat-1"] = {"users": [{"id": 555, "name": "Вадим Ли"}]}
    dispatcher, _ = _dispatcher(session_factory, fake_client)

    assert await dispatcher.run_dev_test_bot(chat_id, "Привет")

    chat, _ = await _load(session_factory, chat_id)
    assert chat.customer_name == "Вадим Ли"


@pytest.mark.asyncio
async def test_dev_bot_disabled_in_production(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, customer_name="Вадим Ли")
    dispatcher, _ = _dispatcher(session_factory, fake_client, settings=make_settings(ENVIRONMENT="production"))

    assert not await dispatcher.run_dev_test_bot(chat_id, "Привет")
    assert fake_client.sent == []


@pytest.mark.asyncio
async def test_other_customers_fall_through_to_ai(session_factory, fake_client):
    chat_id = await _chat_with_inbound(session_factory, customer_name="Артем")
    assistant = _StubAssistant("Здравствуйте, Артем!")
    dispatcher, _ = _dispatcher(session_factory, fake_client, assistant=assistant)

    await dispatcher.handle_incoming(chat_id, "Есть в наличии?")

    assert assistant.calls == [(chat_id, "Есть в наличии?")]
    assert fake_client.sent == [("chat-1", "Здравствуйте, Артем!")]
