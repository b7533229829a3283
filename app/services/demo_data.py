"""Demo data for local development (``/api/dev/*``).

Creates a few realistic Avito chats so the queues look "alive", plus a
rule-based stand-in for the external bot used by ``/api/dev/incoming?auto_bot=1``.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chat import STATUS_BOT, STATUS_MANAGER, Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT, Message
from app.services.chat_store import utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Demo content definitions
# ---------------------------------------------------------------------------

_DEMO_CHATS = [
    {
        "avito_chat_id": "mock_chat_bot_1",
        "status": STATUS_BOT,
        "pinned": False,
        "customer_name": "Артем",
        "item_title": "Утюг Philips GC2990",
        "price": 2590,
        "messages": [
            ("1", DIRECTION_IN, "Здравствуйте! Можно забрать сегодня?", 180, False),
            ("2", DIRECTION_OUT, "Здравствуйте! Да, сегодня можно.", 175, True),
            ("3", DIRECTION_IN, "Супер, где вы находитесь?", 170, False),
        ],
    },
    {
        "avito_chat_id": "mock_chat_bot_2",
        "status": STATUS_BOT,
        "pinned": False,
        "customer_name": "Ольга",
        "item_title": "Утюг Tefal FV5688",
        "price": 3490,
        "messages": [
            ("1", DIRECTION_IN, "Добрый день! Торг возможен?", 140, False),
            ("2", DIRECTION_OUT, "Добрый! Небольшой торг возможен.", 138, True),
            ("3", DIRECTION_IN, "Тогда заберу за 3200.", 135, False),
        ],
    },
    {
        "avito_chat_id": "mock_chat_mgr_1",
        "status": STATUS_MANAGER,
        "pinned": True,
        "customer_name": "Иван",
        "item_title": "Утюг Braun SI3041",
        "price": 2990,
        "messages": [
            ("1", DIRECTION_IN, "Здравствуйте! А доставка есть?", 220, False),
            ("2", DIRECTION_OUT, "Здравствуйте! Да, могу отправить СДЭКом.", 215, True),
            ("3", DIRECTION_IN, "Ок, тогда оформляем.", 210, False),
        ],
    },
    {
        "avito_chat_id": "mock_chat_mgr_2",
        "status": STATUS_MANAGER,
        "pinned": False,
        "customer_name": "Мария",
        "item_title": "Утюг Redmond RI-C273S",
        "price": 2790,
        "messages": [
            ("1", DIRECTION_IN, "Есть ли дефекты/царапины?", 90, False),
            ("2", DIRECTION_OUT, "Нет, состояние отличное, могу фото.", 88, True),
            ("3", DIRECTION_IN, "Да, пришлите фото пожалуйста.", 85, False),
        ],
    },
]

DEMO_CHAT_IDS = tuple(c["avito_chat_id"] for c in _DEMO_CHATS)


async def seed_demo_chats(db: AsyncSession) -> dict:
    """
    (Re)create the demo chats with their messages.

    Deterministic: existing demo chats are deleted first, other chats are untouched.
    """
    existing = await db.execute(select(Chat.id).where(Chat.avito_chat_id.in_(DEMO_CHAT_IDS)))
    chat_ids = [row[0] for row in existing.all()]
    if chat_ids:
        await db.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
        await db.execute(delete(Chat).where(Chat.id.in_(chat_ids)))

    now = utcnow()
    created_chats = 0
    created_messages = 0

    for fixture in _DEMO_CHATS:
        messages = sorted(fixture["messages"], key=lambda m: -m[3])  # oldest first
        last = messages[-1]
        chat = Chat(
            avito_chat_id=fixture["avito_chat_id"],
            account_id=0,
            status=fixture["status"],
            pinned=fixture["pinned"],
            customer_name=fixture["customer_name"],
            item_title=fixture["item_title"],
            price=fixture["price"],
            last_message_at=now - timedelta(minutes=last[3]),
            last_message_text=last[2],
            unread_count=sum(1 for m in messages if m[1] == DIRECTION_IN and not m[4]),
            raw={"mock": True},
        )
        db.add(chat)
        await db.flush()  # get chat.id
        created_chats += 1

        for suffix, direction, text, minutes_ago, is_read in messages:
            db.add(
                Message(
                    chat_id=chat.id,
                    avito_message_id=f"mock_{fixture['avito_chat_id']}_{suffix}",
                    direction=direction,
                    text=text,
                    sent_at=now - timedelta(minutes=minutes_ago),
                    is_read=direction == DIRECTION_OUT or is_read,
                    raw={"mock": True},
                )
            )
            created_messages += 1

    await db.commit()
    logger.info("Demo chats seeded: %d chats, %d messages", created_chats, created_messages)
    return {"created_chats": created_chats, "created_messages": created_messages}


async def reset_all_chats(db: AsyncSession) -> None:
    """Delete every message and chat."""
    await db.execute(delete(Message))
    await db.execute(delete(Chat))
    await db.commit()
    logger.warning("All chats and messages deleted (dev reset)")


# ---------------------------------------------------------------------------
# Rule-based bot stand-in
# ---------------------------------------------------------------------------

_ESCALATE_WORDS_RE = re.compile(r"(оператор|менеджер|человек|живой)")
_BARGAIN_WORDS_RE = re.compile(r"(скидк|дешевле|торг|уступ)")
MOCK_BOT_MAX_TEXT = 160

MOCK_BOT_ESCALATE_REPLY = "Понял, передаю менеджеру. Он ответит в ближайшее время."
MOCK_BOT_REPLY = (
    "Здравствуйте! Спасибо за сообщение. Сейчас уточню и отвечу. "
    "Подскажите, вам удобнее самовывоз или доставка?"
)


@dataclass(frozen=True)
class MockBotDecision:
    type: str  # "reply" | "escalate"
    reply: str
    reason: Optional[str] = None


def mock_bot_decision(text: str) -> MockBotDecision:
    """Escalate on a request for a human, bargaining or a long message; otherwise a canned reply."""
    t = (text or "").lower()
    if _ESCALATE_WORDS_RE.search(t) or _BARGAIN_WORDS_RE.search(t) or len(t) > MOCK_BOT_MAX_TEXT:
        return MockBotDecision(type="escalate", reply=MOCK_BOT_ESCALATE_REPLY, reason="rule_escalate")
    return MockBotDecision(type="reply", reply=MOCK_BOT_REPLY)
