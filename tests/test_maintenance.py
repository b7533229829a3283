"""Tests for the periodic maintenance tasks (async bodies, no broker)."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.models.chat import Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT, Message
from app.models.webhook_event import WebhookEvent
from app.tasks import celery_app
from app.tasks.maintenance import prune_webhook_events_async, reconcile_unread_counts_async

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reconcile_fixes_only_drifted_chats(session_factory):
    async with session_factory() as db:
        drifted = Chat(avito_chat_id="drifted", unread_count=5)
        consistent = Chat(avito_chat_id="consistent", unread_count=1)
        db.add_all([drifted, consistent])
        await db.flush()
        db.add_all([
            Message(chat_id=drifted.id, avito_message_id="d1", direction=DIRECTION_IN, text="a", is_read=False, sent_at=NOW),
            Message(chat_id=drifted.id, avito_message_id="d2", direction=DIRECTION_IN, text="b", is_read=True, sent_at=NOW),
            Message(chat_id=drifted.id, avito_message_id="d3", direction=DIRECTION_OUT, text="c", is_read=True, sent_at=NOW),
            Message(chat_id=consistent.id, avito_message_id="c1", direction=DIRECTION_IN, text="d", is_read=False, sent_at=NOW),
        ])
        await db.commit()

    fixed = await reconcile_unread_counts_async(session_factory)

    assert fixed == 1
    async with session_factory() as db:
        counts = dict((await db.execute(select(Chat.avito_chat_id, Chat.unread_count))).all())
    assert counts == {"drifted": 1, "consistent": 1}
    assert await reconcile_unread_counts_async(session_factory) == 0


@pytest.mark.asyncio
async def test_prune_drops_events_past_retention(session_factory):
    async with session_factory() as db:
        db.add_all([
            WebhookEvent(event_id="old", type="message", received_at=NOW - timedelta(days=40)),
            WebhookEvent(event_id="recent", type="message", received_at=NOW - timedelta(days=2)),
            WebhookEvent(event_id=None, type="message", received_at=NOW - timedelta(days=31)),
        ])
        await db.commit()

    deleted = await prune_webhook_events_async(30, session_factory, now=NOW)

    assert deleted == 2
    async with session_factory() as db:
        remaining = (await db.execute(select(WebhookEvent.event_id))).scalars().all()
    assert remaining == ["recent"]


def test_beat_schedule_registers_maintenance_tasks():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

    assert tasks == {
        "app.tasks.maintenance.reconcile_unread_counts",
        "app.tasks.maintenance.prune_webhook_events",
    }
