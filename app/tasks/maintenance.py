"""
Periodic maintenance tasks.

Tasks:
- reconcile_unread_counts: re-derive chats.unread_count from messages, for rows
  touched by writers that bypass the ingestion pipeline (manual SQL, restores)
- prune_webhook_events: drop webhook log rows older than the retention window
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update

from app.tasks import celery_app
from app.database import AsyncSessionLocal
from app.models.chat import Chat
from app.models.message import DIRECTION_IN, Message
from app.models.webhook_event import WebhookEvent
from app.services.chat_store import utcnow
from app.config import get_settings

logger = logging.getLogger(__name__)

# Initialize Sentry for Celery if configured
_settings = get_settings()
if _settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration

    sentry_sdk.init(
        dsn=_settings.SENTRY_DSN,
        environment=_settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=_settings.SENTRY_TRACES_SAMPLE_RATE,
        release="0.1.0",
        integrations=[
            CeleryIntegration(),
        ],
    )
    logger.info("Sentry initialized for Celery tasks (env: %s)", _settings.SENTRY_ENVIRONMENT)


def run_async(coro):
    """Run async coroutine in sync context (for Celery tasks)."""
    from app.database import engine

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        # Dispose stale connections from previous event loops
        loop.run_until_complete(engine.dispose())
        return loop.run_until_complete(coro)
    finally:
        # Clean up connections before closing loop
        loop.run_until_complete(engine.dispose())
        loop.close()


async def reconcile_unread_counts_async(session_factory=None) -> int:
    """Fix every chat whose cached unread_count differs from its messages. Returns rows fixed."""
    session_factory = session_factory or AsyncSessionLocal
    actual = (
        select(func.count(Message.id))
        .where(
            Message.chat_id == Chat.id,
            Message.direction == DIRECTION_IN,
            Message.is_read.is_(False),
        )
        .correlate(Chat)
        .scalar_subquery()
    )
    async with session_factory() as db:
        result = await db.execute(
            update(Chat)
            .where(Chat.unread_count != actual)
            .values(unread_count=actual)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0


async def prune_webhook_events_async(
    retention_days: int,
    session_factory=None,
    now: Optional[datetime] = None,
) -> int:
    """Delete webhook events received before ``now - retention_days``. Returns rows deleted."""
    session_factory = session_factory or AsyncSessionLocal
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    async with session_factory() as db:
        result = await db.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.received_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0


@celery_app.task(name="app.tasks.maintenance.reconcile_unread_counts")
def reconcile_unread_counts():
    """
    Periodic task: enforce unread_count == count(IN & unread).

    Runs every 5 minutes via Celery Beat.
    """
    fixed = run_async(reconcile_unread_counts_async())
    if fixed:
        logger.warning("Reconciled unread_count for %d chats", fixed)
    else:
        logger.info("Unread counts consistent")
    return {"fixed": fixed}


@celery_app.task(name="app.tasks.maintenance.prune_webhook_events")
def prune_webhook_events():
    """
    Periodic task: keep the webhook log bounded.

    Runs daily via Celery Beat.
    """
    settings = get_settings()
    deleted = run_async(prune_webhook_events_async(settings.WEBHOOK_EVENT_RETENTION_DAYS))
    logger.info(
        "Pruned %d webhook events older than %d days",
        deleted, settings.WEBHOOK_EVENT_RETENTION_DAYS,
    )
    return {"deleted": deleted}
