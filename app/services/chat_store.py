"""Chat / message persistence helpers shared by ingestion, responder and API.

All writers go through these helpers so that the derived chat fields stay
consistent:

- ``unread_count`` is always recomputed from the message rows (never incremented);
- the preview (``last_message_at`` / ``last_message_text``) is moved forward only
  by a conditional UPDATE, so the later message wins regardless of commit order;
- messages are inserted with ON CONFLICT DO NOTHING on ``(chat_id, avito_message_id)``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import insert_ignoring_duplicates
from app.models.chat import Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT, Message

logger = logging.getLogger(__name__)

PREVIEW_TEXT_LIMIT = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; everything stored here is UTC."""
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    dt = as_utc(value)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


async def get_chat(session: AsyncSession, chat_id: int, *, for_update: bool = False) -> Optional[Chat]:
    stmt = select(Chat).where(Chat.id == chat_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_chat_by_avito_id(
    session: AsyncSession, avito_chat_id: str, *, for_update: bool = False
) -> Optional[Chat]:
    stmt = select(Chat).where(Chat.avito_chat_id == avito_chat_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def recount_unread(session: AsyncSession, chat_id: int) -> int:
    """Recompute ``unread_count`` from messages with a COUNT subquery and return it."""
    unread_subq = (
        select(func.count(Message.id))
        .where(
            Message.chat_id == chat_id,
            Message.direction == DIRECTION_IN,
            Message.is_read.is_(False),
        )
        .scalar_subquery()
    )
    await session.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .values(unread_count=unread_subq)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(select(Chat.unread_count).where(Chat.id == chat_id))
    return int(result.scalar_one_or_none() or 0)


async def update_preview_if_newer(
    session: AsyncSession,
    chat_id: int,
    sent_at: datetime,
    text: str,
) -> bool:
    """Move the chat preview to this message unless a later one is already shown."""
    sent_at = as_utc(sent_at) or utcnow()
    result = await session.execute(
        update(Chat)
        .where(
            Chat.id == chat_id,
            or_(Chat.last_message_at.is_(None), Chat.last_message_at <= sent_at),
        )
        .values(last_message_at=sent_at, last_message_text=(text or "")[:PREVIEW_TEXT_LIMIT])
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_inbound_read_until(
    session: AsyncSession,
    chat_id: int,
    cutoff: Optional[datetime] = None,
) -> int:
    """Mark IN messages read (all, or those sent at/before ``cutoff``). Returns rows changed."""
    conditions = [
        Message.chat_id == chat_id,
        Message.direction == DIRECTION_IN,
        Message.is_read.is_(False),
    ]
    if cutoff is not None:
        conditions.append(Message.sent_at <= as_utc(cutoff))
    result = await session.execute(
        update(Message)
        .where(and_(*conditions))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def insert_message(
    session: AsyncSession,
    *,
    chat_id: int,
    avito_message_id: str,
    direction: str,
    text: str,
    sent_at: datetime,
    raw: Any = None,
    is_read: Optional[bool] = None,
) -> Tuple[Optional[Message], bool]:
    """Insert a message, skipping duplicates.

    Returns ``(message, created)``. On a duplicate the existing row is returned
    with ``created=False`` and nothing is modified. OUT messages are always read.
    """
    if direction == DIRECTION_OUT or is_read is None:
        is_read = direction == DIRECTION_OUT
    stmt = insert_ignoring_duplicates(
        session,
        Message,
        ["chat_id", "avito_message_id"],
        chat_id=chat_id,
        avito_message_id=avito_message_id,
        direction=direction,
        text=text or "",
        is_read=is_read,
        sent_at=as_utc(sent_at) or utcnow(),
        raw=raw,
    )
    result = await session.execute(stmt)
    created = result.rowcount == 1

    row = await session.execute(
        select(Message).where(
            Message.chat_id == chat_id,
            Message.avito_message_id == avito_message_id,
        )
    )
    return row.scalar_one_or_none(), created


async def record_outbound(
    session: AsyncSession,
    chat: Chat,
    *,
    avito_message_id: str,
    text: str,
    sent_at: datetime,
    raw: Any = None,
    mark_read: bool = True,
) -> Tuple[Optional[Message], bool]:
    """Persist an OUT message, move the preview and (optionally) mark prior IN read."""
    message, created = await insert_message(
        session,
        chat_id=chat.id,
        avito_message_id=avito_message_id,
        direction=DIRECTION_OUT,
        text=text,
        sent_at=sent_at,
        raw=raw,
    )
    if created:
        await update_preview_if_newer(session, chat.id, sent_at, text)
    if mark_read:
        await mark_inbound_read_until(session, chat.id, sent_at)
    await recount_unread(session, chat.id)
    return message, created


def fill_empty_fields(chat: Chat, values: Dict[str, Any]) -> list[str]:
    """Monotonic patch: set only attributes that are currently NULL/empty."""
    filled = []
    for key, value in values.items():
        if value is None or value == "":
            continue
        current = getattr(chat, key)
        if current is None or current == "":
            setattr(chat, key, value)
            filled.append(key)
    return filled


def message_event_payload(message: Message) -> Dict[str, Any]:
    """Compact message body carried by ``message_created`` so the UI can render without refetch."""
    return {
        "id": message.id,
        "chatId": message.chat_id,
        "direction": message.direction,
        "text": message.text or "",
        "sentAt": iso(message.sent_at),
        "isRead": bool(message.is_read),
    }
