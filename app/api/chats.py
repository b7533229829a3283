"""Chats API endpoints (operator queue)."""

import logging
from typing import Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_avito_client, get_bus, get_responder
from app.config import Settings, get_settings
from app.database import get_db
from app.middleware.auth import require_operator
from app.models.chat import STATUS_BOT, STATUS_MANAGER, Chat
from app.models.message import DIRECTION_IN, Message
from app.schemas.chat import (
    ChatActionResponse,
    ChatDetailResponse,
    ChatListResponse,
    ChatResponse,
    MessageListResponse,
    MessageResponse,
    PinRequest,
    SendMessageRequest,
    SendMessageResponse,
    SortField,
    SortOrder,
)
from app.services.avito_client import AvitoAPIError, AvitoConfigError
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import (
    get_chat,
    insert_message,
    iso,
    mark_inbound_read_until,
    recount_unread,
    update_preview_if_newer,
    utcnow,
)
from app.services.payload_normalizer import extract_messages_array, normalize_history_message
from app.services.realtime import (
    EVENT_CHAT_FINISHED,
    EVENT_CHAT_PINNED,
    EVENT_CHAT_READ,
    EVENT_CHAT_UPDATED,
    RealtimeBus,
)
from app.services.responder import ProviderSendError, ResponderDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"], dependencies=[Depends(require_operator)])

MESSAGES_PAGE_LIMIT = 500
HISTORY_PAGE_SIZE = 100
HISTORY_MAX_PAGES = 20

PROVIDER_ERRORS = (AvitoAPIError, AvitoConfigError, httpx.HTTPError)


async def _load_chat(db: AsyncSession, chat_id: int, *, for_update: bool = False) -> Chat:
    chat = await get_chat(db, chat_id, for_update=for_update)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


async def _unread_counts(db: AsyncSession, chat_ids: List[int]) -> Dict[int, int]:
    if not chat_ids:
        return {}
    result = await db.execute(
        select(Message.chat_id, func.count(Message.id))
        .where(
            Message.chat_id.in_(chat_ids),
            Message.direction == DIRECTION_IN,
            Message.is_read.is_(False),
        )
        .group_by(Message.chat_id)
    )
    return {chat_id: int(count) for chat_id, count in result.all()}


def _history_synced_at(raw: Optional[dict]) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    value = raw.get("historySyncedAt")
    if value is None and isinstance(raw.get("history"), dict):
        value = raw["history"].get("syncedAt")
    return value if isinstance(value, str) and value.strip() else None


@router.get("", response_model=ChatListResponse)
async def list_chats(
    status_filter: Optional[str] = Query(None, alias="status", description="BOT or MANAGER"),
    sort_field: SortField = Query("last_message_at"),
    sort_order: SortOrder = Query("desc"),
    unread_only: bool = Query(False),
    limit: int = Query(2000),
    db: AsyncSession = Depends(get_db),
):
    """
    Queue view: pinned first, then by the chosen key.

    Unread counts in the response are recomputed from messages.
    """
    limit = max(1, min(5000, limit))
    query = select(Chat)
    if status_filter in (STATUS_BOT, STATUS_MANAGER):
        query = query.where(Chat.status == status_filter)

    def _ordered(column):
        return (column.asc() if sort_order == "asc" else column.desc()).nulls_last()

    if sort_field == "price":
        order_by = [Chat.pinned.desc(), _ordered(Chat.price), Chat.last_message_at.desc().nulls_last()]
    else:
        order_by = [Chat.pinned.desc(), _ordered(Chat.last_message_at), Chat.price.desc().nulls_last()]
    query = query.order_by(*order_by, Chat.id.desc()).limit(limit)

    result = await db.execute(query)
    chats = result.scalars().all()

    counts = await _unread_counts(db, [c.id for c in chats])
    rows = [
        ChatResponse.model_validate(c).model_copy(update={"unread_count": counts.get(c.id, 0)})
        for c in chats
    ]
    if unread_only:
        rows = [r for r in rows if r.unread_count > 0]
    return ChatListResponse(chats=rows, total=len(rows))


@router.get("/{chat_id}", response_model=ChatDetailResponse)
async def get_chat_detail(chat_id: int, db: AsyncSession = Depends(get_db)):
    chat = await _load_chat(db, chat_id)
    return ChatDetailResponse.model_validate(chat)


@router.post("/{chat_id}/read", response_model=ChatActionResponse)
async def mark_chat_read(
    chat_id: int,
    db: AsyncSession = Depends(get_db),
    client: BaseChannelConnector = Depends(get_avito_client),
    bus: RealtimeBus = Depends(get_bus),
    settings: Settings = Depends(get_settings),
):
    """Mark all inbound messages read locally and (best effort) at the provider."""
    chat = await _load_chat(db, chat_id)
    avito_error = None

    if not settings.MOCK_MODE and chat.avito_chat_id:
        last = await db.execute(
            select(Message.avito_message_id)
            .where(Message.chat_id == chat.id)
            .order_by(Message.sent_at.desc(), Message.id.desc())
            .limit(1)
        )
        try:
            await client.mark_chat_read(chat.avito_chat_id, last.scalar_one_or_none())
        except PROVIDER_ERRORS as exc:
            logger.warning("Provider mark-read failed for chat %s: %s", chat_id, exc)
            avito_error = str(exc)

    await mark_inbound_read_until(db, chat.id)
    await recount_unread(db, chat.id)
    await db.commit()
    await db.refresh(chat)

    bus.publish(EVENT_CHAT_READ, chat.id, avito_chat_id=chat.avito_chat_id)
    bus.publish(EVENT_CHAT_UPDATED, chat.id, avito_chat_id=chat.avito_chat_id)
    return ChatActionResponse(chat=ChatResponse.model_validate(chat), avito_error=avito_error)


@router.post("/{chat_id}/pin", response_model=ChatActionResponse)
async def pin_chat(
    chat_id: int,
    payload: Optional[PinRequest] = None,
    db: AsyncSession = Depends(get_db),
    bus: RealtimeBus = Depends(get_bus),
):
    """Pin / unpin a MANAGER chat. Without ``pinned`` in the body the flag toggles."""
    chat = await _load_chat(db, chat_id, for_update=True)
    if chat.status != STATUS_MANAGER:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only MANAGER chats can be pinned")

    requested = payload.pinned if payload is not None else None
    chat.pinned = (not chat.pinned) if requested is None else bool(requested)
    await db.commit()
    await db.refresh(chat)

    bus.publish(EVENT_CHAT_PINNED, chat.id, avito_chat_id=chat.avito_chat_id)
    bus.publish(EVENT_CHAT_UPDATED, chat.id, avito_chat_id=chat.avito_chat_id)
    return ChatActionResponse(chat=ChatResponse.model_validate(chat))


@router.post("/{chat_id}/finish", response_model=ChatActionResponse)
async def finish_chat(
    chat_id: int,
    db: AsyncSession = Depends(get_db),
    bus: RealtimeBus = Depends(get_bus),
):
    """Return a MANAGER chat to the bot queue."""
    chat = await _load_chat(db, chat_id, for_update=True)
    if chat.status != STATUS_MANAGER:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only MANAGER chats can be finished")

    chat.status = STATUS_BOT
    chat.pinned = False
    await db.commit()
    await db.refresh(chat)

    bus.publish(EVENT_CHAT_FINISHED, chat.id, avito_chat_id=chat.avito_chat_id)
    bus.publish(EVENT_CHAT_UPDATED, chat.id, avito_chat_id=chat.avito_chat_id)
    return ChatActionResponse(chat=ChatResponse.model_validate(chat))


@router.post("/{chat_id}/send", response_model=SendMessageResponse)
async def send_message(
    chat_id: int,
    payload: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    responder: ResponderDispatcher = Depends(get_responder),
):
    """
    Operator reply: send via provider, store as OUT, move the chat to MANAGER.

    Raises:
        400 empty text, 404 unknown chat, 409 chat without provider id, 502 provider failure
    """
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message text is empty")

    chat = await _load_chat(db, chat_id)
    if not chat.avito_chat_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Chat is not linked to Avito")

    try:
        message = await responder.send_and_record(
            chat.id,
            text,
            source="operator",
            mark_read=payload.mark_read,
            set_status=STATUS_MANAGER,
        )
    except ProviderSendError as exc:
        logger.warning("Operator send to chat %s failed: %s", chat_id, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Avito send failed: {exc}")

    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return SendMessageResponse(message=MessageResponse.model_validate(message))


async def _refresh_history(
    db: AsyncSession,
    chat: Chat,
    client: BaseChannelConnector,
    account_id: Optional[int],
) -> int:
    """Pull provider history (up to HISTORY_MAX_PAGES pages) and upsert it. Returns fetched count."""
    fetched = []
    offset = 0
    for _ in range(HISTORY_MAX_PAGES):
        resp = await client.list_messages(chat.avito_chat_id, limit=HISTORY_PAGE_SIZE, offset=offset)
        batch = extract_messages_array(resp)
        if not batch:
            break
        fetched.extend(batch)
        if len(batch) < HISTORY_PAGE_SIZE:
            break
        offset += HISTORY_PAGE_SIZE

    # Without local unread state the history is assumed read
    inbound_read = chat.unread_count == 0
    now = utcnow()
    for item in fetched:
        record = normalize_history_message(item, account_id)
        if record is None:
            continue
        sent_at = record.sent_at or now
        _, created = await insert_message(
            db,
            chat_id=chat.id,
            avito_message_id=record.avito_message_id,
            direction=record.direction,
            text=record.text,
            sent_at=sent_at,
            raw=record.raw,
            is_read=inbound_read,
        )
        if created:
            await update_preview_if_newer(db, chat.id, sent_at, record.text)

    await recount_unread(db, chat.id)
    synced_at = iso(utcnow())
    raw = chat.raw_dict()
    raw["historySyncedAt"] = synced_at
    raw["historySync"] = {
        "at": synced_at,
        "fetched": len(fetched),
        "maxPages": HISTORY_MAX_PAGES,
        "limit": HISTORY_PAGE_SIZE,
    }
    chat.raw = raw
    await db.commit()
    return len(fetched)


@router.get("/{chat_id}/messages", response_model=MessageListResponse)
async def list_messages(
    chat_id: int,
    refresh: bool = Query(False, description="Pull history from Avito before reading"),
    db: AsyncSession = Depends(get_db),
    client: BaseChannelConnector = Depends(get_avito_client),
    bus: RealtimeBus = Depends(get_bus),
    settings: Settings = Depends(get_settings),
):
    """Last messages of the chat, oldest first."""
    chat = await _load_chat(db, chat_id)
    can_refresh = not settings.MOCK_MODE and bool(chat.avito_chat_id)

    refreshed = False
    refresh_error = None
    if refresh and can_refresh:
        try:
            await _refresh_history(db, chat, client, settings.AVITO_ACCOUNT_ID)
            refreshed = True
        except PROVIDER_ERRORS as exc:
            await db.rollback()
            logger.warning("History refresh failed for chat %s: %s", chat_id, exc)
            refresh_error = str(exc)
        await db.refresh(chat)
        if refreshed:
            bus.publish(EVENT_CHAT_UPDATED, chat.id, avito_chat_id=chat.avito_chat_id)

    result = await db.execute(
        select(Message)
        .where(Message.chat_id == chat.id)
        .order_by(Message.sent_at.desc(), Message.id.desc())
        .limit(MESSAGES_PAGE_LIMIT)
    )
    messages = list(reversed(result.scalars().all()))
    synced_at = _history_synced_at(chat.raw)

    return MessageListResponse(
        chat_id=chat.id,
        messages=[MessageResponse.model_validate(m) for m in messages],
        needs_refresh=can_refresh and synced_at is None,
        refreshed=refreshed,
        refresh_error=refresh_error,
        history_synced_at=synced_at,
    )
