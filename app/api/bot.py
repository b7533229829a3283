"""Callback for the external bot: records its replies / escalation for a chat.

The bot delivers its replies to the customer itself; here they are only
stored as OUT messages so the operator sees the whole dialog.
"""

import logging
import uuid
from datetime import timedelta

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_avito_client, get_bus
from app.config import Settings, get_settings
from app.database import get_db
from app.middleware.auth import require_bot
from app.models.chat import STATUS_MANAGER
from app.models.message import DIRECTION_IN, Message
from app.schemas.bot import BotReplyRequest, BotReplyResponse, EscalateAction, ReplyAction
from app.services.avito_client import AvitoAPIError, AvitoConfigError
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import (
    get_chat_by_avito_id,
    insert_message,
    iso,
    mark_inbound_read_until,
    message_event_payload,
    recount_unread,
    update_preview_if_newer,
    utcnow,
)
from app.services.realtime import EVENT_CHAT_READ, EVENT_CHAT_UPDATED, EVENT_MESSAGE_CREATED, RealtimeBus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bot", tags=["bot"], dependencies=[Depends(require_bot)])

# Spacing between consecutive replies so their order survives sorting by sent_at
REPLY_SPACING = timedelta(milliseconds=5)


@router.post("/reply", response_model=BotReplyResponse)
async def bot_reply(
    payload: BotReplyRequest,
    db: AsyncSession = Depends(get_db),
    client: BaseChannelConnector = Depends(get_avito_client),
    bus: RealtimeBus = Depends(get_bus),
    settings: Settings = Depends(get_settings),
):
    chat = await get_chat_by_avito_id(db, payload.avito_chat_id, for_update=True)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")

    last_in = await db.execute(
        select(Message.avito_message_id)
        .where(Message.chat_id == chat.id, Message.direction == DIRECTION_IN)
        .order_by(Message.sent_at.desc(), Message.id.desc())
        .limit(1)
    )
    last_in_message_id = last_in.scalar_one_or_none()

    created_messages = []
    escalated = False
    sent_at = utcnow()
    last_reply_at = None

    for action in payload.actions:
        if isinstance(action, EscalateAction):
            chat.status = STATUS_MANAGER
            raw = chat.raw_dict()
            raw["escalation"] = {"reason": action.reason or "bot", "at": iso(utcnow())}
            chat.raw = raw
            escalated = True
        elif isinstance(action, ReplyAction):
            message, created = await insert_message(
                db,
                chat_id=chat.id,
                avito_message_id=f"bot_{uuid.uuid4().hex[:16]}",
                direction="OUT",
                text=action.text,
                sent_at=sent_at,
                raw={"source": "bot_reply", "sendToCustomer": action.send_to_customer},
            )
            if created:
                await update_preview_if_newer(db, chat.id, sent_at, action.text)
                created_messages.append(message)
            last_reply_at = sent_at
            sent_at = sent_at + REPLY_SPACING

    if last_reply_at is not None:
        await mark_inbound_read_until(db, chat.id, last_reply_at)
        await recount_unread(db, chat.id)

    chat_id = chat.id
    avito_chat_id = chat.avito_chat_id
    await db.commit()

    avito_read_error = None
    if created_messages and not settings.MOCK_MODE and avito_chat_id:
        try:
            await client.mark_chat_read(avito_chat_id, last_in_message_id)
        except (AvitoAPIError, AvitoConfigError, httpx.HTTPError) as exc:
            logger.warning("Provider mark-read after bot reply failed for chat %s: %s", chat_id, exc)
            avito_read_error = str(exc)

    for message in created_messages:
        bus.publish(
            EVENT_MESSAGE_CREATED,
            chat_id,
            avito_chat_id=avito_chat_id,
            message_id=message.id,
            direction=message.direction,
            message=message_event_payload(message),
        )
    if created_messages:
        bus.publish(EVENT_CHAT_READ, chat_id, avito_chat_id=avito_chat_id)
    if created_messages or escalated:
        bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)

    return BotReplyResponse(
        chat_id=chat_id,
        replies=len(created_messages),
        escalated=escalated,
        avito_read_error=avito_read_error,
    )
