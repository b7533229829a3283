"""Dev tooling (ENVIRONMENT=development only; 404 otherwise)."""

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_bus, get_responder, get_supervisor
from app.config import Settings, get_settings
from app.database import get_db
from app.middleware.auth import require_dev
from app.models.chat import STATUS_BOT, STATUS_MANAGER, Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT
from app.schemas.dev import DevIncomingRequest, DevIncomingResponse, DevSeedResponse, DevWhoamiResponse
from app.services.background import BackgroundTaskSupervisor
from app.services.chat_store import (
    fill_empty_fields,
    get_chat,
    get_chat_by_avito_id,
    insert_message,
    iso,
    mark_inbound_read_until,
    message_event_payload,
    recount_unread,
    update_preview_if_newer,
    utcnow,
)
from app.services.demo_data import mock_bot_decision, reset_all_chats, seed_demo_chats
from app.services.realtime import EVENT_CHAT_READ, EVENT_CHAT_UPDATED, EVENT_MESSAGE_CREATED, RealtimeBus
from app.services.responder import ResponderDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dev", tags=["dev"], dependencies=[Depends(require_dev)])

MOCK_BOT_DELAY = timedelta(milliseconds=500)


@router.post("/incoming", response_model=DevIncomingResponse)
async def dev_incoming(
    payload: DevIncomingRequest,
    auto_bot: bool = Query(False, description="Answer with the rule-based bot stand-in"),
    db: AsyncSession = Depends(get_db),
    bus: RealtimeBus = Depends(get_bus),
    supervisor: BackgroundTaskSupervisor = Depends(get_supervisor),
    responder: ResponderDispatcher = Depends(get_responder),
    settings: Settings = Depends(get_settings),
):
    """
    Inject an inbound customer message.

    An unknown ``avito_chat_id`` creates the chat. With ``auto_bot`` a BOT chat
    gets a canned reply (or is escalated); otherwise the regular responder
    chain runs in the background, as for a webhook.
    """
    if payload.chat_id is not None:
        chat = await get_chat(db, payload.chat_id, for_update=True)
    elif payload.avito_chat_id:
        chat = await get_chat_by_avito_id(db, payload.avito_chat_id, for_update=True)
        if chat is None:
            chat = Chat(
                avito_chat_id=payload.avito_chat_id,
                account_id=settings.AVITO_ACCOUNT_ID,
                status=STATUS_BOT,
                pinned=False,
                unread_count=0,
                raw={"createdFrom": "dev_incoming", "mock": True},
            )
            db.add(chat)
            await db.flush()
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="chat_id or avito_chat_id is required")
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")

    fill_empty_fields(
        chat,
        {"customer_name": payload.customer_name, "item_title": payload.item_title, "price": payload.price},
    )

    now = utcnow()
    in_msg, _ = await insert_message(
        db,
        chat_id=chat.id,
        avito_message_id=f"dev_in_{uuid.uuid4().hex[:16]}",
        direction=DIRECTION_IN,
        text=payload.text,
        sent_at=now,
        raw={"mock": True, "source": "dev_incoming"},
    )
    await update_preview_if_newer(db, chat.id, now, payload.text)

    out_msg = None
    decision = None
    if auto_bot and chat.status == STATUS_BOT:
        decision = mock_bot_decision(payload.text)
        bot_at = now + MOCK_BOT_DELAY
        out_msg, _ = await insert_message(
            db,
            chat_id=chat.id,
            avito_message_id=f"dev_out_{uuid.uuid4().hex[:16]}",
            direction=DIRECTION_OUT,
            text=decision.reply,
            sent_at=bot_at,
            raw={"mock": True, "source": "dev_bot", "decision": decision.type, "reason": decision.reason},
        )
        await update_preview_if_newer(db, chat.id, bot_at, decision.reply)
        await mark_inbound_read_until(db, chat.id, bot_at)
        if decision.type == "escalate":
            chat.status = STATUS_MANAGER
            raw = chat.raw_dict()
            raw["escalation"] = {"reason": decision.reason, "at": iso(utcnow())}
            chat.raw = raw

    await recount_unread(db, chat.id)
    chat_id = chat.id
    avito_chat_id = chat.avito_chat_id
    customer_name = chat.customer_name
    await db.commit()

    bus.publish(
        EVENT_MESSAGE_CREATED,
        chat_id,
        avito_chat_id=avito_chat_id,
        message_id=in_msg.id,
        direction=DIRECTION_IN,
        message=message_event_payload(in_msg),
    )
    if out_msg is not None:
        bus.publish(
            EVENT_MESSAGE_CREATED,
            chat_id,
            avito_chat_id=avito_chat_id,
            message_id=out_msg.id,
            direction=DIRECTION_OUT,
            message=message_event_payload(out_msg),
        )
        bus.publish(EVENT_CHAT_READ, chat_id, avito_chat_id=avito_chat_id)
    bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)

    if not auto_bot:
        text = payload.text
        message_id = in_msg.avito_message_id
        supervisor.spawn(
            "responder",
            lambda: responder.handle_incoming(
                chat_id,
                text,
                message_id=message_id,
                customer_name_hint=customer_name,
                received_at=iso(now),
            ),
        )

    return DevIncomingResponse(
        chat_id=chat_id,
        avito_chat_id=avito_chat_id,
        message_id=in_msg.id,
        bot_message_id=out_msg.id if out_msg is not None else None,
        decision=decision.type if decision is not None else None,
    )


@router.post("/seed", response_model=DevSeedResponse)
async def dev_seed(db: AsyncSession = Depends(get_db), bus: RealtimeBus = Depends(get_bus)):
    summary = await seed_demo_chats(db)
    bus.publish(EVENT_CHAT_UPDATED)
    return DevSeedResponse(**summary)


@router.post("/reset")
async def dev_reset(db: AsyncSession = Depends(get_db), bus: RealtimeBus = Depends(get_bus)):
    await reset_all_chats(db)
    bus.publish(EVENT_CHAT_UPDATED)
    return {"ok": True}


@router.get("/whoami", response_model=DevWhoamiResponse)
async def dev_whoami(settings: Settings = Depends(get_settings)):
    token = settings.DEV_TOKEN or ""
    return DevWhoamiResponse(
        environment=settings.ENVIRONMENT,
        mock_mode=settings.MOCK_MODE,
        dev_token_len=len(token),
        dev_token_sample=f"{token[:2]}***{token[-2:]}" if token else None,
    )
