"""Responder dispatcher: automatic answers to new inbound messages.

Order for every newly created IN message (background, after the webhook ack):

1. dev test bot (non-production only, customer "Вадим Ли"): greets or escalates
2. AI assistant, only for BOT chats: sends the reply, or flips the chat to
   MANAGER when the reply carries ``[ESCALATE]``

Outbound delivery is shared with the operator API: send via provider, persist
the OUT message, move the preview, mark earlier IN messages read, recount
unread, then publish ``chat_read`` -> ``message_created`` -> ``chat_updated``.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, Optional

import httpx

from app.config import Settings, get_settings
from app.database import AsyncSessionLocal
from app.models.chat import STATUS_BOT, STATUS_MANAGER
from app.models.message import DIRECTION_OUT, Message
from app.services.avito_client import AvitoAPIError, AvitoConfigError
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import (
    get_chat,
    iso,
    message_event_payload,
    record_outbound,
    utcnow,
)
from app.services.payload_normalizer import extract_sent_message_id, normalize_chat_info
from app.services.realtime import (
    EVENT_CHAT_READ,
    EVENT_CHAT_UPDATED,
    EVENT_MESSAGE_CREATED,
    RealtimeBus,
)

logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (AvitoAPIError, AvitoConfigError, httpx.HTTPError)

ESCALATE_MARKER = "[ESCALATE]"

DEV_TEST_BOT_CUSTOMER = "Вадим Ли"
DEV_TEST_BOT_GREETING = "Здравствуйте!"
DEV_ESCALATE_RE = re.compile(
    r"(?:перевед(?:и|ите)|передай(?:те)?|переключ(?:и|ите))\s+(?:на|к)\s+"
    r"(?:оператор(?:а|у)?|менеджер(?:а|у)?)(?=\s|$|[.!?,:;])",
    re.IGNORECASE,
)

_WHITESPACE_RE = re.compile(r"\s+")


class ProviderSendError(Exception):
    """Provider rejected / failed an outbound message."""


def normalize_human_name(value: Optional[str]) -> str:
    return _WHITESPACE_RE.sub(" ", (value or "").strip().lower())


def _merge_raw(chat, patch: Optional[Dict[str, Any]]) -> None:
    if not patch:
        return
    raw = chat.raw_dict()
    raw.update(patch)
    chat.raw = raw


class ResponderDispatcher:
    def __init__(
        self,
        *,
        client: BaseChannelConnector,
        bus: RealtimeBus,
        assistant=None,
        session_factory=None,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.bus = bus
        self.assistant = assistant
        self.session_factory = session_factory or AsyncSessionLocal
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_and_record(
        self,
        chat_id: int,
        text: str,
        *,
        source: str,
        mark_read: bool = True,
        require_status: Optional[str] = None,
        set_status: Optional[str] = None,
        raw_patch: Optional[Dict[str, Any]] = None,
    ) -> Optional[Message]:
        """Send ``text`` and persist it; raises ProviderSendError if the provider fails.

        Returns None when the chat is gone, has no provider id, or is no longer
        in ``require_status``.
        """
        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id)
            if chat is None or not chat.avito_chat_id:
                return None
            if require_status and chat.status != require_status:
                logger.info("Skip send to chat %s: status is %s", chat_id, chat.status)
                return None
            avito_chat_id = chat.avito_chat_id

        try:
            resp = await self.client.send_text_message(avito_chat_id, text)
        except PROVIDER_ERRORS as exc:
            raise ProviderSendError(str(exc)) from exc

        out_id = extract_sent_message_id(resp) or f"out_{uuid.uuid4().hex[:16]}"
        sent_at = utcnow()

        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id, for_update=True)
            if chat is None:
                return None
            message, created = await record_outbound(
                db,
                chat,
                avito_message_id=out_id,
                text=text,
                sent_at=sent_at,
                raw={"from": source, "avitoSendResp": resp},
                mark_read=mark_read,
            )
            if set_status:
                chat.status = set_status
            _merge_raw(chat, raw_patch)
            await db.commit()

        if mark_read:
            self.bus.publish(EVENT_CHAT_READ, chat_id, avito_chat_id=avito_chat_id)
        if created and message is not None:
            self.bus.publish(
                EVENT_MESSAGE_CREATED,
                chat_id,
                avito_chat_id=avito_chat_id,
                message_id=message.id,
                direction=DIRECTION_OUT,
                message=message_event_payload(message),
            )
        self.bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)
        return message

    async def deliver_outbound(self, chat_id: int, text: str, *, source: str, **kwargs: Any) -> Optional[Message]:
        """Background variant of :meth:`send_and_record`: provider failures are logged, not raised."""
        try:
            return await self.send_and_record(chat_id, text, source=source, **kwargs)
        except ProviderSendError as exc:
            logger.warning("Outbound %s message to chat %s failed: %s", source, chat_id, exc)
            return None

    async def escalate(self, chat_id: int, *, reason: str, raw_patch: Optional[Dict[str, Any]] = None) -> bool:
        """Hand the chat to a manager and publish ``chat_updated``."""
        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id, for_update=True)
            if chat is None:
                return False
            chat.status = STATUS_MANAGER
            _merge_raw(chat, raw_patch)
            avito_chat_id = chat.avito_chat_id
            await db.commit()

        logger.info("Chat %s escalated to MANAGER (%s)", chat_id, reason)
        self.bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)
        return True

    # ------------------------------------------------------------------
    # AI assistant
    # ------------------------------------------------------------------

    async def dispatch_ai_reply(self, chat_id: int, text: str) -> Optional[str]:
        """Ask the assistant and act on the reply. Returns "sent", "escalated" or None."""
        text = (text or "").strip()
        if not text or self.assistant is None:
            return None

        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id)
            if chat is None:
                return None
            if chat.status != STATUS_BOT:
                logger.info("AI skip for chat %s: status is %s", chat_id, chat.status)
                return None

        try:
            reply = await self.assistant.get_reply(chat_id, text)
        except Exception as exc:
            logger.error("Assistant failed for chat %s: %s", chat_id, exc, exc_info=True)
            reply = None
        if not reply:
            return None

        if ESCALATE_MARKER in reply:
            await self.escalate(
                chat_id,
                reason="assistant",
                raw_patch={"escalation": {"reason": "assistant", "at": iso(utcnow())}},
            )
            return "escalated"

        message = await self.deliver_outbound(
            chat_id,
            reply.strip(),
            source="ai_assistant",
            require_status=STATUS_BOT,
        )
        return "sent" if message is not None else None

    # ------------------------------------------------------------------
    # Dev test bot
    # ------------------------------------------------------------------

    async def run_dev_test_bot(
        self,
        chat_id: int,
        text: str,
        *,
        message_id: Optional[str] = None,
        customer_name_hint: Optional[str] = None,
        received_at: Optional[str] = None,
    ) -> bool:
        """Scripted bot for the test customer outside production. True if it handled the message."""
        if self.settings.is_production:
            return False

        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id)
            if chat is None or not chat.avito_chat_id:
                return False
            test_bot = dict(chat.raw_dict().get("testBot") or {})
            customer_name = chat.customer_name or customer_name_hint
            status = chat.status
            avito_chat_id = chat.avito_chat_id

        if message_id and test_bot.get("lastInMessageId") == message_id:
            return False

        if not customer_name:
            customer_name = await self._lookup_customer_name(chat_id, avito_chat_id)

        if normalize_human_name(customer_name) != normalize_human_name(DEV_TEST_BOT_CUSTOMER):
            return False
        if status == STATUS_MANAGER:
            return False

        text = (text or "").strip()
        bookkeeping = {
            "lastInMessageId": message_id or test_bot.get("lastInMessageId"),
            "lastInText": text,
            "lastInAt": received_at or iso(utcnow()),
        }

        if DEV_ESCALATE_RE.search(text):
            await self.escalate(
                chat_id,
                reason="operator_requested",
                raw_patch={
                    "testBot": {
                        **test_bot,
                        **bookkeeping,
                        "escalatedAt": iso(utcnow()),
                        "reason": "operator_requested",
                    }
                },
            )
            return True

        await self.deliver_outbound(
            chat_id,
            DEV_TEST_BOT_GREETING,
            source="dev_test_bot",
            raw_patch={"testBot": {**test_bot, **bookkeeping, "greetedAt": iso(utcnow())}},
        )
        return True

    async def _lookup_customer_name(self, chat_id: int, avito_chat_id: str) -> Optional[str]:
        try:
            info = await self.client.get_chat_info(avito_chat_id)
        except PROVIDER_ERRORS as exc:
            logger.debug("getChatInfo for test bot failed: %s", exc)
            return None
        name = normalize_chat_info(info, self.settings.AVITO_ACCOUNT_ID).customer_name
        if not name:
            return None
        async with self.session_factory() as db:
            chat = await get_chat(db, chat_id, for_update=True)
            if chat is not None and not chat.customer_name:
                chat.customer_name = name
                await db.commit()
        return name

    # ------------------------------------------------------------------

    async def handle_incoming(
        self,
        chat_id: int,
        text: str,
        *,
        message_id: Optional[str] = None,
        customer_name_hint: Optional[str] = None,
        received_at: Optional[str] = None,
    ) -> None:
        """Responder chain for a newly created IN message."""
        handled = await self.run_dev_test_bot(
            chat_id,
            text,
            message_id=message_id,
            customer_name_hint=customer_name_hint,
            received_at=received_at,
        )
        if handled:
            return
        await self.dispatch_ai_reply(chat_id, text)
