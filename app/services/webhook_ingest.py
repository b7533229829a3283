"""Avito webhook ingestion pipeline.

Avito delivers webhooks at least once, so every step is idempotent:

1. auth (shared key, production only)
2. append the raw body to ``webhook_events`` (skip duplicate event ids, own commit)
3. normalize the payload
4. one transaction: find-or-create the chat (insert-ignore + re-select under
   FOR UPDATE), fill empty fields, insert the message with ON CONFLICT DO
   NOTHING, move the preview and recount unread for new rows
5. publish ``message_created`` (new rows only) + ``chat_updated`` right away
6. spawn enrichment / responder work on the supervisor and return
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from prometheus_client import Counter

from app.config import Settings, get_settings
from app.database import AsyncSessionLocal, insert_ignoring_duplicates
from app.models.chat import CHAT_STATUSES, ENRICHMENT_FIELDS, STATUS_BOT, Chat
from app.models.message import DIRECTION_IN, DIRECTION_OUT, Message
from app.models.webhook_event import SOURCE_AVITO, WebhookEvent
from app.services.background import BackgroundTaskSupervisor
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import (
    fill_empty_fields,
    get_chat_by_avito_id,
    insert_message,
    iso,
    message_event_payload,
    recount_unread,
    update_preview_if_newer,
    utcnow,
)
from app.services.enrichment import ItemInfoCache, enrich_chat_metadata, enrich_chat_price
from app.services.payload_normalizer import NormalizedEvent, is_own_author, normalize_webhook, stable_key
from app.services.realtime import EVENT_CHAT_UPDATED, EVENT_MESSAGE_CREATED, RealtimeBus

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Received provider webhooks by outcome",
    ["outcome"],
)


class WebhookAuthError(Exception):
    """Missing or wrong webhook key."""


def extract_webhook_key(
    query_key: Optional[str] = None,
    header_key: Optional[str] = None,
    authorization: Optional[str] = None,
) -> Optional[str]:
    """``?key=`` first, then ``X-Webhook-Key``, then ``Authorization: Bearer``."""
    if query_key:
        return query_key
    if header_key:
        return header_key
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        return token or None
    return None


def verify_webhook_key(provided: Optional[str], settings: Optional[Settings] = None) -> None:
    """Raise WebhookAuthError unless the key matches. Outside production every request passes."""
    settings = settings or get_settings()
    if not settings.is_production:
        return
    expected = settings.CRM_WEBHOOK_KEY or ""
    if not provided or not expected:
        raise WebhookAuthError("webhook key missing")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthError("webhook key mismatch")


def synthetic_message_id(body: Dict[str, Any], event: NormalizedEvent) -> str:
    """
    Key for a message the provider sent without an id.

    Built only from what a redelivery repeats: event id, chat, text and the
    provider timestamp. With neither event id nor timestamp the raw body digest
    stands in for them.
    """
    parts = ["webhook", event.event_id, event.chat_id, event.text]
    if event.created_at is not None:
        parts.append(iso(event.created_at))
    if event.event_id is None and event.created_at is None:
        canonical = json.dumps(body, sort_keys=True, ensure_ascii=False, default=str)
        parts.append(hashlib.sha256(canonical.encode("utf-8")).hexdigest())
    return stable_key(parts)


@dataclass
class IngestResult:
    event: NormalizedEvent = field(default_factory=NormalizedEvent)
    chat_id: Optional[int] = None
    avito_chat_id: Optional[str] = None
    chat_created: bool = False
    message: Optional[Message] = None
    message_created: bool = False
    direction: Optional[str] = None
    needs_enrich: bool = False
    item_id: Optional[int] = None
    customer_name: Optional[str] = None

    @property
    def handled(self) -> bool:
        return self.chat_id is not None


class WebhookIngestor:
    """Owns the webhook pipeline and its collaborators (bus, supervisor, workers)."""

    def __init__(
        self,
        *,
        bus: RealtimeBus,
        supervisor: BackgroundTaskSupervisor,
        client: BaseChannelConnector,
        item_cache: ItemInfoCache,
        responder=None,
        settings: Optional[Settings] = None,
        session_factory=None,
    ):
        self.bus = bus
        self.supervisor = supervisor
        self.client = client
        self.item_cache = item_cache
        self.responder = responder
        self.settings = settings or get_settings()
        self.session_factory = session_factory or AsyncSessionLocal

    @property
    def default_status(self) -> str:
        status = (self.settings.AVITO_DEFAULT_STATUS or STATUS_BOT).strip().upper()
        return status if status in CHAT_STATUSES else STATUS_BOT

    async def process_webhook(self, body: Dict[str, Any]) -> IngestResult:
        """Steps 2-6 for an already authenticated, parsed JSON object."""
        event = normalize_webhook(body, self.settings.AVITO_ACCOUNT_ID)
        await self.log_event(body, event)

        if not event.chat_id:
            WEBHOOK_EVENTS_TOTAL.labels(outcome="no_chat").inc()
            logger.info("Webhook without chat id (type=%s, shape=%s)", event.event_type, event.shape.value)
            return IngestResult(event=event)

        result = await self.upsert(body, event)
        WEBHOOK_EVENTS_TOTAL.labels(outcome="created" if result.message_created else "no_new_message").inc()

        self.publish_immediate(result)
        self.schedule_followups(result)
        return result

    async def log_event(self, body: Dict[str, Any], event: NormalizedEvent) -> bool:
        """Append to webhook_events. Returns False for a duplicate event id."""
        async with self.session_factory() as db:
            values = {
                "source": SOURCE_AVITO,
                "event_id": event.event_id,
                "type": event.event_type,
                "payload": body,
                "received_at": utcnow(),
            }
            if event.event_id:
                res = await db.execute(
                    insert_ignoring_duplicates(db, WebhookEvent, ["source", "event_id"], **values)
                )
                inserted = res.rowcount == 1
            else:
                db.add(WebhookEvent(**values))
                inserted = True
            await db.commit()
        if not inserted:
            logger.debug("Duplicate webhook event %s", event.event_id)
        return inserted

    async def upsert(self, body: Dict[str, Any], event: NormalizedEvent) -> IngestResult:
        """Transactional chat/message upsert (step 4)."""
        account_id = self.settings.AVITO_ACCOUNT_ID
        details = event.details
        direction = DIRECTION_OUT if is_own_author(event.author_id, account_id) else DIRECTION_IN
        sent_at = event.created_at or utcnow()
        result = IngestResult(event=event, avito_chat_id=event.chat_id, direction=direction, item_id=details.item_id)

        async with self.session_factory() as db:
            chat = await get_chat_by_avito_id(db, event.chat_id, for_update=True)
            if chat is None:
                res = await db.execute(
                    insert_ignoring_duplicates(
                        db,
                        Chat,
                        ["avito_chat_id"],
                        avito_chat_id=event.chat_id,
                        account_id=account_id,
                        status=self.default_status,
                        pinned=False,
                        unread_count=0,
                        price=details.price,
                        raw={
                            "createdFrom": "webhook",
                            "type": event.event_type,
                            "payload": body,
                            "itemId": details.item_id,
                        },
                        **details.as_patch(),
                    )
                )
                result.chat_created = res.rowcount == 1
                chat = await get_chat_by_avito_id(db, event.chat_id, for_update=True)
                if not result.chat_created:
                    self._fill_hints(chat, event)
            else:
                self._fill_hints(chat, event)

            message_id = event.message_id
            if not message_id and event.text:
                message_id = synthetic_message_id(body, event)

            if message_id:
                message, created = await insert_message(
                    db,
                    chat_id=chat.id,
                    avito_message_id=message_id,
                    direction=direction,
                    text=event.text,
                    sent_at=sent_at,
                    raw=body,
                )
                result.message = message
                result.message_created = created
                if created:
                    await update_preview_if_newer(db, chat.id, sent_at, event.text)
                    if direction == DIRECTION_IN:
                        await recount_unread(db, chat.id)

            raw = chat.raw_dict()
            raw["lastWebhookType"] = event.event_type
            raw["lastWebhookAt"] = iso(utcnow())
            chat.raw = raw

            result.chat_id = chat.id
            result.customer_name = chat.customer_name or details.customer_name
            result.needs_enrich = any(not getattr(chat, name) for name in ENRICHMENT_FIELDS)
            if result.item_id is None:
                result.item_id = raw.get("itemId")
            await db.commit()

        return result

    @staticmethod
    def _fill_hints(chat: Chat, event: NormalizedEvent) -> None:
        """Monotonic patch from webhook hints; ``raw.itemId`` is stored once."""
        details = event.details
        fill_empty_fields(chat, {**details.as_patch(), "price": details.price})
        raw = chat.raw_dict()
        if details.item_id and not raw.get("itemId"):
            raw["itemId"] = details.item_id
            chat.raw = raw

    def publish_immediate(self, result: IngestResult) -> None:
        if result.message_created and result.message is not None:
            self.bus.publish(
                EVENT_MESSAGE_CREATED,
                result.chat_id,
                avito_chat_id=result.avito_chat_id,
                message_id=result.message.id,
                direction=result.direction,
                message=message_event_payload(result.message),
            )
        self.bus.publish(EVENT_CHAT_UPDATED, result.chat_id, avito_chat_id=result.avito_chat_id)

    def schedule_followups(self, result: IngestResult) -> None:
        chat_id = result.chat_id
        if chat_id is None:
            return
        session_factory = self.session_factory

        if result.needs_enrich and result.avito_chat_id:
            self.supervisor.spawn(
                "enrich_chat_metadata",
                lambda: enrich_chat_metadata(
                    chat_id,
                    client=self.client,
                    bus=self.bus,
                    account_id=self.settings.AVITO_ACCOUNT_ID,
                    session_factory=session_factory,
                ),
            )

        if result.item_id:
            item_id = int(result.item_id)
            self.supervisor.spawn(
                "enrich_chat_price",
                lambda: enrich_chat_price(
                    chat_id,
                    item_id,
                    item_cache=self.item_cache,
                    bus=self.bus,
                    session_factory=session_factory,
                ),
            )

        if self.responder is not None and result.message_created and result.direction == DIRECTION_IN:
            text = result.event.text
            message_id = result.message.avito_message_id if result.message is not None else None
            self.supervisor.spawn(
                "responder",
                lambda: self.responder.handle_incoming(
                    chat_id,
                    text,
                    message_id=message_id,
                    customer_name_hint=result.customer_name,
                    received_at=iso(result.event.created_at),
                ),
            )
