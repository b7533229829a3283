"""Background enrichment of sparse webhook chats.

Webhooks often carry only ids. After the webhook has been acknowledged we
fill the chat card from follow-up API calls:

- ``enrich_chat_metadata``: customer name / item title / urls via getChatInfo
- ``enrich_chat_price``: price (and title / url if still empty) via getItemInfo,
  through a short-TTL in-process cache

Both are idempotent: they only fill NULL fields and are silent no-ops when
there is nothing to do.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import httpx

from app.database import AsyncSessionLocal
from app.models.chat import ENRICHMENT_FIELDS
from app.services.avito_client import AvitoAPIError, AvitoConfigError
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import fill_empty_fields, get_chat, iso, utcnow
from app.services.payload_normalizer import ItemInfo, normalize_chat_info
from app.services.realtime import EVENT_CHAT_UPDATED, RealtimeBus

logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (AvitoAPIError, AvitoConfigError, httpx.HTTPError)


class ItemInfoCache:
    """TTL cache in front of ``get_item_info``.

    Concurrent lookups of the same item share one request; "not found" (None)
    is cached like a hit, errors are not cached. Expired entries are dropped on
    every insert and the map never grows past ``max_entries``.
    """

    def __init__(
        self,
        client: BaseChannelConnector,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1024,
    ):
        self._client = client
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: Dict[int, Tuple[float, Optional[ItemInfo]]] = {}
        self._inflight: Dict[int, asyncio.Task] = {}

    def clear(self) -> None:
        self._entries.clear()

    async def get(self, item_id: int) -> Optional[ItemInfo]:
        entry = self._entries.get(item_id)
        if entry is not None and entry[0] > self._clock():
            return entry[1]

        task = self._inflight.get(item_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(item_id))
            self._inflight[item_id] = task
            task.add_done_callback(lambda _t, key=item_id: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _fetch(self, item_id: int) -> Optional[ItemInfo]:
        info = await self._client.get_item_info(item_id)
        now = self._clock()
        self._evict(now)
        self._entries[item_id] = (now + self._ttl, info)
        return info

    def _evict(self, now: float) -> None:
        for key in [k for k, (expires, _) in self._entries.items() if expires <= now]:
            del self._entries[key]
        # still full: drop the entries closest to expiry
        overflow = len(self._entries) - self._max_entries + 1
        if overflow > 0:
            for key in sorted(self._entries, key=lambda k: self._entries[k][0])[:overflow]:
                del self._entries[key]


async def enrich_chat_metadata(
    chat_id: int,
    *,
    client: BaseChannelConnector,
    bus: RealtimeBus,
    account_id: Optional[int] = None,
    session_factory=None,
) -> bool:
    """Fill missing name/title/urls from getChatInfo. Returns True if anything was filled."""
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as db:
        chat = await get_chat(db, chat_id)
        if chat is None or not chat.avito_chat_id:
            return False
        if all(getattr(chat, name) for name in ENRICHMENT_FIELDS):
            return False
        avito_chat_id = chat.avito_chat_id

    try:
        resp = await client.get_chat_info(avito_chat_id)
    except PROVIDER_ERRORS as exc:
        logger.warning("getChatInfo failed for chat=%s (%s): %s", chat_id, avito_chat_id, exc)
        return False

    details = normalize_chat_info(resp, account_id)
    patch = details.as_patch()
    if not patch:
        return False

    async with session_factory() as db:
        chat = await get_chat(db, chat_id, for_update=True)
        if chat is None:
            return False
        filled = fill_empty_fields(chat, patch)
        if chat.price is None and details.price is not None:
            chat.price = details.price
            filled.append("price")
        if not filled:
            return False

        raw = chat.raw_dict()
        if details.item_id and not raw.get("itemId"):
            raw["itemId"] = details.item_id
        enrich = dict(raw.get("enrich") or {})
        enrich.update({"source": "avitoGetChatInfo", "at": iso(utcnow()), "filled": filled})
        raw["enrich"] = enrich
        chat.raw = raw
        await db.commit()

    logger.info("Chat %s enriched from getChatInfo: %s", chat_id, ", ".join(filled))
    bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)
    return True


async def enrich_chat_price(
    chat_id: int,
    item_id: Optional[int],
    *,
    item_cache: ItemInfoCache,
    bus: RealtimeBus,
    session_factory=None,
) -> bool:
    """Fill price (and empty title / ad url) from getItemInfo. Never raises."""
    if not item_id:
        return False
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as db:
        chat = await get_chat(db, chat_id)
        if chat is None or chat.price is not None:
            return False

    try:
        info = await item_cache.get(int(item_id))
    except Exception as exc:
        logger.warning("getItemInfo failed for chat=%s item=%s: %s", chat_id, item_id, exc)
        return False

    if info is None:
        logger.info("Item %s not found, price for chat %s left empty", item_id, chat_id)
        return False

    async with session_factory() as db:
        chat = await get_chat(db, chat_id, for_update=True)
        if chat is None:
            return False
        filled = fill_empty_fields(
            chat,
            {"price": info.price, "item_title": info.title, "ad_url": info.url},
        )
        if not filled:
            return False

        raw = chat.raw_dict()
        enrich = dict(raw.get("enrich") or {})
        enrich["price"] = {"source": "avitoGetItemInfo", "at": iso(utcnow()), "itemId": int(item_id)}
        raw["enrich"] = enrich
        chat.raw = raw
        avito_chat_id = chat.avito_chat_id
        await db.commit()

    bus.publish(EVENT_CHAT_UPDATED, chat_id, avito_chat_id=avito_chat_id)
    return True
