"""Normalization of Avito webhook / API payloads into canonical records.

Avito sends several envelope shapes depending on API version and event type::

    {"id": "...", "payload": {"type": "message", "value": {...}}}   # v3 webhook
    {"data": {"value": {...}}}
    {"value": {...}}
    {...flat message...}

Every function here is total: unknown shapes yield ``None`` / empty fields, never
an exception. Probing order is expressed as tables so behaviour is deterministic
and testable.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple


class PayloadShape(str, Enum):
    """Known envelope shapes, in probing priority order."""

    PAYLOAD_VALUE = "payload.value"
    PAYLOAD = "payload"
    DATA_VALUE = "data.value"
    DATA = "data"
    VALUE = "value"
    TOP_LEVEL = "top_level"
    UNKNOWN = "unknown"


# (shape, path from body to the event root). First dict wins.
ROOT_PROBES: Tuple[Tuple[PayloadShape, str], ...] = (
    (PayloadShape.PAYLOAD_VALUE, "payload.value"),
    (PayloadShape.PAYLOAD, "payload"),
    (PayloadShape.DATA_VALUE, "data.value"),
    (PayloadShape.DATA, "data"),
    (PayloadShape.VALUE, "value"),
    (PayloadShape.TOP_LEVEL, ""),
)

EVENT_TYPE_PATHS = ("payload.type", "data.type", "type")

CHAT_ID_KEYS = ("chat_id", "chatId", "chatID")
MESSAGE_ID_KEYS = ("id", "message_id", "messageId")
AUTHOR_ID_KEYS = ("author_id", "authorId")
CREATED_KEYS = ("created", "created_at", "timestamp")
# Seconds stay below this until the year 5138; anything larger is milliseconds
MILLIS_THRESHOLD = 1e11
TEXT_PATHS = ("content.text", "content.message.text", "text")

PARTICIPANT_LIST_KEYS = ("users", "participants", "members")
PARTICIPANT_NAME_KEYS = ("name", "public_name", "publicName", "login")
ROOT_NAME_PATHS = ("user.name", "customer.name")

ITEM_CONTAINER_PATHS = ("item", "ad")  # probed on context first, then root
ITEM_TITLE_KEYS = ("title", "name", "item_title")
ITEM_URL_KEYS = ("url", "ad_url", "adUrl")
ITEM_ID_KEYS = ("id", "item_id", "itemId")
CONTEXT_ITEM_ID_KEYS = ("item_id", "itemId")
CHAT_URL_KEYS = ("chat_url", "chatUrl")
ITEM_PRICE_PATHS = ("price.value", "price.amount", "price", "price_string")

PRICE_ALIASES = ("value", "amount", "price", "sum", "cost")
UNREAD_ALIASES = ("count", "value", "total", "messages", "unread")

# Item info (GET /core/v1/accounts/{id}/items/{item_id}) response probing
ITEM_INFO_TITLE_PATHS = (
    "title", "name", "item.title", "item.name", "data.title", "data.name",
    "result.title", "result.name", "value.title", "value.name",
)
ITEM_INFO_URL_PATHS = (
    "url", "adUrl", "ad_url", "item.url", "item.ad_url", "data.url",
    "result.url", "value.url", "seo_url", "share_url", "link",
)
ITEM_INFO_PRICE_PATHS = (
    "price", "price.value", "price.amount", "item.price", "item.price.value", "item.price.amount",
    "data.price", "data.price.value", "data.price.amount", "result.price", "result.price.value",
    "result.price.amount", "value.price", "value.price.value", "value.price.amount",
)

# Message list responses (v1/v2/v3 wrap the array differently)
MESSAGE_ARRAY_PATHS = (
    "items", "messages", "data", "result.items", "result.messages", "result.data",
    "payload.items", "payload.messages", "value", "value.items", "value.messages",
)
HISTORY_MESSAGE_ID_PATHS = ("id", "message_id", "value.id", "message.id")
HISTORY_AUTHOR_ID_PATHS = ("author_id", "authorId", "from.id", "author.id", "value.author_id", "value.from.id")
HISTORY_TEXT_PATHS = ("content.text", "text", "content.message.text", "message.text")

SENT_MESSAGE_ID_PATHS = ("id", "message_id", "value.id", "result.id", "message.id")

AD_URL_ITEM_ID_RE = re.compile(r"_(\d+)(?:\?|$)")
_DIGITS_RE = re.compile(r"\d+")
_NOT_PRICE_CHARS_RE = re.compile(r"[^\d.]")
_MAX_DEPTH = 8


@dataclass
class ChatDetails:
    customer_name: Optional[str] = None
    item_title: Optional[str] = None
    ad_url: Optional[str] = None
    chat_url: Optional[str] = None
    item_id: Optional[int] = None
    price: Optional[int] = None

    def as_patch(self) -> Dict[str, Any]:
        """Chat column -> value for every non-empty hint."""
        return {
            key: value
            for key, value in (
                ("customer_name", self.customer_name),
                ("item_title", self.item_title),
                ("ad_url", self.ad_url),
                ("chat_url", self.chat_url),
            )
            if value
        }


@dataclass
class NormalizedEvent:
    """Canonical webhook event."""

    shape: PayloadShape = PayloadShape.UNKNOWN
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    author_id: Optional[str] = None
    text: str = ""
    created_at: Optional[datetime] = None
    details: ChatDetails = field(default_factory=ChatDetails)

    @property
    def item_id(self) -> Optional[int]:
        return self.details.item_id


@dataclass
class MessageRecord:
    """One message from a provider history listing."""

    avito_message_id: str
    author_id: Optional[str]
    direction: str
    text: str
    sent_at: Optional[datetime]
    raw: Any


@dataclass
class ItemInfo:
    item_id: int
    title: Optional[str] = None
    price: Optional[int] = None
    url: Optional[str] = None
    raw: Any = None


# ---------------------------------------------------------------------------
# Primitive helpers
# ---------------------------------------------------------------------------

def get_path(obj: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts. Empty path returns ``obj``."""
    if not path:
        return obj
    cur = obj
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
        if cur is None:
            return None
    return cur


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def to_int(value: Any) -> Optional[int]:
    """Strict integer coercion: ints, finite floats and fully numeric strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            n = float(s)
        except ValueError:
            return None
        return int(n) if math.isfinite(n) else None
    return None


def pick_first_string(*values: Any) -> Optional[str]:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v
    return None


def pick_first_int(*values: Any) -> Optional[int]:
    for v in values:
        n = to_int(v)
        if n is not None:
            return n
    return None


def pick_first_id(*values: Any) -> Optional[str]:
    """First non-empty string or integer id, as a string."""
    for v in values:
        if isinstance(v, bool):
            continue
        if isinstance(v, str) and v.strip():
            return v.strip()
        if isinstance(v, int):
            return str(v)
        if isinstance(v, float) and math.isfinite(v) and v == int(v):
            return str(int(v))
    return None


def _probe(obj: Any, paths: Iterable[str]) -> List[Any]:
    return [get_path(obj, p) for p in paths]


def stable_key(parts: Sequence[Any]) -> str:
    """Deterministic short key for a tuple of values (31-multiplier string hash)."""
    s = "|".join("" if p is None else str(p) for p in parts)
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return f"k_{h:x}"


# ---------------------------------------------------------------------------
# Numeric coercion
# ---------------------------------------------------------------------------

def normalize_price(value: Any, _depth: int = 0) -> Optional[int]:
    """Coerce a price-like value to whole roubles, or ``None``.

    Accepts numbers, strings like ``"1 990 ₽"``, booleans and objects
    wrapping the amount (``{"value": ...}``, ``{"amount": ...}``, ...).
    """
    if value is None or _depth > _MAX_DEPTH:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = _NOT_PRICE_CHARS_RE.sub("", value)
        if not cleaned.strip("."):
            return None
        try:
            n = float(cleaned)
        except ValueError:
            return None
        return int(n) if math.isfinite(n) else None
    if isinstance(value, dict):
        for alias in PRICE_ALIASES:
            n = normalize_price(value.get(alias), _depth + 1)
            if n is not None:
                return n
    return None


def normalize_unread(value: Any, _depth: int = 0) -> Optional[int]:
    """Coerce an unread-counter-like value to a non-negative int, or ``None``."""
    if value is None or _depth > _MAX_DEPTH:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return max(0, int(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            n = float(s)
        except ValueError:
            m = _DIGITS_RE.search(s)
            return int(m.group(0)) if m else None
        return max(0, int(n)) if math.isfinite(n) else None
    if isinstance(value, dict):
        for alias in UNREAD_ALIASES:
            n = normalize_unread(value.get(alias), _depth + 1)
            if n is not None:
                return n
    return None


def _from_epoch(seconds: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _epoch_by_digits(number: float) -> Optional[datetime]:
    if len(str(int(abs(number)))) < 10:
        return None
    if abs(number) > MILLIS_THRESHOLD:
        return _from_epoch(number / 1000.0)
    return _from_epoch(number)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a provider timestamp into an aware UTC datetime.

    Values above 1e11 are Unix milliseconds, other values of 10+ digits are
    Unix seconds, fewer than 10 digits = invalid. Other strings go through ISO-8601 parsing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return _epoch_by_digits(value)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.isdigit():
            return _epoch_by_digits(int(s))
        try:
            parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# ---------------------------------------------------------------------------
# Webhook normalization
# ---------------------------------------------------------------------------

def detect_shape(body: Any) -> Tuple[PayloadShape, Dict[str, Any]]:
    """Resolve the event root using :data:`ROOT_PROBES`."""
    if not isinstance(body, dict):
        return PayloadShape.UNKNOWN, {}
    for shape, path in ROOT_PROBES:
        root = get_path(body, path)
        if isinstance(root, dict):
            return shape, root
    return PayloadShape.UNKNOWN, {}


def extract_item_id_from_url(url: Optional[str]) -> Optional[int]:
    """Avito listing URLs end with ``..._7671727110`` (optionally followed by a query)."""
    if not isinstance(url, str) or not url:
        return None
    m = AD_URL_ITEM_ID_RE.search(url)
    return int(m.group(1)) if m else None


def _same_account(participant_id: Any, account_id: Optional[int]) -> bool:
    if account_id is None:
        return False
    return pick_first_id(participant_id) == str(account_id)


def extract_chat_details(root: Dict[str, Any], account_id: Optional[int]) -> ChatDetails:
    """Pull customer / item hints out of a chat-like object (webhook root or getChatInfo response)."""
    if not isinstance(root, dict):
        return ChatDetails()

    context = _as_dict(get_path(root, "context.value")) or _as_dict(root.get("context"))

    item: Optional[Dict[str, Any]] = None
    for container in (context, root):
        if container is None:
            continue
        for key in ITEM_CONTAINER_PATHS:
            item = _as_dict(container.get(key))
            if item is not None:
                break
        if item is not None:
            break
    item_is_root = False
    if item is None:
        item = context
    if item is None:
        item, item_is_root = root, True
    ctx = context or {}

    participants: List[Any] = []
    for key in PARTICIPANT_LIST_KEYS:
        if isinstance(root.get(key), list):
            participants = root[key]
            break
    other = next(
        (p for p in participants if isinstance(p, dict) and not _same_account(p.get("id"), account_id)),
        None,
    ) or {}

    customer_name = pick_first_string(
        *(other.get(k) for k in PARTICIPANT_NAME_KEYS),
        *_probe(root, ROOT_NAME_PATHS),
    )
    item_title = pick_first_string(
        *(item.get(k) for k in ITEM_TITLE_KEYS),
        ctx.get("title"),
        root.get("title"),
    )
    ad_url = pick_first_string(
        *(item.get(k) for k in ITEM_URL_KEYS),
        ctx.get("url"),
        root.get("url"),
    )
    chat_url = pick_first_string(*(root.get(k) for k in CHAT_URL_KEYS))

    item_id_keys = ITEM_ID_KEYS[1:] if item_is_root else ITEM_ID_KEYS
    item_id = pick_first_int(
        *(item.get(k) for k in item_id_keys),
        *(ctx.get(k) for k in CONTEXT_ITEM_ID_KEYS),
        *(root.get(k) for k in CONTEXT_ITEM_ID_KEYS),
    )
    if item_id is None:
        item_id = extract_item_id_from_url(ad_url)

    price = None
    for candidate in (*_probe(item, ITEM_PRICE_PATHS), ctx.get("price"), root.get("price")):
        price = normalize_price(candidate)
        if price is not None:
            break

    return ChatDetails(
        customer_name=customer_name.strip() if customer_name else None,
        item_title=item_title.strip() if item_title else None,
        ad_url=ad_url.strip() if ad_url else None,
        chat_url=chat_url.strip() if chat_url else None,
        item_id=item_id,
        price=price,
    )


def normalize_webhook(body: Any, account_id: Optional[int] = None) -> NormalizedEvent:
    """Canonical event from an arbitrary webhook body. Never raises."""
    shape, root = detect_shape(body)
    if shape is PayloadShape.UNKNOWN:
        return NormalizedEvent()

    event_type = pick_first_string(*_probe(body, EVENT_TYPE_PATHS))
    text = pick_first_string(*_probe(root, TEXT_PATHS)) or ""

    return NormalizedEvent(
        shape=shape,
        event_id=pick_first_id(body.get("id"), root.get("id")),
        event_type=event_type,
        chat_id=pick_first_id(*(root.get(k) for k in CHAT_ID_KEYS)),
        message_id=pick_first_id(*(root.get(k) for k in MESSAGE_ID_KEYS)),
        author_id=pick_first_id(*(root.get(k) for k in AUTHOR_ID_KEYS)),
        text=text,
        created_at=next(
            (ts for ts in (parse_timestamp(root.get(k)) for k in CREATED_KEYS) if ts is not None),
            None,
        ),
        details=extract_chat_details(root, account_id),
    )


def normalize_chat_info(resp: Any, account_id: Optional[int] = None) -> ChatDetails:
    """Chat details from a getChatInfo response (same probing as webhooks)."""
    _, root = detect_shape(resp)
    return extract_chat_details(root, account_id)


# ---------------------------------------------------------------------------
# Provider API responses
# ---------------------------------------------------------------------------

def extract_messages_array(resp: Any) -> List[Dict[str, Any]]:
    """List of message dicts from a listMessages response of any version."""
    if isinstance(resp, list):
        return [m for m in resp if isinstance(m, dict)]
    if not isinstance(resp, dict):
        return []
    for path in MESSAGE_ARRAY_PATHS:
        candidate = get_path(resp, path)
        if isinstance(candidate, list):
            return [m for m in candidate if isinstance(m, dict)]
    if isinstance(resp.get("message"), dict):
        return [resp["message"]]
    if resp.get("id") and (resp.get("content") or resp.get("text")):
        return [resp]
    return []


def normalize_history_message(message: Any, account_id: Optional[int] = None) -> Optional[MessageRecord]:
    """One history message, or ``None`` when it has no usable id."""
    if not isinstance(message, dict):
        return None
    avito_message_id = pick_first_id(*_probe(message, HISTORY_MESSAGE_ID_PATHS))
    if not avito_message_id:
        return None
    sent_at = next(
        (ts for ts in (parse_timestamp(message.get(k)) for k in CREATED_KEYS) if ts is not None),
        None,
    )
    text = pick_first_string(*_probe(message, HISTORY_TEXT_PATHS)) or ""
    author_id = pick_first_id(*_probe(message, HISTORY_AUTHOR_ID_PATHS))
    return MessageRecord(
        avito_message_id=avito_message_id,
        author_id=author_id,
        direction="OUT" if is_own_author(author_id, account_id) else "IN",
        text=text,
        sent_at=sent_at,
        raw=message,
    )


def normalize_item_info(item_id: int, resp: Any) -> ItemInfo:
    """Title / price / url from an item-info response."""
    title = pick_first_string(*_probe(resp, ITEM_INFO_TITLE_PATHS))
    url = pick_first_string(*_probe(resp, ITEM_INFO_URL_PATHS))
    price = None
    for candidate in _probe(resp, ITEM_INFO_PRICE_PATHS):
        price = normalize_price(candidate)
        if price is not None:
            break
    return ItemInfo(
        item_id=item_id,
        title=title.strip() if title else None,
        price=price,
        url=url.strip() if url else None,
        raw=resp,
    )


def extract_sent_message_id(resp: Any) -> Optional[str]:
    """Provider id of a just-sent message."""
    return pick_first_id(*_probe(resp, SENT_MESSAGE_ID_PATHS))


def is_own_author(author_id: Optional[str], account_id: Optional[int]) -> bool:
    """True when ``author_id`` is the connected Avito account (message is OUT)."""
    if not author_id or account_id is None:
        return False
    return str(author_id).strip() == str(account_id)
