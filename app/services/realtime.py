"""In-process realtime event bus + SSE framing.

One bus per process (single-instance limitation: scaling out needs Redis
pub/sub or Postgres LISTEN/NOTIFY in front of ``publish``).

Delivery rules:
- global subscribers get everything except ``message_created``;
- chat subscribers get events for their chat only;
- every subscriber has a bounded queue; on overflow the subscriber is closed
  and the browser reconnects and refetches state.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set

logger = logging.getLogger(__name__)

EVENT_HELLO = "hello"
EVENT_PING = "ping"
EVENT_CHAT_UPDATED = "chat_updated"
EVENT_MESSAGE_CREATED = "message_created"
EVENT_CHAT_READ = "chat_read"
EVENT_CHAT_PINNED = "chat_pinned"
EVENT_CHAT_FINISHED = "chat_finished"

EVENT_TYPES = (
    EVENT_HELLO,
    EVENT_PING,
    EVENT_CHAT_UPDATED,
    EVENT_MESSAGE_CREATED,
    EVENT_CHAT_READ,
    EVENT_CHAT_PINNED,
    EVENT_CHAT_FINISHED,
)

# Not delivered to global (all-chats) subscribers: the chat list refetches on chat_updated.
CHAT_SCOPED_ONLY = frozenset({EVENT_MESSAGE_CREATED})

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class RealtimeEvent:
    seq: int
    type: str
    ts: int
    chat_id: Optional[int] = None
    avito_chat_id: Optional[str] = None
    message_id: Optional[int] = None
    direction: Optional[str] = None
    message: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"seq": self.seq, "type": self.type, "ts": self.ts}
        for key, value in (
            ("chatId", self.chat_id),
            ("avitoChatId", self.avito_chat_id),
            ("messageId", self.message_id),
            ("direction", self.direction),
            ("message", self.message),
        ):
            if value is not None:
                data[key] = value
        return data


def format_sse(event: RealtimeEvent) -> str:
    """``id: <seq>\\nevent: <type>\\ndata: <json>\\n\\n``"""
    payload = json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"))
    return f"id: {event.seq}\nevent: {event.type}\ndata: {payload}\n\n"


@dataclass(eq=False)
class Subscription:
    """One SSE connection's view of the bus."""

    bus: "RealtimeBus"
    chat_id: Optional[int]
    queue: "asyncio.Queue[Optional[RealtimeEvent]]"
    closed: bool = field(default=False)

    def wants(self, event: RealtimeEvent) -> bool:
        if self.chat_id is None:
            return event.type not in CHAT_SCOPED_ONLY
        return event.chat_id == self.chat_id

    def offer(self, event: RealtimeEvent) -> bool:
        """Enqueue without blocking. False when the queue is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> Optional[RealtimeEvent]:
        """Next event; ``None`` once the subscription has been closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus._discard(self)
        # Wake a reader blocked in get(); drop a pending event if the queue is full.
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            self.queue.get_nowait()
            self.queue.put_nowait(None)


class RealtimeBus:
    """Process-local publish/subscribe with strictly increasing ``seq``."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = max(1, int(queue_size))
        self._seq = itertools.count(1)
        self._subscriptions: Set[Subscription] = set()
        self._running = False
        self.dropped_subscribers = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def start(self) -> None:
        self._running = True
        logger.info("Realtime bus started")

    def stop(self) -> None:
        """Close every subscription (open SSE streams finish)."""
        self._running = False
        for sub in list(self._subscriptions):
            sub.close()
        logger.info("Realtime bus stopped")

    def make_event(self, type: str, chat_id: Optional[int] = None, **fields: Any) -> RealtimeEvent:
        """Stamp seq/ts without broadcasting (hello / ping for a single connection)."""
        return RealtimeEvent(
            seq=next(self._seq),
            type=type,
            ts=int(time.time() * 1000),
            chat_id=chat_id,
            **fields,
        )

    def publish(self, type: str, chat_id: Optional[int] = None, **fields: Any) -> RealtimeEvent:
        event = self.make_event(type, chat_id, **fields)
        overflowed = []
        for sub in list(self._subscriptions):
            if sub.wants(event) and not sub.offer(event):
                overflowed.append(sub)
        for sub in overflowed:
            self.dropped_subscribers += 1
            logger.warning("Realtime subscriber overflow (chat=%s), closing", sub.chat_id)
            sub.close()
        return event

    def subscribe(self, chat_id: Optional[int] = None) -> Subscription:
        sub = Subscription(bus=self, chat_id=chat_id, queue=asyncio.Queue(maxsize=self.queue_size))
        self._subscriptions.add(sub)
        return sub

    def _discard(self, sub: Subscription) -> None:
        self._subscriptions.discard(sub)


async def sse_stream(
    bus: RealtimeBus,
    chat_id: Optional[int] = None,
    *,
    ping_interval: float = 25.0,
) -> AsyncIterator[str]:
    """SSE body: hello, then bus events interleaved with pings until closed / cancelled."""
    sub = bus.subscribe(chat_id)
    try:
        yield format_sse(bus.make_event(EVENT_HELLO, chat_id))
        while True:
            try:
                event = await asyncio.wait_for(sub.get(), timeout=ping_interval)
            except asyncio.TimeoutError:
                yield format_sse(bus.make_event(EVENT_PING, chat_id))
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        sub.close()
