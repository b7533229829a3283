"""Tests for the realtime bus and SSE framing."""

import asyncio
import json

import pytest

from app.services.realtime import (
    EVENT_CHAT_READ,
    EVENT_CHAT_UPDATED,
    EVENT_HELLO,
    EVENT_MESSAGE_CREATED,
    EVENT_PING,
    RealtimeBus,
    RealtimeEvent,
    format_sse,
    sse_stream,
)


def _parse_frame(frame: str) -> dict:
    lines = frame.rstrip("\n").split("\n")
    fields = dict(line.split(": ", 1) for line in lines)
    return {"id": int(fields["id"]), "event": fields["event"], "data": json.loads(fields["data"])}


def test_format_sse_frame():
    event = RealtimeEvent(seq=7, type=EVENT_CHAT_UPDATED, ts=1735689600000, chat_id=3, avito_chat_id="u2i-abc")

    frame = format_sse(event)

    assert frame.endswith("\n\n")
    assert frame.startswith("id: 7\nevent: chat_updated\ndata: ")
    assert _parse_frame(frame)["data"] == {
        "seq": 7,
        "type": "chat_updated",
        "ts": 1735689600000,
        "chatId": 3,
        "avitoChatId": "u2i-abc",
    }


def test_format_sse_keeps_cyrillic_readable():
    event = RealtimeEvent(seq=1, type=EVENT_MESSAGE_CREATED, ts=0, chat_id=1, message={"text": "Здравствуйте"})
    assert "Здравствуйте" in format_sse(event)


@pytest.mark.asyncio
async def test_seq_strictly_increasing():
    bus = RealtimeBus()
    seqs = [bus.publish(EVENT_CHAT_UPDATED, chat_id=1).seq for _ in range(5)]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 5


@pytest.mark.asyncio
async def test_message_created_goes_to_chat_subscribers_only():
    bus = RealtimeBus()
    global_sub = bus.subscribe()
    chat_sub = bus.subscribe(chat_id=1)
    other_chat_sub = bus.subscribe(chat_id=2)

    bus.publish(EVENT_MESSAGE_CREATED, chat_id=1, message_id=10, direction="IN")
    bus.publish(EVENT_CHAT_UPDATED, chat_id=1)

    assert [e.type for e in _drain(chat_sub)] == [EVENT_MESSAGE_CREATED, EVENT_CHAT_UPDATED]
    assert [e.type for e in _drain(global_sub)] == [EVENT_CHAT_UPDATED]
    assert _drain(other_chat_sub) == []


@pytest.mark.asyncio
async def test_global_event_without_chat_reaches_only_global_subscribers():
    bus = RealtimeBus()
    global_sub = bus.subscribe()
    chat_sub = bus.subscribe(chat_id=1)

    bus.publish(EVENT_CHAT_UPDATED)

    assert len(_drain(global_sub)) == 1
    assert _drain(chat_sub) == []


@pytest.mark.asyncio
async def test_overflow_closes_slow_subscriber():
    bus = RealtimeBus(queue_size=2)
    slow = bus.subscribe()
    fast = bus.subscribe()

    bus.publish(EVENT_CHAT_UPDATED, chat_id=1)
    _drain(fast)
    bus.publish(EVENT_CHAT_READ, chat_id=1)
    _drain(fast)
    bus.publish(EVENT_CHAT_UPDATED, chat_id=1)

    assert slow.closed
    assert not fast.closed
    assert bus.subscriber_count == 1
    assert bus.dropped_subscribers == 1

    # Reader sees buffered events, then end-of-stream.
    received = []
    while True:
        event = await slow.get()
        if event is None:
            break
        received.append(event)
    assert len(received) <= 2


@pytest.mark.asyncio
async def test_stop_closes_every_subscription():
    bus = RealtimeBus()
    bus.start()
    sub = bus.subscribe(chat_id=1)

    bus.stop()

    assert sub.closed
    assert await sub.get() is None
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_sse_stream_hello_events_and_ping():
    bus = RealtimeBus()
    stream = sse_stream(bus, chat_id=5, ping_interval=0.05)

    hello = _parse_frame(await stream.__anext__())
    assert hello["event"] == EVENT_HELLO
    assert hello["data"]["chatId"] == 5
    assert bus.subscriber_count == 1

    bus.publish(EVENT_MESSAGE_CREATED, chat_id=5, message_id=1, direction="OUT")
    created = _parse_frame(await stream.__anext__())
    assert created["event"] == EVENT_MESSAGE_CREATED
    assert created["id"] > hello["id"]
    assert created["data"]["direction"] == "OUT"

    ping = _parse_frame(await asyncio.wait_for(stream.__anext__(), timeout=1))
    assert ping["event"] == EVENT_PING

    await stream.aclose()
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_sse_stream_ends_when_bus_stops():
    bus = RealtimeBus()
    stream = sse_stream(bus, ping_interval=10)
    await stream.__anext__()

    bus.stop()

    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=1)


def _drain(sub):
    events = []
    while not sub.queue.empty():
        event = sub.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events
