"""Server-Sent Events stream for the operator UI."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from app.api.deps import get_bus
from app.config import Settings, get_settings
from app.middleware.auth import require_operator
from app.services.realtime import SSE_HEADERS, RealtimeBus, sse_stream

router = APIRouter(tags=["realtime"])


@router.get("/events", dependencies=[Depends(require_operator)])
async def stream_events(
    chat_id: Optional[int] = Query(None, alias="chatId"),
    bus: RealtimeBus = Depends(get_bus),
    settings: Settings = Depends(get_settings),
):
    """
    Without ``chatId`` the stream carries every event except ``message_created``;
    with it, only events of that chat. The client reconnects and refetches on drop.
    """
    return StreamingResponse(
        sse_stream(bus, chat_id, ping_interval=settings.REALTIME_PING_INTERVAL),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
