"""Avito webhook receiver.

The provider expects a fast 2xx: everything after the transactional upsert
(enrichment, AI replies) runs on the background supervisor.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, Response

from app.api.deps import get_ingestor
from app.config import Settings, get_settings
from app.services.webhook_ingest import (
    WEBHOOK_EVENTS_TOTAL,
    WebhookAuthError,
    WebhookIngestor,
    extract_webhook_key,
    verify_webhook_key,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    key: Optional[str] = Query(None),
    x_webhook_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    ingestor: WebhookIngestor = Depends(get_ingestor),
    settings: Settings = Depends(get_settings),
):
    try:
        verify_webhook_key(extract_webhook_key(key, x_webhook_key, authorization), settings)
    except WebhookAuthError as exc:
        WEBHOOK_EVENTS_TOTAL.labels(outcome="unauthorized").inc()
        logger.warning("Webhook rejected: %s", exc)
        return JSONResponse(status_code=401, content={"ok": False, "error": "unauthorized"})

    raw_body = await request.body()
    try:
        body = json.loads(raw_body) if raw_body else None
    except (ValueError, UnicodeDecodeError):
        body = None
    if not isinstance(body, dict):
        WEBHOOK_EVENTS_TOTAL.labels(outcome="bad_json").inc()
        return JSONResponse(status_code=400, content={"ok": False, "error": "bad_json"})

    await ingestor.process_webhook(body)
    return {"ok": True}


@router.get("/webhook")
async def webhook_probe():
    """URL check done by the provider when a subscription is created."""
    return {"ok": True, "method": "GET"}


@router.head("/webhook")
async def webhook_head():
    return Response(status_code=200)
