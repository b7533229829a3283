"""Avito webhook subscription management.

The provider has no reliable "list subscriptions" endpoint, so the state we
subscribed with is kept in ``integration_state`` (row id=1).
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_avito_client
from app.config import Settings, get_settings
from app.database import get_db
from app.middleware.auth import require_operator
from app.models.ai_assistant import AI_ASSISTANT_ID, AiAssistant
from app.models.integration_state import INTEGRATION_STATE_ID, IntegrationState
from app.schemas.subscribe import SubscribeResponse, SubscriptionDiagnostics, SubscriptionStatusResponse
from app.services.avito_client import AvitoAPIError, AvitoConfigError
from app.services.base_connector import BaseChannelConnector
from app.services.chat_store import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/avito", tags=["avito"], dependencies=[Depends(require_operator)])

PROVIDER_ERRORS = (AvitoAPIError, AvitoConfigError, httpx.HTTPError)


def build_webhook_url(settings: Settings) -> str:
    base = (settings.PUBLIC_BASE_URL or "").rstrip("/")
    if not base:
        raise ValueError("PUBLIC_BASE_URL не настроен, задайте публичный URL сервера")
    return f"{base}/webhook?key={quote(settings.CRM_WEBHOOK_KEY or '', safe='')}"


async def build_diagnostics(db: AsyncSession, settings: Settings) -> SubscriptionDiagnostics:
    """Configuration problems that would stop webhooks (or replies) from working."""
    issues = []

    base = (settings.PUBLIC_BASE_URL or "").rstrip("/")
    if not base:
        issues.append("PUBLIC_BASE_URL не задан, Avito не сможет доставлять сообщения")
    elif base.startswith(("http://localhost", "http://127.0.0.1", "https://localhost", "https://127.0.0.1")):
        issues.append("PUBLIC_BASE_URL указывает на localhost, используйте публичный домен или туннель")
    elif not base.startswith("https://"):
        issues.append("PUBLIC_BASE_URL должен использовать HTTPS")

    for name in settings.missing_avito_credentials():
        issues.append(f"{name} не задан")

    result = await db.execute(select(AiAssistant).where(AiAssistant.id == AI_ASSISTANT_ID))
    ai = result.scalar_one_or_none()
    ai_enabled = bool(ai and ai.enabled)
    if not ai_enabled:
        issues.append("AI-ассистент выключен")
    else:
        if not ai.api_key:
            issues.append("AI-ассистент: не задан API ключ")
        if not ai.assistant_id:
            issues.append("AI-ассистент: не задан Assistant ID")

    return SubscriptionDiagnostics(
        public_base_url=base or None,
        has_avito_credentials=not settings.missing_avito_credentials(),
        ai_enabled=ai_enabled,
        ai_configured=bool(ai_enabled and ai.api_key and ai.assistant_id),
        issues=issues,
        healthy=not issues,
    )


async def _get_state(db: AsyncSession, *, for_update: bool = False) -> Optional[IntegrationState]:
    stmt = select(IntegrationState).where(IntegrationState.id == INTEGRATION_STATE_ID)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


@router.get("/subscribe", response_model=SubscriptionStatusResponse)
async def subscription_status(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    diagnostics = await build_diagnostics(db, settings)
    if settings.MOCK_MODE:
        return SubscriptionStatusResponse(mock=True, diagnostics=diagnostics)

    try:
        default_url = build_webhook_url(settings)
    except ValueError:
        default_url = None

    state = await _get_state(db)
    subscribed_url = state.webhook_url if state else None
    return SubscriptionStatusResponse(
        subscribed=bool(subscribed_url),
        webhook_url=subscribed_url or default_url,
        subscribed_at=state.webhook_subscribed_at if state else None,
        diagnostics=diagnostics,
    )


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    db: AsyncSession = Depends(get_db),
    client: BaseChannelConnector = Depends(get_avito_client),
    settings: Settings = Depends(get_settings),
):
    if settings.MOCK_MODE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Subscription is unavailable in MOCK_MODE")
    try:
        webhook_url = build_webhook_url(settings)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    try:
        subscription = await client.subscribe_webhook(webhook_url)
    except PROVIDER_ERRORS as exc:
        logger.error("Webhook subscribe failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Avito subscribe failed: {exc}")

    state = await _get_state(db, for_update=True)
    if state is None:
        state = IntegrationState(id=INTEGRATION_STATE_ID)
        db.add(state)
    state.webhook_url = webhook_url
    state.webhook_subscription_id = subscription.id
    state.webhook_subscribed_at = utcnow()
    await db.commit()

    logger.info("Subscribed Avito webhooks to %s", webhook_url.split("?", 1)[0])
    return SubscribeResponse(
        webhook_url=webhook_url,
        subscription_id=subscription.id,
        subscription=subscription.raw,
    )


@router.delete("/subscribe")
async def unsubscribe(
    db: AsyncSession = Depends(get_db),
    client: BaseChannelConnector = Depends(get_avito_client),
    settings: Settings = Depends(get_settings),
):
    """Unsubscribe; the local state is cleared even if the provider call fails."""
    if settings.MOCK_MODE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsubscribe is unavailable in MOCK_MODE")

    state = await _get_state(db, for_update=True)
    subscription_id = state.webhook_subscription_id if state else None

    avito_error = None
    try:
        await client.unsubscribe_webhook(subscription_id)
    except PROVIDER_ERRORS as exc:
        logger.warning("Webhook unsubscribe failed: %s", exc)
        avito_error = str(exc)

    if state is not None:
        state.webhook_url = None
        state.webhook_subscription_id = None
        state.webhook_subscribed_at = None
        await db.commit()
    return {"ok": True, "avito_error": avito_error}
