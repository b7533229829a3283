"""Business logic services"""

from app.services.avito_client import (
    AvitoAPIError,
    AvitoClient,
    AvitoConfigError,
    MockAvitoClient,
    build_avito_client,
)
from app.services.background import BackgroundTaskSupervisor
from app.services.enrichment import ItemInfoCache, enrich_chat_metadata, enrich_chat_price
from app.services.payload_normalizer import normalize_webhook
from app.services.realtime import RealtimeBus, sse_stream
from app.services.responder import ResponderDispatcher
from app.services.webhook_ingest import WebhookIngestor

__all__ = [
    "AvitoAPIError",
    "AvitoClient",
    "AvitoConfigError",
    "MockAvitoClient",
    "build_avito_client",
    "BackgroundTaskSupervisor",
    "ItemInfoCache",
    "enrich_chat_metadata",
    "enrich_chat_price",
    "normalize_webhook",
    "RealtimeBus",
    "sse_stream",
    "ResponderDispatcher",
    "WebhookIngestor",
]
