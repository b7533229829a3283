"""Request-scoped access to the services built at startup (``app.state``)."""

from fastapi import Request

from app.services.assistant import AssistantResponder
from app.services.background import BackgroundTaskSupervisor
from app.services.base_connector import BaseChannelConnector
from app.services.enrichment import ItemInfoCache
from app.services.realtime import RealtimeBus
from app.services.responder import ResponderDispatcher
from app.services.webhook_ingest import WebhookIngestor


def get_bus(request: Request) -> RealtimeBus:
    return request.app.state.bus


def get_supervisor(request: Request) -> BackgroundTaskSupervisor:
    return request.app.state.supervisor


def get_avito_client(request: Request) -> BaseChannelConnector:
    return request.app.state.avito_client


def get_item_cache(request: Request) -> ItemInfoCache:
    return request.app.state.item_cache


def get_responder(request: Request) -> ResponderDispatcher:
    return request.app.state.responder


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_assistant(request: Request) -> AssistantResponder:
    return request.app.state.assistant
