"""SQLAlchemy ORM models"""

from app.models.chat import Chat
from app.models.message import Message
from app.models.webhook_event import WebhookEvent
from app.models.integration_state import IntegrationState
from app.models.ai_assistant import AiAssistant

__all__ = [
    "Chat",
    "Message",
    "WebhookEvent",
    "IntegrationState",
    "AiAssistant",
]
