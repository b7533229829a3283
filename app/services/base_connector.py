"""Base connector interface for the messaging provider.

Defines the operations the ingestion pipeline, enrichment workers, responder
and operator API need from the provider:

- chat / message listing and chat info lookups
- sending replies and marking chats read
- item (listing) lookups for price enrichment
- webhook subscription management

Design principles:
- The HTTP client and the offline mock implement the same interface, so the
  rest of the code never branches on mock mode
- Operations that a connector cannot serve raise NotImplementedError by default
- Responses are returned as raw provider JSON; shape handling lives in
  ``app.services.payload_normalizer``
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.services.payload_normalizer import ItemInfo


@dataclass
class WebhookSubscription:
    id: Optional[str] = None
    url: Optional[str] = None
    raw: Any = None


class BaseChannelConnector(ABC):
    """Abstract base class for provider connectors.

    Attributes:
        marketplace: Provider identifier ("avito")
        channel: Communication channel ("chat")
    """

    marketplace: str
    channel: str

    @abstractmethod
    async def send_text_message(self, chat_id: str, text: str) -> Any:
        """Send a text message into a provider chat.

        Returns:
            Raw provider response; the new message id is extracted with
            ``extract_sent_message_id``.
        """

    @abstractmethod
    async def get_chat_info(self, chat_id: str) -> Any:
        """Return raw chat info (participants, item context, urls)."""

    @abstractmethod
    async def get_item_info(self, item_id: int) -> Optional[ItemInfo]:
        """Return item title / price / url, or None when the item does not exist."""

    async def list_chats(self, *, limit: int = 100, offset: int = 0) -> Any:
        raise NotImplementedError(f"{self.__class__.__name__} does not implement list_chats")

    async def list_messages(self, chat_id: str, *, limit: int = 100, offset: int = 0) -> Any:
        raise NotImplementedError(f"{self.__class__.__name__} does not implement list_messages")

    async def mark_chat_read(self, chat_id: str, last_message_id: Optional[str] = None) -> None:
        """Mark a chat read on the provider side.

        Raises:
            NotImplementedError: If the connector doesn't support mark-read
        """
        raise NotImplementedError(f"{self.__class__.__name__} does not implement mark_chat_read")

    async def subscribe_webhook(self, url: str) -> WebhookSubscription:
        raise NotImplementedError(f"{self.__class__.__name__} does not implement subscribe_webhook")

    async def unsubscribe_webhook(self, subscription_id: Optional[str] = None) -> None:
        raise NotImplementedError(f"{self.__class__.__name__} does not implement unsubscribe_webhook")

    async def get_webhook_subscriptions(self) -> List[WebhookSubscription]:
        raise NotImplementedError(
            f"{self.__class__.__name__} does not implement get_webhook_subscriptions"
        )

    async def whoami(self) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.__class__.__name__} does not implement whoami")

    async def aclose(self) -> None:
        """Release resources held by the connector (no-op by default)."""
        return None
