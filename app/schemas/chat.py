"""Chat / message schemas for the operator API"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChatResponse(BaseModel):
    """Chat card as shown in the queue"""

    id: int
    avito_chat_id: Optional[str]
    status: str
    pinned: bool
    customer_name: Optional[str]
    item_title: Optional[str]
    price: Optional[int]
    ad_url: Optional[str]
    chat_url: Optional[str]
    last_message_at: Optional[datetime]
    last_message_text: Optional[str]
    unread_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("last_message_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc(v)

    class Config:
        from_attributes = True


class ChatDetailResponse(ChatResponse):
    raw: Optional[Dict[str, Any]] = None


class ChatListResponse(BaseModel):
    chats: List[ChatResponse]
    total: int


class MessageResponse(BaseModel):
    id: int
    chat_id: int
    avito_message_id: str
    direction: str
    text: str
    is_read: bool
    sent_at: datetime

    @field_validator("sent_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _utc(v)

    class Config:
        from_attributes = True


class MessageListResponse(BaseModel):
    chat_id: int
    messages: List[MessageResponse]
    needs_refresh: bool = False
    refreshed: bool = False
    refresh_error: Optional[str] = None
    history_synced_at: Optional[str] = None


class SendMessageRequest(BaseModel):
    text: str = Field(..., max_length=4000)
    mark_read: bool = True


class SendMessageResponse(BaseModel):
    ok: bool = True
    message: MessageResponse


class PinRequest(BaseModel):
    pinned: Optional[bool] = None


class ChatActionResponse(BaseModel):
    ok: bool = True
    chat: ChatResponse
    avito_error: Optional[str] = None


SortField = Literal["last_message_at", "price"]
SortOrder = Literal["asc", "desc"]
