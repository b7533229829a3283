"""Dev tooling schemas"""

from typing import Optional

from pydantic import BaseModel, Field


class DevIncomingRequest(BaseModel):
    """Simulated inbound customer message (by local chat id or Avito chat id)"""

    chat_id: Optional[int] = None
    avito_chat_id: Optional[str] = Field(None, max_length=255)
    text: str = Field(..., min_length=1, max_length=4000)
    customer_name: Optional[str] = Field(None, max_length=255)
    item_title: Optional[str] = Field(None, max_length=500)
    price: Optional[int] = None


class DevIncomingResponse(BaseModel):
    ok: bool = True
    chat_id: int
    avito_chat_id: Optional[str] = None
    message_id: int
    bot_message_id: Optional[int] = None
    decision: Optional[str] = None


class DevSeedResponse(BaseModel):
    ok: bool = True
    created_chats: int
    created_messages: int


class DevWhoamiResponse(BaseModel):
    ok: bool = True
    environment: str
    mock_mode: bool
    dev_token_len: int
    dev_token_sample: Optional[str] = None
