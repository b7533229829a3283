"""External bot reply schemas"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class ReplyAction(BaseModel):
    type: Literal["reply"]
    text: str = Field(..., min_length=1, max_length=4000)
    send_to_customer: bool = False


class EscalateAction(BaseModel):
    type: Literal["escalate"]
    reason: Optional[str] = None


class NoopAction(BaseModel):
    type: Literal["noop"]


BotAction = Union[ReplyAction, EscalateAction, NoopAction]


class BotReplyRequest(BaseModel):
    """Decision of the external bot for one chat"""

    avito_chat_id: str = Field(..., min_length=1)
    actions: List[BotAction] = Field(default_factory=list)


class BotReplyResponse(BaseModel):
    ok: bool = True
    chat_id: int
    replies: int = 0
    escalated: bool = False
    avito_read_error: Optional[str] = None
