"""Webhook subscription schemas"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class SubscriptionDiagnostics(BaseModel):
    public_base_url: Optional[str] = None
    has_avito_credentials: bool = False
    ai_enabled: bool = False
    ai_configured: bool = False
    issues: List[str] = Field(default_factory=list)
    healthy: bool = False


class SubscriptionStatusResponse(BaseModel):
    ok: bool = True
    mock: bool = False
    subscribed: bool = False
    webhook_url: Optional[str] = None
    subscribed_at: Optional[datetime] = None
    diagnostics: SubscriptionDiagnostics


class SubscribeResponse(BaseModel):
    ok: bool = True
    webhook_url: str
    subscription_id: Optional[str] = None
    subscription: Any = None
