"""
Authentication dependencies for FastAPI.

Static shared tokens, compared in constant time:
- require_operator: CRM_TOKEN via ``Authorization: Bearer`` or ``?token=``
  (EventSource cannot send headers, hence the query fallback)
- require_dev: DEV_TOKEN via ``X-Dev-Token`` or ``?token=``; the dev routes
  do not exist (404) outside ENVIRONMENT=development
- require_bot: CRM_BOT_TOKEN via ``X-CRM-Bot-Token`` or ``?token=``
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def tokens_match(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Operator access to /api/* and /events.

    Usage:
        @router.get("/chats", dependencies=[Depends(require_operator)])

    Raises:
        HTTPException 401: If token missing or wrong
    """
    provided = credentials.credentials if credentials else token
    if not tokens_match(provided, settings.CRM_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_dev(
    x_dev_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.is_development:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not tokens_match(x_dev_token or token, settings.DEV_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid dev token")


async def require_bot(
    x_crm_bot_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """External bot callback. Without a configured token it is open, except in production."""
    if not settings.CRM_BOT_TOKEN:
        if settings.is_production:
            logger.warning("CRM_BOT_TOKEN is not configured, rejecting bot reply")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bot token not configured")
        return
    if not tokens_match(x_crm_bot_token or token, settings.CRM_BOT_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bot token")
