"""Singleton integration state: Avito OAuth token and webhook subscription."""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base

INTEGRATION_STATE_ID = 1


class IntegrationState(Base):
    """Row id=1 holds the cached access token (refreshed lazily, cleared on 401)."""

    __tablename__ = "integration_state"

    id = Column(Integer, primary_key=True)

    access_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Webhook subscription state (Avito has no reliable GET for it)
    webhook_url = Column(String(1000), nullable=True)
    webhook_subscription_id = Column(String(255), nullable=True)
    webhook_subscribed_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<IntegrationState(id={self.id}, expires_at={self.expires_at})>"
