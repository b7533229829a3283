"""Append-only log of received provider webhooks (diagnostics only)."""

from sqlalchemy import Column, DateTime, Integer, String, JSON, Index, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base

SOURCE_AVITO = "AVITO"


class WebhookEvent(Base):
    """One received webhook. Duplicate (source, event_id) inserts are skipped; NULL event_id always inserts."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), nullable=False, default=SOURCE_AVITO)
    event_id = Column(String(255), nullable=True)
    type = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("source", "event_id", name="uq_webhook_source_event"),
        Index("idx_webhook_events_received", "received_at"),
    )

    def __repr__(self):
        return f"<WebhookEvent(source='{self.source}', event_id='{self.event_id}', type='{self.type}')>"
