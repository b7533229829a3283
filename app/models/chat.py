"""Chat model - диалоги с покупателями Авито"""

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base

STATUS_BOT = "BOT"
STATUS_MANAGER = "MANAGER"
CHAT_STATUSES = (STATUS_BOT, STATUS_MANAGER)

# Fields filled in by webhook hints / enrichment; never regressed to NULL.
ENRICHMENT_FIELDS = ("customer_name", "item_title", "ad_url", "chat_url")


class Chat(Base):
    """Chat model - один диалог в мессенджере Авито (очередь BOT или MANAGER)"""

    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)

    # External identity (unique, immutable once set; NULL only for seeded fixtures)
    avito_chat_id = Column(String(255), nullable=True, unique=True)
    account_id = Column(BigInteger, nullable=True)

    # Queue
    status = Column(String(20), default=STATUS_BOT, nullable=False)  # 'BOT' or 'MANAGER'
    pinned = Column(Boolean, default=False, nullable=False)

    # Enrichment (monotonic fill)
    customer_name = Column(String(255), nullable=True)
    item_title = Column(String(500), nullable=True)
    price = Column(BigInteger, nullable=True)  # RUB, real estate exceeds int32
    ad_url = Column(String(1000), nullable=True)
    chat_url = Column(String(1000), nullable=True)

    # Denormalized preview
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    last_message_text = Column(Text, nullable=True)

    # Cache of count(IN & unread) - always recomputed, never trusted alone
    unread_count = Column(Integer, default=0, nullable=False)

    # Side-store: webhook bookkeeping, thread handle, enrichment provenance, escalation
    raw = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", order_by="Message.sent_at")

    __table_args__ = (
        Index("idx_chats_status_last", "status", "pinned", "last_message_at"),
        Index("idx_chats_unread", "unread_count"),
    )

    def raw_dict(self) -> dict:
        """Copy of ``raw`` safe to mutate and assign back."""
        return dict(self.raw) if isinstance(self.raw, dict) else {}

    def __repr__(self):
        return f"<Chat(id={self.id}, avito_chat_id='{self.avito_chat_id}', status='{self.status}')>"
