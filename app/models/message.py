"""Message model - сообщения в чатах"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"


class Message(Base):
    """Message model - сообщение в чате (IN от покупателя, OUT от бота/менеджера)"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)

    # External ID (dedup key together with chat_id)
    avito_message_id = Column(String(255), nullable=False)

    direction = Column(String(10), nullable=False)  # 'IN' or 'OUT'
    text = Column(Text, default="", nullable=False)

    # OUT is always read; IN starts unread
    is_read = Column(Boolean, default=False, nullable=False)

    # Provider timestamp, or receipt time
    sent_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Original payload for forensic replay
    raw = Column(JSON, nullable=True)

    # Relationships
    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("chat_id", "avito_message_id", name="uq_message_chat_avito"),
        Index("idx_messages_chat_sent", "chat_id", "sent_at"),
        Index("idx_messages_unread", "chat_id", "direction", "is_read"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, chat_id={self.chat_id}, direction='{self.direction}', is_read={self.is_read})>"
