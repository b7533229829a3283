"""AI assistant settings (singleton row id=1)."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base

AI_ASSISTANT_ID = 1


class AiAssistant(Base):
    """Configuration read by the responder; written only via /api/ai-assistant."""

    __tablename__ = "ai_assistant"

    id = Column(Integer, primary_key=True)
    enabled = Column(Boolean, default=False, nullable=False)
    api_key = Column(Text, nullable=True)
    assistant_id = Column(String(255), nullable=True)
    model = Column(String(100), nullable=True)
    vector_store_id = Column(String(255), nullable=True)
    instructions = Column(Text, nullable=True)
    escalation_prompt = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<AiAssistant(enabled={self.enabled}, assistant_id='{self.assistant_id}')>"
