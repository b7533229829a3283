"""AI assistant settings schemas"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class AiAssistantResponse(BaseModel):
    enabled: bool = False
    has_api_key: bool = False
    api_key_masked: Optional[str] = None
    assistant_id: Optional[str] = None
    model: Optional[str] = None
    vector_store_id: Optional[str] = None
    instructions: Optional[str] = None
    escalation_prompt: Optional[str] = None
    updated_at: Optional[datetime] = None


class AiAssistantUpdate(BaseModel):
    """Partial update; an empty string clears a text field"""

    enabled: Optional[bool] = None
    api_key: Optional[str] = Field(None, max_length=500)
    assistant_id: Optional[str] = Field(None, max_length=255)
    model: Optional[str] = Field(None, max_length=100)
    vector_store_id: Optional[str] = Field(None, max_length=255)
    instructions: Optional[str] = Field(None, max_length=32000)
    escalation_prompt: Optional[str] = Field(None, max_length=8000)


class VectorStoreFile(BaseModel):
    id: str
    status: Optional[str] = None
    created_at: Optional[int] = None
    vector_store_id: Optional[str] = None
    filename: Optional[str] = None
    bytes: Optional[int] = None


class VectorStoreFileList(BaseModel):
    ok: bool = True
    files: List[VectorStoreFile] = []


class VectorStoreFileUploaded(BaseModel):
    ok: bool = True
    file_id: str


class VectorStoreFileDelete(BaseModel):
    file_id: str = Field(..., min_length=1, max_length=255)


class OkResponse(BaseModel):
    ok: bool = True
