"""AI assistant settings (single row, read by the responder) and knowledge base files."""

import logging
from typing import Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_assistant
from app.database import get_db
from app.middleware.auth import require_operator
from app.models.ai_assistant import AI_ASSISTANT_ID, AiAssistant
from app.schemas.ai_assistant import (
    AiAssistantResponse,
    AiAssistantUpdate,
    OkResponse,
    VectorStoreFileDelete,
    VectorStoreFileList,
    VectorStoreFileUploaded,
)
from app.services.assistant import AssistantError, AssistantResponder, mask_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai-assistant", tags=["ai-assistant"], dependencies=[Depends(require_operator)])

_TEXT_FIELDS = ("assistant_id", "model", "vector_store_id", "instructions", "escalation_prompt")

MAX_UPLOAD_BYTES = 512 * 1024 * 1024

PROVIDER_ERRORS = (httpx.HTTPError, AssistantError)


def _to_response(record: Optional[AiAssistant]) -> AiAssistantResponse:
    if record is None:
        return AiAssistantResponse()
    return AiAssistantResponse(
        enabled=bool(record.enabled),
        has_api_key=bool(record.api_key),
        api_key_masked=mask_api_key(record.api_key),
        assistant_id=record.assistant_id,
        model=record.model,
        vector_store_id=record.vector_store_id,
        instructions=record.instructions,
        escalation_prompt=record.escalation_prompt,
        updated_at=record.updated_at,
    )


async def _get_record(db: AsyncSession) -> Optional[AiAssistant]:
    result = await db.execute(select(AiAssistant).where(AiAssistant.id == AI_ASSISTANT_ID))
    return result.scalar_one_or_none()


@router.get("", response_model=AiAssistantResponse)
async def get_ai_assistant(db: AsyncSession = Depends(get_db)):
    return _to_response(await _get_record(db))


@router.put("", response_model=AiAssistantResponse)
async def update_ai_assistant(payload: AiAssistantUpdate, db: AsyncSession = Depends(get_db)):
    """
    Partial update. The API key is never returned in full.

    An empty string clears a text field; an empty body is rejected.
    """
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")

    record = await _get_record(db)
    if record is None:
        record = AiAssistant(id=AI_ASSISTANT_ID, enabled=False)
        db.add(record)

    if "enabled" in changes and changes["enabled"] is not None:
        record.enabled = bool(changes["enabled"])
    if "api_key" in changes:
        api_key = (changes["api_key"] or "").strip()
        record.api_key = api_key or None
    for name in _TEXT_FIELDS:
        if name in changes:
            value = (changes[name] or "").strip()
            setattr(record, name, value or None)

    await db.commit()
    await db.refresh(record)
    logger.info("AI assistant settings updated: %s", ", ".join(sorted(changes)))
    return _to_response(record)


# ---------------------------------------------------------------------------
# Knowledge base files
# ---------------------------------------------------------------------------


async def _vector_store_keys(db: AsyncSession) -> Tuple[str, str]:
    record = await _get_record(db)
    if record is None or not record.api_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="API-ключ OpenAI не задан")
    if not record.vector_store_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Vector Store ID не задан")
    return record.api_key, record.vector_store_id


def _provider_failure(action: str, exc: Exception) -> HTTPException:
    logger.warning("OpenAI %s failed: %s", action, exc)
    detail = f"OpenAI error: {exc}"
    if isinstance(exc, httpx.HTTPStatusError):
        detail = f"OpenAI error {exc.response.status_code}: {exc.response.text[:300]}"
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


@router.get("/files", response_model=VectorStoreFileList)
async def list_knowledge_files(
    db: AsyncSession = Depends(get_db),
    assistant: AssistantResponder = Depends(get_assistant),
):
    api_key, vector_store_id = await _vector_store_keys(db)
    try:
        files = await assistant.list_vector_store_files(api_key, vector_store_id)
    except PROVIDER_ERRORS as exc:
        raise _provider_failure("list files", exc) from exc
    return VectorStoreFileList(files=files)


@router.post("/files", response_model=VectorStoreFileUploaded)
async def upload_knowledge_file(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    assistant: AssistantResponder = Depends(get_assistant),
):
    """Загрузить файл в OpenAI Files и подключить его к vector store ассистента."""
    api_key, vector_store_id = await _vector_store_keys(db)
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Файл пустой")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Файл больше 512MB")

    try:
        file_id = await assistant.upload_vector_store_file(
            api_key,
            vector_store_id,
            file.filename or "file",
            content,
            file.content_type,
        )
    except PROVIDER_ERRORS as exc:
        raise _provider_failure("upload file", exc) from exc
    return VectorStoreFileUploaded(file_id=file_id)


@router.delete("/files", response_model=OkResponse)
async def delete_knowledge_file(
    payload: VectorStoreFileDelete,
    db: AsyncSession = Depends(get_db),
    assistant: AssistantResponder = Depends(get_assistant),
):
    api_key, vector_store_id = await _vector_store_keys(db)
    try:
        await assistant.delete_vector_store_file(api_key, vector_store_id, payload.file_id.strip())
    except PROVIDER_ERRORS as exc:
        raise _provider_failure("delete file", exc) from exc
    return OkResponse()
