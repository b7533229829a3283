"""
AI assistant for automatic replies in BOT chats.

Talks to an OpenAI-compatible REST API with httpx. Two modes, chosen by the
``ai_assistant`` settings row:

1. ``assistant_id`` set: Assistants API (thread per chat, stored in
   ``chat.raw.openaiThreadId``; new threads get the vector store and the recent
   history; the run is polled until it finishes)
2. otherwise: Chat Completions with the last messages as context

The reply may end with ``[ESCALATE]``, meaning "hand the chat to a manager".
Any failure yields ``None``; the caller then simply does not answer.

The same client manages the knowledge base: files of the configured vector store.
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from sqlalchemy import select

from app.config import get_settings
from app.database import AsyncSessionLocal
from app.models.ai_assistant import AI_ASSISTANT_ID, AiAssistant
from app.models.chat import Chat
from app.models.message import DIRECTION_IN, Message
from app.services.chat_store import get_chat

logger = logging.getLogger(__name__)
settings = get_settings()

ESCALATE_MARKER = "[ESCALATE]"
MAX_HISTORY_MESSAGES = 20

ESCALATE_INSTRUCTION = (
    "## Передача менеджеру\n\n"
    "Если клиент просит живого человека или менеджера, если вопрос требует действий менеджера "
    "(возврат, компенсация, изменение заказа), если клиент недоволен или если ты не уверен в ответе, "
    "то коротко и вежливо сообщи, что передаёшь диалог менеджеру, и закончи сообщение "
    f"маркером {ESCALATE_MARKER} на отдельной строке.\n"
    f"Не добавляй {ESCALATE_MARKER}, если уверенно ответил на вопрос сам."
)

KNOWLEDGE_BASE_INSTRUCTION = (
    "## База знаний\n\n"
    "Для каждого вопроса клиента выполняй поиск по файлам (file_search) и учитывай всю историю диалога. "
    "Если в базе знаний нет ответа, передай диалог менеджеру."
)

DIALOG_INSTRUCTION = (
    "## Контекст диалога\n\n"
    "Учитывай всю историю переписки: что клиент уже спрашивал и что ему уже ответили."
)

_ANNOTATION_RE = re.compile(r"【[^】]*†[^】]*】")
_MULTISPACE_RE = re.compile(r"[ \t]{2,}")

_TERMINAL_RUN_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete", "requires_action"}

_shared_client: Optional[httpx.AsyncClient] = None
_client_loop: Optional[asyncio.AbstractEventLoop] = None


def _get_shared_client() -> httpx.AsyncClient:
    """Module-level client; recreated when the event loop changes (Celery run_async)."""
    global _shared_client, _client_loop
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        current_loop = None

    needs_new = (
        _shared_client is None
        or _shared_client.is_closed
        or (current_loop is not None and current_loop is not _client_loop)
    )
    if needs_new:
        _shared_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5, keepalive_expiry=120),
        )
        _client_loop = current_loop
    return _shared_client


async def close_shared_client() -> None:
    global _shared_client
    if _shared_client is not None and not _shared_client.is_closed:
        await _shared_client.aclose()
    _shared_client = None


class AssistantError(Exception):
    """Unexpected response from the LLM API."""


def strip_annotations(text: str) -> str:
    """Remove file_search citations like 【4:0†source】."""
    cleaned = _ANNOTATION_RE.sub("", text or "")
    return _MULTISPACE_RE.sub(" ", cleaned).strip()


def has_escalation(reply: Optional[str]) -> bool:
    return bool(reply) and ESCALATE_MARKER in reply


def build_chat_context(chat: Chat) -> Optional[str]:
    """Имя клиента, товар и цена для персонализации ответа."""
    parts = []
    if chat.customer_name:
        parts.append(f"Имя клиента: {chat.customer_name}")
    if chat.item_title:
        parts.append(f"Товар/объявление: {chat.item_title}")
    if chat.price:
        parts.append(f"Цена: {chat.price} ₽")
    if not parts:
        return None
    return "## Контекст текущего чата\n\n" + "\n".join(parts)


def select_history(messages: List[Message], incoming_text: str) -> List[Message]:
    """Non-empty messages, without the trailing IN that is the message being answered."""
    history = list(messages)
    if history and history[-1].direction == DIRECTION_IN and (history[-1].text or "").strip() == incoming_text.strip():
        history = history[:-1]
    return [m for m in history if (m.text or "").strip()]


def _role(message: Message) -> str:
    return "user" if message.direction == DIRECTION_IN else "assistant"


class AssistantResponder:
    """Produces a reply for an incoming customer message, or None."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        run_timeout: Optional[float] = None,
        poll_interval: float = 1.0,
        session_factory=None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.default_model = default_model or settings.OPENAI_DEFAULT_MODEL
        self.run_timeout = run_timeout if run_timeout is not None else settings.OPENAI_RUN_TIMEOUT_SECONDS
        self.poll_interval = poll_interval
        self._session_factory = session_factory or AsyncSessionLocal
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or _get_shared_client()

    async def get_reply(self, chat_id: int, text: str) -> Optional[str]:
        try:
            return await self._get_reply(chat_id, text)
        except Exception as exc:
            logger.warning("AI reply failed for chat %s: %s", chat_id, exc, exc_info=True)
            return None

    async def _load(self, chat_id: int):
        async with self._session_factory() as db:
            config = await db.get(AiAssistant, AI_ASSISTANT_ID)
            chat = await db.get(Chat, chat_id)
            if chat is None:
                return config, None, []
            result = await db.execute(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.sent_at.desc(), Message.id.desc())
                .limit(MAX_HISTORY_MESSAGES + 1)
            )
            messages = list(reversed(result.scalars().all()))
            return config, chat, messages

    async def _get_reply(self, chat_id: int, text: str) -> Optional[str]:
        if not (text or "").strip():
            return None
        config, chat, messages = await self._load(chat_id)
        if config is None or not config.enabled or not config.api_key:
            logger.info("AI skip for chat %s: assistant disabled or API key missing", chat_id)
            return None
        if chat is None:
            return None

        history = select_history(messages, text)[-MAX_HISTORY_MESSAGES:]
        instructions = self._additional_instructions(config, chat)

        if config.assistant_id:
            reply = await self._assistants_reply(config, chat, history, text, instructions)
        else:
            reply = await self._completion_reply(config, history, text, instructions)

        reply = strip_annotations(reply) if reply else None
        if reply:
            logger.info("AI reply for chat %s: %s", chat_id, reply[:100])
        return reply or None

    def _additional_instructions(self, config: AiAssistant, chat: Chat) -> str:
        parts = []
        context = build_chat_context(chat)
        if context:
            parts.append(context)
        parts.append(KNOWLEDGE_BASE_INSTRUCTION if config.vector_store_id else DIALOG_INSTRUCTION)
        parts.append((config.escalation_prompt or "").strip() or ESCALATE_INSTRUCTION)
        return "\n\n".join(parts)

    async def _api(
        self,
        method: str,
        path: str,
        api_key: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        beta: bool = False,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {api_key}"}
        if beta:
            headers["OpenAI-Beta"] = "assistants=v2"
        response = await self._client().request(
            method,
            f"{self.base_url}{path}",
            json=json,
            params=params,
            headers=headers,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise AssistantError(f"Unexpected response from {path}")
        return data

    async def _completion_reply(
        self,
        config: AiAssistant,
        history: List[Message],
        text: str,
        instructions: str,
    ) -> Optional[str]:
        system = "\n\n".join(p for p in ((config.instructions or "").strip(), instructions) if p)
        payload = {
            "model": config.model or self.default_model,
            "messages": [
                {"role": "system", "content": system},
                *({"role": _role(m), "content": m.text} for m in history),
                {"role": "user", "content": text},
            ],
            "temperature": 0.3,
        }
        data = await self._api("POST", "/chat/completions", config.api_key, json=payload)
        choices = data.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("message") or {}).get("content")

    async def _ensure_thread(self, config: AiAssistant, chat: Chat, history: List[Message]) -> str:
        thread_id = chat.raw_dict().get("openaiThreadId")
        if thread_id:
            return thread_id

        params: Dict[str, Any] = {}
        if config.vector_store_id:
            params["tool_resources"] = {"file_search": {"vector_store_ids": [config.vector_store_id]}}
        thread = await self._api("POST", "/threads", config.api_key, json=params, beta=True)
        thread_id = thread.get("id")
        if not thread_id:
            raise AssistantError("Thread id missing in response")
        logger.info("Created OpenAI thread %s for chat %s", thread_id, chat.id)

        async with self._session_factory() as db:
            row = await get_chat(db, chat.id, for_update=True)
            if row is not None:
                raw = row.raw_dict()
                stored = raw.get("openaiThreadId")
                if stored:
                    # a concurrent reply already bound a thread
                    logger.info("Chat %s already has thread %s, dropping %s", chat.id, stored, thread_id)
                    return stored
                raw["openaiThreadId"] = thread_id
                row.raw = raw
                await db.commit()

        for message in history:
            await self._api(
                "POST",
                f"/threads/{thread_id}/messages",
                config.api_key,
                json={"role": _role(message), "content": message.text},
                beta=True,
            )
        return thread_id

    async def _assistants_reply(
        self,
        config: AiAssistant,
        chat: Chat,
        history: List[Message],
        text: str,
        instructions: str,
    ) -> Optional[str]:
        thread_id = await self._ensure_thread(config, chat, history)
        await self._api(
            "POST",
            f"/threads/{thread_id}/messages",
            config.api_key,
            json={"role": "user", "content": text},
            beta=True,
        )

        run_params: Dict[str, Any] = {
            "assistant_id": config.assistant_id,
            "additional_instructions": instructions,
        }
        if config.model:
            run_params["model"] = config.model
        if config.vector_store_id:
            run_params["tools"] = [{"type": "file_search"}]

        run = await self._api("POST", f"/threads/{thread_id}/runs", config.api_key, json=run_params, beta=True)
        run = await self._poll_run(config.api_key, thread_id, run)
        if run.get("status") != "completed":
            logger.warning("OpenAI run %s finished with status %s: %s", run.get("id"), run.get("status"), run.get("last_error"))
            return None

        listing = await self._api(
            "GET",
            f"/threads/{thread_id}/messages",
            config.api_key,
            params={"order": "desc", "limit": 1},
            beta=True,
        )
        data = listing.get("data") or []
        if not data or data[0].get("role") != "assistant":
            return None
        for block in data[0].get("content") or []:
            if block.get("type") == "text":
                return ((block.get("text") or {}).get("value")) or None
        return None

    async def _poll_run(self, api_key: str, thread_id: str, run: Dict[str, Any]) -> Dict[str, Any]:
        run_id = run.get("id")
        deadline = time.monotonic() + self.run_timeout
        while run.get("status") not in _TERMINAL_RUN_STATUSES:
            if time.monotonic() >= deadline:
                logger.warning("OpenAI run %s timed out after %.0fs", run_id, self.run_timeout)
                try:
                    await self._api("POST", f"/threads/{thread_id}/runs/{run_id}/cancel", api_key, beta=True)
                except httpx.HTTPError as exc:
                    logger.debug("Run cancel failed: %s", exc)
                return {**run, "status": "timeout"}
            await asyncio.sleep(self.poll_interval)
            run = await self._api("GET", f"/threads/{thread_id}/runs/{run_id}", api_key, beta=True)
        return run

    # ------------------------------------------------------------------
    # База знаний: файлы vector store
    # ------------------------------------------------------------------

    async def list_vector_store_files(self, api_key: str, vector_store_id: str) -> List[Dict[str, Any]]:
        """Файлы vector store с именем и размером из ``/files/{id}`` (если он доступен)."""
        files: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"limit": 100}
        while True:
            page = await self._api("GET", f"/vector_stores/{vector_store_id}/files", api_key, params=params, beta=True)
            for entry in page.get("data") or []:
                if not isinstance(entry, dict) or not entry.get("id"):
                    continue
                filename = size = None
                try:
                    info = await self._api("GET", f"/files/{entry['id']}", api_key)
                    filename, size = info.get("filename"), info.get("bytes")
                except (httpx.HTTPError, AssistantError) as exc:
                    logger.debug("File info for %s unavailable: %s", entry["id"], exc)
                files.append({
                    "id": entry["id"],
                    "status": entry.get("status"),
                    "created_at": entry.get("created_at"),
                    "vector_store_id": entry.get("vector_store_id") or vector_store_id,
                    "filename": filename,
                    "bytes": size,
                })
            if not page.get("has_more") or not page.get("last_id"):
                return files
            params = {"limit": 100, "after": page["last_id"]}

    async def upload_vector_store_file(
        self,
        api_key: str,
        vector_store_id: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """Upload to ``/files`` (purpose=assistants) and attach to the vector store. Returns the file id."""
        response = await self._client().post(
            f"{self.base_url}/files",
            headers={"Authorization": f"Bearer {api_key}"},
            data={"purpose": "assistants"},
            files={"file": (filename, content, content_type or "application/octet-stream")},
        )
        response.raise_for_status()
        uploaded = response.json()
        file_id = uploaded.get("id") if isinstance(uploaded, dict) else None
        if not file_id:
            raise AssistantError("File id missing in upload response")

        await self._api(
            "POST",
            f"/vector_stores/{vector_store_id}/files",
            api_key,
            json={"file_id": file_id},
            beta=True,
        )
        logger.info("Uploaded %s (%s bytes) to vector store %s as %s", filename, len(content), vector_store_id, file_id)
        return file_id

    async def delete_vector_store_file(self, api_key: str, vector_store_id: str, file_id: str) -> None:
        """Detach from the vector store, then delete the file itself (a missing file is fine)."""
        segment = quote(file_id, safe="")
        await self._api("DELETE", f"/vector_stores/{vector_store_id}/files/{segment}", api_key, beta=True)
        try:
            await self._api("DELETE", f"/files/{segment}", api_key)
        except (httpx.HTTPError, AssistantError) as exc:
            logger.info("File %s not deleted from /files: %s", file_id, exc)
        logger.info("Removed file %s from vector store %s", file_id, vector_store_id)


def mask_api_key(key: Optional[str]) -> Optional[str]:
    """``sk-...abcd`` for display; short keys are fully hidden."""
    if not key:
        return None
    if len(key) <= 8:
        return "***"
    return f"{key[:3]}...{key[-4:]}"
