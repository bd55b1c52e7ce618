"""Conversation state and the generation lifecycle.

``SessionStore`` is the only owner of conversation state. Every transition
replaces the affected ``Conversation`` with a fresh copy, so snapshots handed
to the persistence bridge or to API responses are never mutated afterwards.

Message lifecycle::

    pending -> streaming -> finalized   (completion)
                         -> stopped     (stop(); marker appended)
                         -> removed     (stream failure; error surfaced)

At most one generation runs per conversation. Starting another while one is
live raises ``GenerationInProgressError`` before any state changes.
"""

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path

import structlog

from chatdesk.core.cancellation import CancelToken
from chatdesk.core.exceptions import AttachmentError, ChatDeskError, GenerationInProgressError, NotFoundError
from chatdesk.schemas.chat import ChatCompletionRequest, ChatMessage, Usage
from chatdesk.schemas.content import FileAttachment, MessageContent, TextBlock, extract_text, sanitize_content
from chatdesk.schemas.conversations import Conversation, GenerationOptions, Message, new_message_id, utcnow
from chatdesk.services.assets import AssetStore
from chatdesk.services.attachments import (
    UploadedFile,
    asset_filename,
    build_content,
    encode,
    encode_all,
    preview_data_uri,
    validate_files,
)
from chatdesk.services.catalog import ModelCatalog
from chatdesk.services.context import prepare_context
from chatdesk.services.dispatcher import StreamingDispatcher
from chatdesk.services.inference.base import (
    ContentDelta,
    ReasoningDelta,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
)
from chatdesk.services.persistence import PersistenceBridge
from chatdesk.services.pricing import cost
from chatdesk.services.tokens import estimate_message_tokens

logger = structlog.get_logger()

STOP_MARKER = "\n\n*[Generation stopped]*"

SessionListener = Callable[[str, StreamEvent], None]


def _attachments_of(messages: list[Message]) -> list[FileAttachment]:
    return [a for m in messages for a in m.attachments or []]


@dataclass
class _Generation:
    """Live handle for the one in-flight generation of a conversation."""

    token: CancelToken
    message_id: str | None = None


class SessionStore:
    def __init__(
        self,
        dispatcher: StreamingDispatcher,
        bridge: PersistenceBridge,
        assets: AssetStore,
        catalog: ModelCatalog | None = None,
        *,
        system_prompt: str = "",
        max_context_messages: int = 20,
        max_attachment_messages: int = 5,
        default_temperature: float = 0.7,
        default_max_tokens: int = 4000,
        selected_model: str | None = None,
    ):
        self._dispatcher = dispatcher
        self._bridge = bridge
        self._assets = assets
        self._catalog = catalog or ModelCatalog()
        self._system_prompt = system_prompt
        self._max_context_messages = max_context_messages
        self._max_attachment_messages = max_attachment_messages
        self._default_temperature = default_temperature
        self._default_max_tokens = default_max_tokens

        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        self._error: str | None = None
        self._generations: dict[str, _Generation] = {}
        self._listeners: list[SessionListener] = []
        self._tasks: set[asyncio.Task] = set()
        self.selected_model = selected_model

    # ── Read API ─────────────────────────────────────────────────────────────

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_id

    @property
    def is_loading(self) -> bool:
        return bool(self._generations)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def generating(self) -> list[str]:
        return list(self._generations)

    @property
    def bridge(self) -> PersistenceBridge:
        return self._bridge

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    def get(self, conversation_id: str) -> Conversation | None:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def require(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        return conv

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._generations

    def ensure_idle(self, conversation_id: str) -> None:
        if conversation_id in self._generations:
            raise GenerationInProgressError(details={"conversation_id": conversation_id})

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Receive every applied stream event; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run an operation in the background, keeping a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error("background_operation_failed", error=str(exc), error_type=type(exc).__name__)
            if isinstance(exc, ChatDeskError):
                self._error = exc.message

    async def wait_idle(self) -> None:
        """Wait for every spawned operation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── State transitions ────────────────────────────────────────────────────

    def _replace(self, conversation_id: str, **update) -> Conversation | None:
        """Swap in a copy of the conversation with ``update`` applied and a fresh ``updated_at``."""
        for i, conv in enumerate(self._conversations):
            if conv.id == conversation_id:
                update["updated_at"] = max(utcnow(), conv.updated_at)
                new = conv.model_copy(update=update)
                self._conversations[i] = new
                self._bridge.mark_dirty(conversation_id)
                return new
        return None

    def _replace_message(self, conversation_id: str, message_id: str, **update) -> Message | None:
        conv = self.get(conversation_id)
        if conv is None:
            return None
        i = conv.index_of(message_id)
        if i < 0:
            return None
        updated = conv.messages[i].model_copy(update=update)
        messages = list(conv.messages)
        messages[i] = updated
        self._replace(conversation_id, messages=messages)
        return updated

    async def _checkpoint(self, conversation_id: str) -> None:
        conv = self.get(conversation_id)
        if conv is not None:
            await self._bridge.flush_one(conv)

    # ── Conversation operations ──────────────────────────────────────────────

    def create_conversation(self, title: str = "New Chat", project_id: str | None = None) -> Conversation:
        conv = Conversation(title=title.strip() or "New Chat", project_id=project_id)
        self._conversations.insert(0, conv)
        self._active_id = conv.id
        self._bridge.mark_dirty(conv.id)
        logger.info("conversation_created", conversation_id=conv.id)
        return conv

    def set_active(self, conversation_id: str | None) -> None:
        if conversation_id is not None and self.get(conversation_id) is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="set_active")
            return
        self._active_id = conversation_id

    def rename(self, conversation_id: str, title: str) -> Conversation | None:
        if not title.strip():
            logger.warning("rename_rejected", conversation_id=conversation_id, reason="empty title")
            return self.get(conversation_id)
        conv = self._replace(conversation_id, title=title.strip())
        if conv is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="rename")
        return conv

    def toggle_star(self, conversation_id: str) -> Conversation | None:
        conv = self.get(conversation_id)
        if conv is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="toggle_star")
            return None
        return self._replace(conversation_id, starred=not conv.starred)

    async def delete_conversation(self, conversation_id: str) -> None:
        conv = self.get(conversation_id)
        if conv is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="delete")
            return

        self.stop(conversation_id)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        if self._active_id == conversation_id:
            self._active_id = None

        try:
            await self._bridge.delete(conversation_id, conv.project_id)
        except ChatDeskError:
            logger.exception("conversation_delete_failed", conversation_id=conversation_id)
        try:
            await self._assets.delete_all(conversation_id)
        except OSError:
            logger.exception("asset_cleanup_failed", conversation_id=conversation_id)

    async def load_from_disk(self) -> list[Conversation]:
        """Replace in-memory conversations with the stored ones."""
        loaded = await self._bridge.repository.load_all()
        conversations = []
        for conv in loaded:
            if any(m.is_streaming for m in conv.messages):
                # Left mid-generation by a previous process
                messages = [
                    m.model_copy(update={"content": extract_text(m.content) + STOP_MARKER, "status": "stopped"})
                    if m.is_streaming
                    else m
                    for m in conv.messages
                ]
                conv = conv.model_copy(update={"messages": messages})
                self._bridge.mark_dirty(conv.id)
                logger.info("interrupted_generation_recovered", conversation_id=conv.id)
            conversations.append(conv)
        self._conversations = conversations
        if self._active_id is not None and self.get(self._active_id) is None:
            self._active_id = None
        return self.conversations

    def clear_error(self) -> None:
        self._error = None

    async def export_conversation(self, conversation_id: str, format: str = "json") -> Path | None:
        conv = self.require(conversation_id)
        return await self._bridge.repository.export(conv, format)

    async def load_attachment_preview(self, conversation_id: str, message_id: str, index: int) -> str | None:
        """Rebuild the preview data URI of an attachment from its stored bytes."""
        conv = self.require(conversation_id)
        i = conv.index_of(message_id)
        if i < 0:
            raise NotFoundError(f"Message {message_id} not found.")
        attachments = conv.messages[i].attachments or []
        if not 0 <= index < len(attachments):
            raise NotFoundError(f"Attachment {index} not found on message {message_id}.")

        attachment = attachments[index]
        data = await self._assets.load(conversation_id, attachment.path)
        preview = preview_data_uri(attachment.mime_type, data)

        # The message may have changed while the file was read
        conv = self.get(conversation_id)
        if conv is not None and (i := conv.index_of(message_id)) >= 0:
            current = list(conv.messages[i].attachments or [])
            if index < len(current) and current[index].path == attachment.path:
                current[index] = current[index].model_copy(update={"preview": preview})
                messages = list(conv.messages)
                messages[i] = messages[i].model_copy(update={"attachments": current})
                # preview is never persisted, so no dirty mark
                for j, c in enumerate(self._conversations):
                    if c.id == conversation_id:
                        self._conversations[j] = c.model_copy(update={"messages": messages})
        return preview

    # ── Message operations ───────────────────────────────────────────────────

    async def send(
        self,
        conversation_id: str,
        text: str,
        model: str,
        reasoning_enabled: bool = False,
        options: GenerationOptions | None = None,
        files: list[UploadedFile] | None = None,
    ) -> None:
        files = files or []
        if self.get(conversation_id) is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="send")
            return
        if not text.strip() and not files:
            logger.warning("send_rejected", conversation_id=conversation_id, reason="empty message")
            return
        try:
            validate_files(files)
        except ChatDeskError as exc:
            logger.warning("send_rejected", conversation_id=conversation_id, reason=exc.message)
            return
        self.ensure_idle(conversation_id)

        generation = self._begin(conversation_id)
        try:
            blocks = []
            if files:
                try:
                    blocks = await asyncio.to_thread(encode_all, files)
                except AttachmentError as exc:
                    logger.warning("send_rejected", conversation_id=conversation_id, reason=exc.message)
                    self._error = exc.message
                    return
            if generation.token.cancelled:
                return

            message_id = new_message_id()
            attachments = await self._store_files(conversation_id, message_id, files)
            if attachments is None:
                return
            if generation.token.cancelled:
                # Stopped while the files were being written
                await self._discard_assets(conversation_id, attachments)
                return
            content = build_content(text, blocks)
            user_message = Message(
                id=message_id,
                role="user",
                content=content,
                tokens=estimate_message_tokens(content),
                attachments=attachments or None,
            )
            if not await self._append_user_turn(conversation_id, user_message):
                return
            await self._generate(conversation_id, model, reasoning_enabled, options, generation)
        finally:
            self._end(conversation_id, generation)

    async def resend(
        self, conversation_id: str, message_id: str, options: GenerationOptions | None = None
    ) -> None:
        conv = self.get(conversation_id)
        i = conv.index_of(message_id) if conv else -1
        if i < 0 or conv.messages[i].role != "user":
            logger.warning(
                "resend_rejected", conversation_id=conversation_id, message_id=message_id,
                reason="message not found or not a user message",
            )
            return
        model = self._model_after(conv, i)
        if model is None:
            logger.warning("resend_rejected", conversation_id=conversation_id, reason="no model available")
            return
        self.ensure_idle(conversation_id)

        target = conv.messages[i]
        generation = self._begin(conversation_id)
        try:
            # Attachments keep their stored paths; only the wire blocks are rebuilt
            blocks = []
            kept: list[FileAttachment] = []
            for attachment in target.attachments or []:
                try:
                    data = await self._assets.load(conversation_id, attachment.path)
                except (ChatDeskError, OSError):
                    logger.warning("attachment_restore_failed", conversation_id=conversation_id, path=attachment.path)
                    continue
                try:
                    block = await asyncio.to_thread(
                        encode, UploadedFile(attachment.name, attachment.mime_type, data)
                    )
                except AttachmentError:
                    logger.warning("attachment_restore_failed", conversation_id=conversation_id, path=attachment.path)
                    continue
                blocks.append(block)
                kept.append(attachment)
            if generation.token.cancelled:
                return

            text = extract_text(target.content)
            conv = self.get(conversation_id)
            i = conv.index_of(message_id) if conv else -1
            if i < 0:
                logger.warning("resend_aborted", conversation_id=conversation_id, reason="message removed")
                return
            dropped = conv.messages[i:]
            self._replace(conversation_id, messages=conv.messages[:i])

            content = build_content(text, blocks)
            user_message = Message(
                role="user", content=content, tokens=estimate_message_tokens(content), attachments=kept or None
            )
            if not await self._append_user_turn(conversation_id, user_message):
                return
            kept_paths = {a.path for a in kept}
            await self._discard_assets(
                conversation_id, [a for a in _attachments_of(dropped) if a.path not in kept_paths]
            )
            await self._generate(conversation_id, model, False, options, generation)
        finally:
            self._end(conversation_id, generation)

    async def regenerate(
        self, conversation_id: str, message_id: str, options: GenerationOptions | None = None
    ) -> None:
        conv = self.get(conversation_id)
        i = conv.index_of(message_id) if conv else -1
        if i < 1 or conv.messages[i].role != "assistant":
            logger.warning(
                "regenerate_rejected", conversation_id=conversation_id, message_id=message_id,
                reason="message not found or not a regenerable assistant message",
            )
            return
        target = conv.messages[i]
        model = target.model or self.selected_model
        if model is None:
            logger.warning("regenerate_rejected", conversation_id=conversation_id, reason="no model available")
            return
        self.ensure_idle(conversation_id)

        reasoning_enabled = bool(target.reasoning and target.reasoning.strip())
        generation = self._begin(conversation_id)
        try:
            self._replace(conversation_id, messages=conv.messages[:i])
            await self._checkpoint(conversation_id)
            await self._discard_assets(conversation_id, _attachments_of(conv.messages[i:]))
            await self._generate(conversation_id, model, reasoning_enabled, options, generation)
        finally:
            self._end(conversation_id, generation)

    async def edit(
        self,
        conversation_id: str,
        message_id: str,
        new_content: str,
        options: GenerationOptions | None = None,
    ) -> None:
        conv = self.get(conversation_id)
        i = conv.index_of(message_id) if conv else -1
        if i < 0:
            logger.warning("edit_rejected", conversation_id=conversation_id, message_id=message_id,
                           reason="message not found")
            return
        target = conv.messages[i]

        if target.role == "assistant":
            if target.is_streaming:
                self.ensure_idle(conversation_id)
            self._replace_message(conversation_id, message_id, content=new_content, edited_at=utcnow())
            logger.info("message_edited", conversation_id=conversation_id, message_id=message_id)
            return

        model = self._model_after(conv, i)
        if model is None:
            logger.warning("edit_rejected", conversation_id=conversation_id, reason="no model available")
            return
        self.ensure_idle(conversation_id)

        generation = self._begin(conversation_id)
        try:
            edited = target.model_copy(
                update={
                    "content": new_content,
                    "edited_at": utcnow(),
                    "tokens": estimate_message_tokens(new_content),
                }
            )
            self._replace(conversation_id, messages=[*conv.messages[:i], edited])
            await self._checkpoint(conversation_id)
            await self._discard_assets(conversation_id, _attachments_of(conv.messages[i + 1:]))
            await self._generate(conversation_id, model, False, options, generation)
        finally:
            self._end(conversation_id, generation)

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        conv = self.get(conversation_id)
        i = conv.index_of(message_id) if conv else -1
        if i < 0:
            logger.warning("delete_message_rejected", conversation_id=conversation_id, message_id=message_id,
                           reason="message not found")
            return

        generation = self._generations.get(conversation_id)
        if generation is not None and generation.message_id == message_id:
            self.stop(conversation_id)
            conv = self.get(conversation_id)
            i = conv.index_of(message_id)

        target = conv.messages[i]
        self._replace(conversation_id, messages=[*conv.messages[:i], *conv.messages[i + 1:]])
        logger.info("message_deleted", conversation_id=conversation_id, message_id=message_id)
        await self._discard_assets(conversation_id, target.attachments or [])

    def stop(self, conversation_id: str) -> None:
        """Cancel the live generation, if any, and mark its message stopped."""
        generation = self._generations.pop(conversation_id, None)
        if generation is None:
            return
        generation.token.cancel()
        logger.info("generation_stopped", conversation_id=conversation_id, message_id=generation.message_id)

        if generation.message_id is None:
            return
        conv = self.get(conversation_id)
        i = conv.index_of(generation.message_id) if conv else -1
        if i < 0 or not conv.messages[i].is_streaming:
            return
        msg = conv.messages[i]
        self._replace_message(
            conversation_id,
            msg.id,
            content=extract_text(msg.content) + STOP_MARKER,
            status="stopped",
        )

    async def stop_all(self) -> None:
        for conversation_id in list(self._generations):
            self.stop(conversation_id)
        await self.wait_idle()

    # ── Generation internals ─────────────────────────────────────────────────

    def _model_after(self, conv: Conversation, index: int) -> str | None:
        for msg in conv.messages[index + 1:]:
            if msg.role == "assistant" and msg.model:
                return msg.model
        return self.selected_model

    def _begin(self, conversation_id: str) -> _Generation:
        generation = _Generation(token=CancelToken())
        self._generations[conversation_id] = generation
        self._error = None
        return generation

    def _end(self, conversation_id: str, generation: _Generation) -> None:
        # stop() may already have replaced or removed this handle
        if self._generations.get(conversation_id) is generation:
            del self._generations[conversation_id]

    async def _store_files(
        self, conversation_id: str, message_id: str, files: list[UploadedFile]
    ) -> list[FileAttachment] | None:
        """Save upload bytes; None if storage failed."""
        conv = self.get(conversation_id)
        project_id = conv.project_id if conv else None
        timestamp_ms = int(time.time() * 1000)
        attachments = []
        for index, f in enumerate(files):
            filename = asset_filename(f.name, message_id, index, timestamp_ms)
            try:
                path = await self._assets.save(conversation_id, filename, f.data, project_id)
            except OSError as exc:
                logger.exception("attachment_save_failed", conversation_id=conversation_id, file=f.name)
                self._error = f'Failed to store attachment "{f.name}": {exc}'
                await self._discard_assets(conversation_id, attachments)
                return None
            attachments.append(
                FileAttachment(
                    name=f.name,
                    mime_type=f.mime_type,
                    size=f.size,
                    path=path,
                    preview=preview_data_uri(f.mime_type, f.data),
                )
            )
        return attachments

    async def _discard_assets(self, conversation_id: str, attachments: list[FileAttachment]) -> None:
        """Best-effort removal of stored attachment files no message references any more."""
        for attachment in attachments:
            try:
                await self._assets.delete(conversation_id, attachment.path)
            except (ChatDeskError, OSError):
                logger.exception("asset_cleanup_failed", conversation_id=conversation_id, path=attachment.path)

    async def _append_user_turn(self, conversation_id: str, message: Message) -> bool:
        conv = self.get(conversation_id)
        if conv is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id, operation="append")
            return False
        self._replace(conversation_id, messages=[*conv.messages, message])
        await self._checkpoint(conversation_id)
        return True

    def _build_request(
        self, conv: Conversation, model: str, options: GenerationOptions | None
    ) -> ChatCompletionRequest:
        context = prepare_context(conv.messages, self._max_context_messages, self._max_attachment_messages)
        messages = [ChatMessage(role=m.role, content=m.content) for m in context]

        first_turn = len(conv.messages) == 1 and conv.messages[0].role == "user"
        if self._system_prompt.strip() and first_turn:
            messages.insert(0, ChatMessage(role="system", content=[TextBlock(text=self._system_prompt)]))

        temperature = self._default_temperature
        max_tokens = self._default_max_tokens
        if options is not None:
            if options.temperature is not None:
                temperature = options.temperature
            if options.max_tokens is not None:
                max_tokens = options.max_tokens
        return ChatCompletionRequest(model=model, messages=messages, temperature=temperature, max_tokens=max_tokens)

    async def _generate(
        self,
        conversation_id: str,
        model: str,
        reasoning_enabled: bool,
        options: GenerationOptions | None,
        generation: _Generation,
    ) -> None:
        conv = self.get(conversation_id)
        if conv is None or generation.token.cancelled:
            return

        request = self._dispatcher.shape_request(
            self._build_request(conv, model, options),
            self._catalog.capability(model),
            reasoning_enabled,
        )

        assistant = Message(role="assistant", content="", model=model, status="pending")
        self._replace(conversation_id, messages=[*conv.messages, assistant])
        generation.message_id = assistant.id
        self._replace_message(conversation_id, assistant.id, status="streaming")
        logger.info(
            "generation_started",
            conversation_id=conversation_id,
            message_id=assistant.id,
            model=model,
            reasoning=request.reasoning is not None,
            context_messages=len(request.messages),
        )

        completed = False
        async for event in self._dispatcher.stream(request, generation.token):
            completed = self._apply(conversation_id, assistant.id, model, event) or completed
            for listener in list(self._listeners):
                try:
                    listener(conversation_id, event)
                except Exception:
                    logger.exception("session_listener_failed", conversation_id=conversation_id)

        if completed:
            await self._checkpoint(conversation_id)

    def _apply(self, conversation_id: str, message_id: str, model: str, event: StreamEvent) -> bool:
        """Apply one stream event; True when it finalized the message."""
        conv = self.get(conversation_id)
        i = conv.index_of(message_id) if conv else -1
        if i < 0:
            return False
        msg = conv.messages[i]

        if isinstance(event, ContentDelta):
            self._replace_message(conversation_id, message_id, content=extract_text(msg.content) + event.text)
        elif isinstance(event, ReasoningDelta):
            self._replace_message(conversation_id, message_id, reasoning=(msg.reasoning or "") + event.text)
        elif isinstance(event, StreamCompleted):
            self._finalize(conversation_id, msg, model, event.usage)
            return True
        elif isinstance(event, StreamFailed):
            self._error = str(event.error) or "Generation failed."
            self._replace(conversation_id, messages=[m for m in conv.messages if m.id != message_id])
            logger.warning(
                "generation_failed", conversation_id=conversation_id, message_id=message_id, error=self._error
            )
        return False

    def _finalize(self, conversation_id: str, msg: Message, model: str, usage: Usage) -> None:
        pricing = self._catalog.pricing(model)
        total = cost(usage.prompt_tokens, model, False, pricing) + cost(usage.completion_tokens, model, True, pricing)
        content: MessageContent = sanitize_content(extract_text(msg.content))
        self._replace_message(
            conversation_id,
            msg.id,
            content=content,
            tokens=usage.completion_tokens,
            cost=total,
            status="finalized",
        )
        logger.info(
            "generation_completed",
            conversation_id=conversation_id,
            message_id=msg.id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=total,
        )
