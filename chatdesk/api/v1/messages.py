"""Message operations. Generation routes validate synchronously, then run the
operation in the background and return the conversation snapshot with 202."""

import base64
import binascii

from fastapi import APIRouter, Depends

from chatdesk.core.exceptions import AttachmentError, InvalidOperationError, NotFoundError
from chatdesk.dependencies import get_session_store
from chatdesk.schemas.conversations import (
    Conversation,
    EditMessageRequest,
    Message,
    SendMessageRequest,
)
from chatdesk.services.attachments import UploadedFile, validate_files
from chatdesk.services.session import SessionStore

router = APIRouter()


def _require_message(store: SessionStore, conversation_id: str, message_id: str) -> tuple[Conversation, int]:
    conv = store.require(conversation_id)
    i = conv.index_of(message_id)
    if i < 0:
        raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}.")
    return conv, i


def _resolve_model(store: SessionStore, model: str | None) -> str:
    model = model or store.selected_model
    if not model:
        raise InvalidOperationError("No model selected.")
    return model


def _decode_files(body: SendMessageRequest) -> list[UploadedFile]:
    files = []
    for f in body.files:
        try:
            data = base64.b64decode(f.data, validate=True)
        except (binascii.Error, ValueError):
            raise AttachmentError(f'File "{f.name}" is not valid base64.', details={"file": f.name})
        files.append(UploadedFile(name=f.name, mime_type=f.mime_type, data=data))
    validate_files(files)
    return files


@router.post("/v1/conversations/{conversation_id}/messages", status_code=202)
async def send_message(
    conversation_id: str, body: SendMessageRequest, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Append a user turn and stream the assistant reply."""
    conv = store.require(conversation_id)
    if not body.text.strip() and not body.files:
        raise InvalidOperationError("Message is empty.")
    model = _resolve_model(store, body.model)
    files = _decode_files(body)
    store.ensure_idle(conversation_id)

    store.spawn(store.send(conversation_id, body.text, model, body.reasoning_enabled, body.options, files))
    return conv


@router.post("/v1/conversations/{conversation_id}/messages/{message_id}/resend", status_code=202)
async def resend_message(
    conversation_id: str, message_id: str, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Drop the user turn and everything after it, then send it again."""
    conv, i = _require_message(store, conversation_id, message_id)
    if conv.messages[i].role != "user":
        raise InvalidOperationError("Only user messages can be resent.")
    _resolve_model(store, next((m.model for m in conv.messages[i + 1:] if m.model), None))
    store.ensure_idle(conversation_id)

    store.spawn(store.resend(conversation_id, message_id))
    return conv


@router.post("/v1/conversations/{conversation_id}/messages/{message_id}/regenerate", status_code=202)
async def regenerate_message(
    conversation_id: str, message_id: str, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Replace an assistant reply and everything after it with a fresh one."""
    conv, i = _require_message(store, conversation_id, message_id)
    if conv.messages[i].role != "assistant" or i == 0:
        raise InvalidOperationError("Only assistant replies with preceding context can be regenerated.")
    _resolve_model(store, conv.messages[i].model)
    store.ensure_idle(conversation_id)

    store.spawn(store.regenerate(conversation_id, message_id))
    return conv


@router.put("/v1/conversations/{conversation_id}/messages/{message_id}", status_code=202)
async def edit_message(
    conversation_id: str,
    message_id: str,
    body: EditMessageRequest,
    store: SessionStore = Depends(get_session_store),
) -> Conversation:
    """Edit a message. Editing a user turn resubmits the conversation from it."""
    conv, i = _require_message(store, conversation_id, message_id)
    target = conv.messages[i]
    if target.role == "assistant":
        if target.is_streaming:
            store.ensure_idle(conversation_id)
        await store.edit(conversation_id, message_id, body.content)
        return store.require(conversation_id)

    if not body.content.strip():
        raise InvalidOperationError("Message is empty.")
    _resolve_model(store, next((m.model for m in conv.messages[i + 1:] if m.model), None))
    store.ensure_idle(conversation_id)

    store.spawn(store.edit(conversation_id, message_id, body.content, body.options))
    return conv


@router.delete("/v1/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: str, message_id: str, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    _require_message(store, conversation_id, message_id)
    await store.delete_message(conversation_id, message_id)
    return store.require(conversation_id)


@router.get("/v1/conversations/{conversation_id}/messages/{message_id}/attachments/{index}/preview")
async def attachment_preview(
    conversation_id: str, message_id: str, index: int, store: SessionStore = Depends(get_session_store)
) -> dict:
    """Inline data URI for an image attachment; null for other types."""
    preview = await store.load_attachment_preview(conversation_id, message_id, index)
    return {"preview": preview}


@router.get("/v1/conversations/{conversation_id}/messages/{message_id}")
async def get_message(
    conversation_id: str, message_id: str, store: SessionStore = Depends(get_session_store)
) -> Message:
    conv, i = _require_message(store, conversation_id, message_id)
    return conv.messages[i]
