from fastapi import APIRouter, Depends, Query

from chatdesk.core.exceptions import InvalidOperationError
from chatdesk.dependencies import get_session_store
from chatdesk.schemas.conversations import (
    Conversation,
    ConversationCreate,
    ConversationSummary,
    ConversationUpdate,
    ExportRequest,
    ExportResponse,
)
from chatdesk.services.session import SessionStore
from chatdesk.services.tokens import conversation_cost, conversation_tokens

router = APIRouter()


def _summary(conv: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conv.id,
        title=conv.title,
        starred=conv.starred,
        project_id=conv.project_id,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        message_count=len(conv.messages),
        total_tokens=conversation_tokens(conv.messages),
        total_cost=conversation_cost(conv.messages),
    )


@router.get("/v1/conversations")
async def list_conversations(
    starred: bool | None = Query(None),
    project_id: str | None = Query(None),
    store: SessionStore = Depends(get_session_store),
) -> list[ConversationSummary]:
    """List conversations in session order (most recent first after load)."""
    conversations = store.conversations
    if starred is not None:
        conversations = [c for c in conversations if c.starred == starred]
    if project_id is not None:
        conversations = [c for c in conversations if c.project_id == project_id]
    return [_summary(c) for c in conversations]


@router.post("/v1/conversations", status_code=201)
async def create_conversation(
    body: ConversationCreate, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Create a conversation and make it active."""
    return store.create_conversation(body.title, body.project_id)


@router.get("/v1/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    return store.require(conversation_id)


@router.patch("/v1/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str, body: ConversationUpdate, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Rename and/or star a conversation."""
    conv = store.require(conversation_id)
    if body.title is not None:
        if not body.title.strip():
            raise InvalidOperationError("Title cannot be empty.")
        store.rename(conversation_id, body.title)
    if body.starred is not None and body.starred != conv.starred:
        store.toggle_star(conversation_id)
    return store.require(conversation_id)


@router.delete("/v1/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, store: SessionStore = Depends(get_session_store)) -> None:
    """Delete a conversation, its stored record and its assets."""
    store.require(conversation_id)
    await store.delete_conversation(conversation_id)


@router.post("/v1/conversations/{conversation_id}/export")
async def export_conversation(
    conversation_id: str, body: ExportRequest, store: SessionStore = Depends(get_session_store)
) -> ExportResponse:
    path = await store.export_conversation(conversation_id, body.format)
    return ExportResponse(path=str(path) if path is not None else None)


@router.post("/v1/conversations/{conversation_id}/stop")
async def stop_generation(
    conversation_id: str, store: SessionStore = Depends(get_session_store)
) -> Conversation:
    """Stop the in-flight generation, if any."""
    store.require(conversation_id)
    store.stop(conversation_id)
    return store.require(conversation_id)
