from fastapi import APIRouter, Depends

from chatdesk.dependencies import get_session_store
from chatdesk.schemas.conversations import SessionStateResponse, SessionUpdate
from chatdesk.services.session import SessionStore

router = APIRouter()


def _state(store: SessionStore) -> SessionStateResponse:
    return SessionStateResponse(
        active_conversation_id=store.active_conversation_id,
        selected_model=store.selected_model,
        is_loading=store.is_loading,
        error=store.error,
        generating=store.generating,
    )


@router.get("/v1/session")
async def get_session(store: SessionStore = Depends(get_session_store)) -> SessionStateResponse:
    return _state(store)


@router.put("/v1/session")
async def update_session(
    body: SessionUpdate, store: SessionStore = Depends(get_session_store)
) -> SessionStateResponse:
    """Set the active conversation and/or the selected model."""
    fields = body.model_fields_set
    if "active_conversation_id" in fields:
        if body.active_conversation_id is not None:
            store.require(body.active_conversation_id)
        store.set_active(body.active_conversation_id)
    if "selected_model" in fields:
        store.selected_model = body.selected_model
    return _state(store)


@router.delete("/v1/session/error", status_code=204)
async def clear_error(store: SessionStore = Depends(get_session_store)) -> None:
    store.clear_error()
