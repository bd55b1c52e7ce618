from fastapi import APIRouter, Depends, Query

from chatdesk.dependencies import get_session_store
from chatdesk.schemas.models import ModelListResponse
from chatdesk.services.session import SessionStore

router = APIRouter()


@router.get("/v1/models")
async def list_models(
    refresh: bool = Query(False),
    store: SessionStore = Depends(get_session_store),
) -> ModelListResponse:
    """Models in the catalog, with reasoning capability and pricing attached."""
    if refresh or not store.catalog.models:
        await store.catalog.refresh()
    return ModelListResponse(data=store.catalog.models)
