import time

from fastapi import APIRouter, Depends

from chatdesk.dependencies import get_inference_backend, get_session_store
from chatdesk.schemas.health import HealthResponse
from chatdesk.services.inference.base import InferenceBackend
from chatdesk.services.session import SessionStore

router = APIRouter()

_start_time = time.monotonic()


@router.get("/v1/health")
async def health_check(
    backend: InferenceBackend = Depends(get_inference_backend),
    store: SessionStore = Depends(get_session_store),
) -> HealthResponse:
    """Engine health, including whether the completion endpoint answers."""
    llm_ok = await backend.health_check()

    return HealthResponse(
        status="ok" if llm_ok else "degraded",
        llm_status="connected" if llm_ok else "disconnected",
        conversations=len(store.conversations),
        generating=len(store.generating),
        dirty=len(store.bridge.dirty_ids),
        uptime_seconds=round(time.monotonic() - _start_time, 1),
    )
