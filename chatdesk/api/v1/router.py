from fastapi import APIRouter

from chatdesk.api.v1.conversations import router as conversations_router
from chatdesk.api.v1.health import router as health_router
from chatdesk.api.v1.messages import router as messages_router
from chatdesk.api.v1.models import router as models_router
from chatdesk.api.v1.session import router as session_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(models_router, tags=["Models"])
v1_router.include_router(session_router, tags=["Session"])
v1_router.include_router(conversations_router, tags=["Conversations"])
v1_router.include_router(messages_router, tags=["Messages"])
