from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatdesk.api.v1.router import v1_router
from chatdesk.config import settings
from chatdesk.core.database import init_db, make_engine, make_session_factory
from chatdesk.core.exceptions import ChatDeskError, chatdesk_error_handler
from chatdesk.core.log import configure_logging
from chatdesk.core.middleware import RequestLoggingMiddleware
from chatdesk.services.assets import AssetStore
from chatdesk.services.catalog import ModelCatalog
from chatdesk.services.dispatcher import StreamingDispatcher
from chatdesk.services.inference.openai_client import OpenAICompatibleBackend
from chatdesk.services.persistence import AutoSaver, PersistenceBridge
from chatdesk.services.repository import ConversationRepository
from chatdesk.services.session import SessionStore

configure_logging(settings.chatdesk_log_level)

logger = structlog.get_logger()


def build_backend() -> OpenAICompatibleBackend:
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.chatdesk_http_connect_timeout,
            read=settings.chatdesk_http_read_timeout,
            write=5.0,
            pool=5.0,
        )
    )
    return OpenAICompatibleBackend(
        base_url=settings.llm_base_url,
        http_client=http_client,
        api_key=settings.llm_api_key,
        app_title=settings.llm_app_title,
        app_url=settings.llm_app_url,
    )


def build_session_store(
    backend, session_factory, data_dir: str | None = None, export_dir: str | None = None
) -> SessionStore:
    """Wire the engine's collaborators from settings."""
    dispatcher = StreamingDispatcher(
        backend,
        reasoning_budget_floor=settings.chatdesk_reasoning_budget_floor,
        reasoning_max_tokens=settings.chatdesk_reasoning_max_tokens,
    )
    bridge = PersistenceBridge(ConversationRepository(session_factory, export_dir or settings.chatdesk_export_dir))
    return SessionStore(
        dispatcher,
        bridge,
        AssetStore(data_dir or settings.chatdesk_data_dir),
        ModelCatalog(backend),
        system_prompt=settings.chatdesk_system_prompt,
        max_context_messages=settings.chatdesk_max_context_messages,
        max_attachment_messages=settings.chatdesk_max_attachment_messages,
        default_temperature=settings.chatdesk_default_temperature,
        default_max_tokens=settings.chatdesk_default_max_tokens,
        selected_model=settings.chatdesk_default_model,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    Path(settings.chatdesk_data_dir).mkdir(parents=True, exist_ok=True)
    engine = make_engine()
    await init_db(engine)

    backend = build_backend()
    store = build_session_store(backend, make_session_factory(engine))
    await store.catalog.refresh()
    await store.load_from_disk()

    autosaver = AutoSaver(store.bridge, lambda: store.conversations, settings.chatdesk_autosave_interval)
    await autosaver.start()

    app.state.inference_backend = backend
    app.state.session_store = store

    logger.info(
        "chatdesk_starting",
        llm_url=settings.llm_base_url,
        conversations=len(store.conversations),
        models=len(store.catalog.models),
    )
    yield

    await store.stop_all()
    await autosaver.stop()
    await backend.close()
    await engine.dispose()
    logger.info("chatdesk_stopping")


def create_app() -> FastAPI:
    app = FastAPI(
        title="ChatDesk",
        description="Conversation engine for the ChatDesk desktop client",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(ChatDeskError, chatdesk_error_handler)

    # Last-added is outermost: logging wraps CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.chatdesk_cors_origins.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(v1_router)

    @app.get("/")
    async def root():
        return {"service": "chatdesk", "version": "0.1.0"}

    return app


app = create_app()
