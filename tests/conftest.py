import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from chatdesk.core.database import Base, make_session_factory
from chatdesk.services.assets import AssetStore
from chatdesk.services.catalog import ModelCatalog
from chatdesk.services.dispatcher import StreamingDispatcher
from chatdesk.services.persistence import PersistenceBridge
from chatdesk.services.repository import ConversationRepository
from chatdesk.services.session import SessionStore
from tests.mocks.scripted_backend import ScriptedBackend


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """SQLite engine on a temp file (flush_all writes concurrently)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def repository(session_factory, tmp_path):
    return ConversationRepository(session_factory, export_dir=str(tmp_path / "exports"))


@pytest.fixture
def bridge(repository):
    return PersistenceBridge(repository)


@pytest.fixture
def assets(tmp_path):
    return AssetStore(str(tmp_path / "data"))


@pytest.fixture
def scripted_backend():
    return ScriptedBackend()


@pytest.fixture
def make_store(scripted_backend, bridge, assets):
    """Build a SessionStore over the scripted backend; keyword args override defaults."""

    def _make(backend=None, **kwargs) -> SessionStore:
        backend = backend or scripted_backend
        kwargs.setdefault("selected_model", "test/model")
        return SessionStore(
            StreamingDispatcher(backend),
            bridge,
            assets,
            ModelCatalog(backend),
            **kwargs,
        )

    return _make


@pytest.fixture
def store(make_store):
    return make_store()


@pytest_asyncio.fixture
async def app_with_store(session_factory, tmp_path):
    """FastAPI app wired to the temp database and the fake LLM server."""
    from chatdesk.main import build_session_store, create_app
    from chatdesk.services.inference.openai_client import OpenAICompatibleBackend
    from tests.mocks.fake_llm import app as fake_llm_app
    from tests.mocks.fake_llm import received_requests

    received_requests.clear()
    fake_transport = ASGITransport(app=fake_llm_app)
    fake_http_client = AsyncClient(transport=fake_transport, base_url="http://fake-llm")
    backend = OpenAICompatibleBackend(base_url="http://fake-llm/v1", http_client=fake_http_client)

    store = build_session_store(
        backend, session_factory, data_dir=str(tmp_path / "data"), export_dir=str(tmp_path / "exports")
    )
    store.selected_model = "openai/gpt-4o"

    app = create_app()
    app.state.inference_backend = backend
    app.state.session_store = store

    yield app

    await store.stop_all()
    await fake_http_client.aclose()


@pytest_asyncio.fixture
async def client(app_with_store):
    transport = ASGITransport(app=app_with_store)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
