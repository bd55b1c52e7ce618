import pytest

from chatdesk.core.exceptions import BackendUnavailableError
from chatdesk.schemas.models import ModelInfo, ModelPricing, ReasoningCapability
from chatdesk.services.catalog import ModelCatalog
from chatdesk.services.pricing import FALLBACK_PRICING
from tests.mocks.scripted_backend import ScriptedBackend


class _UnavailableBackend(ScriptedBackend):
    async def list_models(self):
        raise BackendUnavailableError("down")


class TestModelCatalog:
    async def test_refresh_attaches_capability(self):
        backend = ScriptedBackend()
        backend.models = [
            ModelInfo(id="openai/o1-2024-12-17", name="o1"),
            ModelInfo(id="acme/plain", name="Plain"),
        ]
        catalog = ModelCatalog(backend)

        await catalog.refresh()

        assert catalog.get("openai/o1-2024-12-17").reasoning == ReasoningCapability.EFFORT
        assert catalog.capability("acme/plain") == ReasoningCapability.NONE

    async def test_fallback_pricing_attached_when_missing(self):
        backend = ScriptedBackend()
        backend.models = [ModelInfo(id="openai/gpt-4o", name="GPT-4o")]
        catalog = ModelCatalog(backend)
        await catalog.refresh()
        assert catalog.pricing("openai/gpt-4o") == FALLBACK_PRICING["openai/gpt-4o"]

    async def test_listed_pricing_wins(self):
        backend = ScriptedBackend()
        backend.models = [ModelInfo(id="openai/gpt-4o", name="GPT-4o", pricing=ModelPricing(input=9.0, output=9.0))]
        catalog = ModelCatalog(backend)
        await catalog.refresh()
        assert catalog.pricing("openai/gpt-4o").input == 9.0

    async def test_unknown_model_falls_back_to_static_tables(self):
        catalog = ModelCatalog()
        assert catalog.capability("anthropic/claude-sonnet-4") == ReasoningCapability.BUDGET
        assert catalog.pricing("anthropic/claude-sonnet-4") == FALLBACK_PRICING["anthropic/claude-sonnet-4"]
        assert catalog.pricing("acme/unknown") is None

    async def test_refresh_failure_keeps_previous_catalog(self):
        catalog = ModelCatalog(_UnavailableBackend())
        catalog.register([ModelInfo(id="acme/kept", name="Kept")])

        models = await catalog.refresh()

        assert [m.id for m in models] == ["acme/kept"]

    async def test_refresh_without_backend(self):
        catalog = ModelCatalog()
        assert await catalog.refresh() == []


@pytest.mark.parametrize(
    "model_id,expected",
    [
        ("deepseek/deepseek-r1", ReasoningCapability.ALWAYS),
        ("google/gemini-2.5-flash", ReasoningCapability.REASONING_TOKENS),
    ],
)
def test_register_resolves_capability_once(model_id, expected):
    catalog = ModelCatalog()
    catalog.register([ModelInfo(id=model_id, name=model_id)])
    assert catalog.get(model_id).reasoning == expected
