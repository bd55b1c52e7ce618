import structlog

from chatdesk.core.exceptions import BackendUnavailableError
from chatdesk.schemas.models import ModelInfo, ModelPricing, ReasoningCapability
from chatdesk.services.capabilities import resolve_capability
from chatdesk.services.inference.base import InferenceBackend
from chatdesk.services.pricing import FALLBACK_PRICING

logger = structlog.get_logger()


class ModelCatalog:
    """Model records with reasoning capability and pricing attached at load time."""

    def __init__(self, backend: InferenceBackend | None = None):
        self._backend = backend
        self._models: dict[str, ModelInfo] = {}

    @property
    def models(self) -> list[ModelInfo]:
        return list(self._models.values())

    def get(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)

    def register(self, models: list[ModelInfo]) -> None:
        """Attach capability and fallback pricing, then index by id."""
        for model in models:
            model.reasoning = resolve_capability(model.id)
            if model.pricing is None:
                model.pricing = FALLBACK_PRICING.get(model.id)
            self._models[model.id] = model

    async def refresh(self) -> list[ModelInfo]:
        """Reload the catalog from the backend; keeps the previous catalog on failure."""
        if self._backend is None:
            return self.models
        try:
            models = await self._backend.list_models()
        except BackendUnavailableError as exc:
            logger.warning("model_catalog_refresh_failed", reason=exc.message)
            return self.models

        self._models = {}
        self.register(models)
        logger.info("model_catalog_loaded", models=len(self._models))
        return self.models

    def capability(self, model_id: str) -> ReasoningCapability:
        model = self._models.get(model_id)
        if model is not None:
            return model.reasoning
        return resolve_capability(model_id)

    def pricing(self, model_id: str) -> ModelPricing | None:
        model = self._models.get(model_id)
        if model is not None and model.pricing is not None:
            return model.pricing
        return FALLBACK_PRICING.get(model_id)
