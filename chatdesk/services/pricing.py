"""Token cost lookup. Prices are USD per million tokens."""

import structlog

from chatdesk.schemas.models import ModelPricing

logger = structlog.get_logger()

# Used when the model catalog has not been loaded or does not list a model
FALLBACK_PRICING: dict[str, ModelPricing] = {
    "anthropic/claude-opus-4.1": ModelPricing(input=15.0, output=75.0),
    "anthropic/claude-opus-4": ModelPricing(input=15.0, output=75.0),
    "anthropic/claude-sonnet-4.5": ModelPricing(input=3.0, output=15.0),
    "anthropic/claude-sonnet-4": ModelPricing(input=3.0, output=15.0),
    "anthropic/claude-haiku-4.5": ModelPricing(input=1.0, output=5.0),
    "anthropic/claude-haiku-3.5": ModelPricing(input=0.8, output=4.0),
    "openai/gpt-4o": ModelPricing(input=2.5, output=10.0),
    "openai/gpt-4o-mini": ModelPricing(input=0.15, output=0.6),
    "openai/gpt-4-turbo": ModelPricing(input=10.0, output=30.0),
    "openai/o1": ModelPricing(input=15.0, output=60.0),
    "openai/o1-mini": ModelPricing(input=1.1, output=4.4),
    "google/gemini-2.5-pro": ModelPricing(input=1.25, output=10.0),
    "google/gemini-2.5-flash": ModelPricing(input=0.3, output=2.5),
    "deepseek/deepseek-r1": ModelPricing(input=0.4, output=2.0),
    "deepseek/deepseek-chat": ModelPricing(input=0.3, output=0.85),
    "deepseek/deepseek-chat-v3.1:free": ModelPricing(input=0.0, output=0.0),
}

DEFAULT_PRICING = ModelPricing(input=0.5, output=1.5)


def cost(
    tokens: int,
    model_id: str,
    is_output: bool,
    pricing: ModelPricing | None = None,
) -> float:
    """Cost in USD of ``tokens`` input or output tokens for ``model_id``."""
    if pricing is None:
        pricing = FALLBACK_PRICING.get(model_id)
    if pricing is None:
        logger.debug("pricing_unknown_model", model=model_id)
        pricing = DEFAULT_PRICING

    per_million = pricing.output if is_output else pricing.input
    return (tokens / 1_000_000) * per_million
