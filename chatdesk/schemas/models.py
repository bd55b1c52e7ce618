from enum import Enum

from pydantic import BaseModel


class ReasoningCapability(str, Enum):
    """How a model exposes reasoning ("thinking") output."""

    ALWAYS = "always"  # reasons on every request, no toggle
    EFFORT = "effort"  # reasoning.effort
    BUDGET = "budget"  # reasoning token budget scaled to max_tokens
    REASONING_TOKENS = "reasoning_tokens"  # fixed reasoning token cap
    NONE = "none"


class ModelPricing(BaseModel):
    """USD per million tokens."""

    input: float
    output: float


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str | None = None
    context_length: int | None = None
    pricing: ModelPricing | None = None
    reasoning: ReasoningCapability = ReasoningCapability.NONE
    input_modalities: list[str] = ["text"]


class ModelListResponse(BaseModel):
    object: str = "list"
    data: list[ModelInfo]
