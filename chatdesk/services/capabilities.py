"""Static reasoning-capability table for models the catalog may not describe."""

from chatdesk.schemas.models import ReasoningCapability

KNOWN_REASONING_MODELS: dict[str, ReasoningCapability] = {
    # OpenAI o-series: reasoning.effort
    "openai/o1": ReasoningCapability.EFFORT,
    "openai/o1-mini": ReasoningCapability.EFFORT,
    "openai/o1-preview": ReasoningCapability.EFFORT,
    "openai/o3": ReasoningCapability.EFFORT,
    "openai/o3-mini": ReasoningCapability.EFFORT,
    "openai/o4-mini": ReasoningCapability.EFFORT,
    # DeepSeek reasoners always think
    "deepseek/deepseek-chat": ReasoningCapability.ALWAYS,
    "deepseek/deepseek-chat-v3.1:free": ReasoningCapability.ALWAYS,
    "deepseek/deepseek-r1": ReasoningCapability.ALWAYS,
    "tngtech/deepseek-r1t2-chimera": ReasoningCapability.ALWAYS,
    # Claude extended thinking: token budget
    "anthropic/claude-haiku-4.5": ReasoningCapability.BUDGET,
    "anthropic/claude-sonnet-4.5": ReasoningCapability.BUDGET,
    "anthropic/claude-sonnet-4": ReasoningCapability.BUDGET,
    "anthropic/claude-opus-4.1": ReasoningCapability.BUDGET,
    # Gemini 2.5: reasoning token cap
    "google/gemini-2.5-flash": ReasoningCapability.REASONING_TOKENS,
    "google/gemini-2.5-pro": ReasoningCapability.REASONING_TOKENS,
}


def resolve_capability(
    model_id: str,
    table: dict[str, ReasoningCapability] | None = None,
) -> ReasoningCapability:
    """Exact match first, then the longest table key that prefixes ``model_id``.

    ``openai/o1-2024-12-17`` resolves through ``openai/o1``; when both
    ``openai/o1`` and ``openai/o1-mini`` prefix an id the longer key wins.
    """
    table = KNOWN_REASONING_MODELS if table is None else table
    if model_id in table:
        return table[model_id]

    best_key = None
    for key in table:
        if model_id.startswith(key) and (best_key is None or len(key) > len(best_key)):
            best_key = key
    if best_key is None:
        return ReasoningCapability.NONE
    return table[best_key]
