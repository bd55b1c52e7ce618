import json
from collections.abc import AsyncIterator

import httpx
import structlog
from pydantic import ValidationError

from chatdesk.core.exceptions import BackendUnavailableError
from chatdesk.schemas.chat import ChatCompletionChunk, ChatCompletionRequest, Usage
from chatdesk.schemas.models import ModelInfo, ModelPricing
from chatdesk.services.inference.base import (
    ContentDelta,
    InferenceBackend,
    ReasoningDelta,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
)

logger = structlog.get_logger()

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def _error_message(body: bytes, status_code: int) -> str:
    """Pull ``error.message`` out of a provider error body."""
    try:
        data = json.loads(body)
        message = data.get("error", {}).get("message")
        if message:
            return message
    except (ValueError, AttributeError):
        pass
    return f"API request failed: {status_code}"


def _per_million(value) -> float:
    """Convert a per-token price string ("0.000003") to USD per million tokens."""
    try:
        return round(float(value) * 1_000_000, 6)
    except (TypeError, ValueError):
        return 0.0


class OpenAICompatibleBackend(InferenceBackend):
    """Streams chat completions from an OpenAI-compatible endpoint (OpenRouter, vLLM, Ollama)."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
        app_title: str | None = None,
        app_url: str | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        if app_url:
            self._headers["HTTP-Referer"] = app_url
        if app_title:
            self._headers["X-Title"] = app_title
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=120.0, write=5.0, pool=5.0)
        )

    async def stream_chat(self, request: ChatCompletionRequest) -> AsyncIterator[StreamEvent]:
        """POST the request with ``stream: true`` and decode the SSE body into events."""
        url = f"{self.base_url}/chat/completions"
        payload = request.model_dump(exclude_none=True)
        payload["stream"] = True

        usage = Usage()
        try:
            async with self._client.stream("POST", url, json=payload, headers=self._headers) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    message = _error_message(body, response.status_code)
                    logger.warning("completion_request_rejected", status=response.status_code, model=request.model)
                    yield StreamFailed(BackendUnavailableError(message, details={"status": response.status_code}))
                    return

                async for line in response.aiter_lines():
                    line = line.strip()
                    # Blank lines separate events; ":" lines are SSE comments (keep-alives)
                    if not line or line.startswith(":") or not line.startswith(_SSE_DATA_PREFIX):
                        continue

                    data = line[len(_SSE_DATA_PREFIX):].strip()
                    if data == _SSE_DONE:
                        break

                    try:
                        chunk = ChatCompletionChunk.model_validate_json(data)
                    except ValidationError:
                        logger.warning("sse_chunk_unparseable", data=data[:200])
                        continue

                    if chunk.error is not None:
                        yield StreamFailed(BackendUnavailableError(chunk.error.message))
                        return

                    if chunk.choices:
                        delta = chunk.choices[0].delta
                        if delta.content:
                            yield ContentDelta(delta.content)
                        reasoning = delta.reasoning or delta.reasoning_content
                        if reasoning:
                            yield ReasoningDelta(reasoning)

                    # Usage arrives on the final chunk
                    if chunk.usage is not None:
                        usage = chunk.usage
        except httpx.ConnectError as e:
            yield StreamFailed(BackendUnavailableError(f"Cannot connect to {self.base_url}: {e}"))
            return
        except httpx.TimeoutException:
            yield StreamFailed(BackendUnavailableError("Completion request timed out."))
            return
        except httpx.HTTPError as e:
            yield StreamFailed(BackendUnavailableError(f"Stream interrupted: {e}"))
            return

        yield StreamCompleted(usage)

    async def list_models(self) -> list[ModelInfo]:
        """List models from ``/models`` (OpenRouter catalog shape)."""
        try:
            response = await self._client.get(f"{self.base_url}/models", headers=self._headers)
            response.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise BackendUnavailableError(f"Cannot reach completion endpoint: {e}")
        except httpx.HTTPStatusError as e:
            raise BackendUnavailableError(f"Model listing failed: {e.response.status_code}")

        models = []
        for m in response.json().get("data", []):
            pricing = m.get("pricing")
            architecture = m.get("architecture") or {}
            models.append(ModelInfo(
                id=m["id"],
                name=m.get("name") or m["id"],
                description=m.get("description"),
                context_length=m.get("context_length"),
                pricing=ModelPricing(
                    input=_per_million(pricing.get("prompt")),
                    output=_per_million(pricing.get("completion")),
                ) if pricing else None,
                input_modalities=architecture.get("input_modalities") or ["text"],
            ))
        return models

    async def health_check(self) -> bool:
        """Check if the completion endpoint is responsive."""
        try:
            response = await self._client.get(f"{self.base_url}/models", headers=self._headers)
            return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
