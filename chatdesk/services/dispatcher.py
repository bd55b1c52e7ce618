"""Single-request streaming dispatcher with cooperative cancellation.

The backend stream is consumed by a producer task that feeds a queue; the
consumer side (``stream``) enforces the delivery rules:

* events arrive in wire order;
* exactly one terminal event (``StreamCompleted`` or ``StreamFailed``) ends
  every uncancelled dispatch, and nothing follows it;
* once the token is cancelled nothing at all is delivered, and the producer
  task (and with it the HTTP stream) is cancelled.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing

import structlog

from chatdesk.core.cancellation import CancelToken
from chatdesk.core.exceptions import BackendUnavailableError
from chatdesk.schemas.chat import ChatCompletionRequest, ReasoningConfig, Usage
from chatdesk.schemas.models import ReasoningCapability
from chatdesk.services.inference.base import (
    ContentDelta,
    InferenceBackend,
    ReasoningDelta,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    is_terminal,
)

logger = structlog.get_logger()

_CANCELLED = object()

DEFAULT_MAX_TOKENS = 4000


class StreamHandler:
    """Callback-style consumer for ``StreamingDispatcher.dispatch``."""

    def on_content(self, text: str) -> None:
        pass

    def on_thinking(self, text: str) -> None:
        pass

    def on_complete(self, usage: Usage) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class StreamingDispatcher:
    def __init__(
        self,
        backend: InferenceBackend,
        reasoning_budget_floor: int = 1024,
        reasoning_max_tokens: int = 8000,
    ):
        self._backend = backend
        self._budget_floor = reasoning_budget_floor
        self._reasoning_max_tokens = reasoning_max_tokens

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    def shape_request(
        self,
        request: ChatCompletionRequest,
        capability: ReasoningCapability,
        reasoning_enabled: bool,
    ) -> ChatCompletionRequest:
        """Add provider reasoning controls when reasoning is requested and supported."""
        if not reasoning_enabled:
            return request

        if capability == ReasoningCapability.EFFORT:
            reasoning = ReasoningConfig(effort="high")
        elif capability == ReasoningCapability.BUDGET:
            max_tokens = request.max_tokens or DEFAULT_MAX_TOKENS
            reasoning = ReasoningConfig(max_tokens=max(self._budget_floor, max_tokens // 2))
        elif capability == ReasoningCapability.REASONING_TOKENS:
            reasoning = ReasoningConfig(max_tokens=self._reasoning_max_tokens)
        else:
            # ALWAYS reasons implicitly; NONE ignores the flag
            return request

        return request.model_copy(update={"reasoning": reasoning})

    async def stream(self, request: ChatCompletionRequest, token: CancelToken) -> AsyncIterator[StreamEvent]:
        """Yield the events of one dispatch until its terminal event or cancellation."""
        if token.cancelled:
            return

        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(request, queue))
        token.bind_task(producer)
        token.on_cancel(lambda: queue.put_nowait(_CANCELLED))

        try:
            while True:
                item = await queue.get()
                if item is _CANCELLED or token.cancelled:
                    logger.info("stream_cancelled", model=request.model)
                    return
                yield item
                if is_terminal(item):
                    return
        finally:
            if not producer.done():
                producer.cancel()

    async def dispatch(self, request: ChatCompletionRequest, handler: StreamHandler, token: CancelToken) -> None:
        """Callback form of ``stream``: route each event to the handler."""
        async for event in self.stream(request, token):
            if isinstance(event, ContentDelta):
                handler.on_content(event.text)
            elif isinstance(event, ReasoningDelta):
                handler.on_thinking(event.text)
            elif isinstance(event, StreamCompleted):
                handler.on_complete(event.usage)
            elif isinstance(event, StreamFailed):
                handler.on_error(event.error)

    async def _produce(self, request: ChatCompletionRequest, queue: asyncio.Queue) -> None:
        try:
            async with aclosing(self._backend.stream_chat(request)) as events:
                async for event in events:
                    queue.put_nowait(event)
                    if is_terminal(event):
                        return
            logger.warning("stream_ended_without_terminal", model=request.model)
            queue.put_nowait(StreamFailed(BackendUnavailableError("Response stream ended unexpectedly.")))
        except Exception as exc:
            logger.exception("stream_backend_error", model=request.model)
            queue.put_nowait(StreamFailed(exc))
