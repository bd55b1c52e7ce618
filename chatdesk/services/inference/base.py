from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from chatdesk.schemas.chat import ChatCompletionRequest, Usage
from chatdesk.schemas.models import ModelInfo


@dataclass(frozen=True)
class ContentDelta:
    """Incremental visible assistant text."""

    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    """Incremental reasoning ("thinking") text."""

    text: str


@dataclass(frozen=True)
class StreamCompleted:
    usage: Usage


@dataclass(frozen=True)
class StreamFailed:
    error: Exception


StreamEvent = ContentDelta | ReasoningDelta | StreamCompleted | StreamFailed

TERMINAL_EVENTS = (StreamCompleted, StreamFailed)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


class InferenceBackend(ABC):
    @abstractmethod
    def stream_chat(self, request: ChatCompletionRequest) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion as decoded events, ending with one terminal event."""
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """List models offered by the endpoint."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the endpoint is reachable."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
