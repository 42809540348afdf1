############################################################
#
# tinychat - Streaming LLM Chat Service
#
# base.py: Model adapter interface and result types
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Model adapter interface.

An adapter turns a list of chat messages into a model response, either all at
once (:meth:`ModelAdapter.complete`) or as a stream of deltas
(:meth:`ModelAdapter.stream`). Failures are returned as values, never raised:
``complete`` returns :class:`AdapterErr` and ``stream`` yields one as its final
item. Callers decide how a failure is shown to the user.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from tinychat.app.core.thinking import format_thinking
from tinychat.app.logging_config import get_logger

logger = get_logger(__name__)

ChatMessage = Dict[str, str]


class DeltaKind(str, Enum):
    """Channel a streamed fragment belongs to."""
    CONTENT = "content"
    REASONING = "reasoning"


@dataclass(frozen=True)
class StreamDelta:
    """One fragment of streamed model output."""
    text: str
    kind: DeltaKind = DeltaKind.CONTENT


@dataclass(frozen=True)
class ModelResponse:
    """Complete model output with reasoning kept apart from the answer."""
    answer_text: str
    reasoning_text: Optional[str] = None

    def render(self) -> str:
        """Flatten to a single string, using the thinking/answer template when reasoning exists."""
        if self.reasoning_text:
            return format_thinking(self.reasoning_text, self.answer_text)
        return self.answer_text


@dataclass(frozen=True)
class AdapterOk:
    response: ModelResponse
    simulated: bool = False


@dataclass(frozen=True)
class AdapterErr:
    reason: str
    status_code: Optional[int] = None


AdapterResult = Union[AdapterOk, AdapterErr]
StreamItem = Union[StreamDelta, AdapterErr]


class UpstreamError(Exception):
    """Failure talking to an upstream model provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_messages(messages: Sequence[Any]) -> List[ChatMessage]:
    """Coerce pydantic models or mappings into ``{"role", "content"}`` dicts."""
    normalized = []
    for message in messages:
        if isinstance(message, Mapping):
            role, content = message.get("role"), message.get("content")
        else:
            role, content = getattr(message, "role"), getattr(message, "content")
        role = getattr(role, "value", role)
        normalized.append({"role": str(role), "content": content or ""})
    return normalized


class ModelAdapter(ABC):
    """Interface every provider adapter implements."""

    provider: str = "base"
    display_name: str = "Model"

    def check_messages(self, messages: Sequence[ChatMessage]) -> None:
        """Reject empty input; warn when the last message is not from the user."""
        if not messages:
            raise ValueError("messages must not be empty")
        if messages[-1]["role"] != "user":
            logger.warning(
                "last_message_not_user",
                provider=self.provider,
                role=messages[-1]["role"],
            )

    @abstractmethod
    async def complete(self, messages: Sequence[Any], model_id: str) -> AdapterResult:
        """Generate a full response."""

    @abstractmethod
    def stream(self, messages: Sequence[Any], model_id: str) -> AsyncIterator[StreamItem]:
        """Generate a response as an async iterator of deltas."""

    async def aclose(self) -> None:
        """Release any resources held by the adapter."""
