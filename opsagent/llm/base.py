"""LLM adapter interface.

This module defines the narrow contract used by the agent runtime. The adapter is:
- swappable (Anthropic Messages API, local, etc.)
- mockable (deterministic tests)
- tool-aware: a response is either plain text or a request to invoke tools
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Literal, Union


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_payload(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    type: Literal["tool_use"] = "tool_use"

    def to_payload(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class LLMUsage:
    """Best-effort token usage summary (provider-dependent)."""

    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.input_tokens is None or self.output_tokens is None:
            return None
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ModelRequest:
    """
    A single model round-trip.

    Attributes:
        system: Fully rendered system prompt.
        messages: Conversation in provider message format
            (``{"role": ..., "content": str | list[block]}``).
        tools: Tool schemas the model may call (``name``/``description``/``input_schema``).
        metadata: Opaque dict for tracing.
    """

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelResponse:
    """A response from the model adapter.

    Attributes:
        stop_reason: Why the model stopped; ``TOOL_USE`` means at least one tool was requested.
        content: Ordered text / tool-use blocks.
        raw: Provider-specific raw payload (kept for debugging/telemetry).
        usage: Best-effort token usage.
    """

    stop_reason: StopReason
    content: list[ContentBlock]
    raw: dict[str, Any] = field(default_factory=dict)
    usage: LLMUsage = LLMUsage()

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def content_payload(self) -> list[dict[str, Any]]:
        return [b.to_payload() for b in self.content]


@dataclass(frozen=True)
class StreamEvent:
    """Incremental output of a streaming call.

    ``type`` is ``text`` (delta in ``text``), ``tool_input`` (partial JSON in ``text``)
    or ``final`` (complete ``response``).
    """

    type: Literal["text", "tool_input", "final"]
    text: str = ""
    response: ModelResponse | None = None


class LLMClient(ABC):
    """Model inference adapter."""

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one model round-trip."""
        raise NotImplementedError

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream a round-trip. Defaults to a single ``final`` event."""
        response = await self.complete(request)
        if response.text:
            yield StreamEvent(type="text", text=response.text)
        yield StreamEvent(type="final", response=response)
