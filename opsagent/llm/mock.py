"""Scripted LLM adapter.

Use this for:
- deterministic tests
- offline development
- unit tests for the agent loop and the orchestrator
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, Iterable

from .base import LLMClient, ModelRequest, ModelResponse, StopReason, TextBlock, ToolUseBlock

_ids = itertools.count(1)


def text_response(text: str) -> ModelResponse:
    return ModelResponse(stop_reason=StopReason.END_TURN, content=[TextBlock(text=text)])


def tool_response(*calls: tuple[str, dict[str, Any]], text: str | None = None) -> ModelResponse:
    """Build a ``tool_use`` turn requesting ``calls`` in order."""
    content: list[Any] = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=f'toolu_{next(_ids)}', name=name, input=args) for name, args in calls)
    return ModelResponse(stop_reason=StopReason.TOOL_USE, content=content)


class ScriptedLLMClient(LLMClient):
    """A model that replays pre-canned responses.

    Provide either:
    - an iterable of ``ModelResponse`` returned in order (the last one repeats), or
    - a callable that maps request -> response.

    Every request is kept in ``requests`` for assertions.
    """

    def __init__(
        self,
        responses: Iterable[ModelResponse] | None = None,
        fn: Callable[[ModelRequest], ModelResponse] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._fn = fn
        self.requests: list[ModelRequest] = []

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self._fn is not None:
            return self._fn(request)
        if not self._responses:
            return text_response('')
        if len(self._responses) == 1:
            return self._responses[0]
        return self._responses.pop(0)
