"""Anthropic Messages API adapter (HTTP-based).

Why HTTP directly?
- Keeps the adapter isolated and explicit.
- Makes it easy to mock with httpx transports.

Request body: ``model``, ``max_tokens``, ``system``, ``messages`` and optional ``tools``.
A response ``content`` list mixes ``text`` and ``tool_use`` blocks; ``stop_reason``
is ``tool_use`` when the model wants tools run. Streaming uses server-sent events
(``content_block_start`` / ``content_block_delta`` / ``message_delta``).
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from opsagent.config import Settings
from opsagent.core.errors import LLMClientError

from .base import (
    ContentBlock,
    LLMClient,
    LLMUsage,
    ModelRequest,
    ModelResponse,
    StopReason,
    StreamEvent,
    TextBlock,
    ToolUseBlock,
)

ANTHROPIC_VERSION = '2023-06-01'


@dataclass(frozen=True)
class AnthropicMessagesConfig:
    """Configuration for the Messages API adapter."""

    api_key: str
    base_url: str = 'https://api.anthropic.com/v1'
    model: str = 'claude-sonnet-4-20250514'
    max_tokens: int = 4096
    timeout: float = 60.0


class AnthropicMessagesLLMClient(LLMClient):
    """LLM adapter that calls the Messages API."""

    def __init__(self, config: AnthropicMessagesConfig, client: httpx.AsyncClient | None = None) -> None:
        self._cfg = config
        self._client = client

    @staticmethod
    def from_settings(settings: Settings) -> 'AnthropicMessagesLLMClient':
        api_key = (settings.anthropic_api_key or '').strip()
        if not api_key:
            raise LLMClientError('OPSAGENT_ANTHROPIC_API_KEY is required to use AnthropicMessagesLLMClient.')
        cfg = AnthropicMessagesConfig(
            api_key=api_key,
            base_url=settings.llm_base_url,
            model=settings.model,
            max_tokens=settings.max_tokens,
            timeout=settings.llm_timeout_seconds,
        )
        return AnthropicMessagesLLMClient(cfg)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        async with self._http() as client:
            try:
                resp = await client.post(
                    self._url(),
                    json=self._body(request),
                    headers=self._headers(),
                    timeout=self._cfg.timeout,
                )
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise LLMClientError(f'Model request failed: {exc}') from exc
            return _parse_message(resp.json())

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        body = {**self._body(request), 'stream': True}
        accumulator = _StreamAccumulator()

        async with self._http() as client:
            try:
                async with client.stream(
                    'POST',
                    self._url(),
                    json=body,
                    headers=self._headers(),
                    timeout=self._cfg.timeout,
                ) as resp:
                    resp.raise_for_status()
                    async for event_type, data in _iter_sse(resp):
                        for out in accumulator.feed(event_type, data):
                            yield out
            except httpx.HTTPError as exc:
                raise LLMClientError(f'Model stream failed: {exc}') from exc

        yield StreamEvent(type='final', response=accumulator.response())

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient() as client:
            yield client

    def _url(self) -> str:
        return f'{self._cfg.base_url.rstrip("/")}/messages'

    def _headers(self) -> dict[str, str]:
        return {
            'x-api-key': self._cfg.api_key,
            'anthropic-version': ANTHROPIC_VERSION,
            'content-type': 'application/json',
        }

    def _body(self, request: ModelRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            'model': self._cfg.model,
            'max_tokens': self._cfg.max_tokens,
            'system': request.system,
            'messages': request.messages,
        }
        if request.tools:
            body['tools'] = request.tools
        return body


def _parse_stop_reason(value: Any) -> StopReason:
    try:
        return StopReason(value)
    except ValueError:
        return StopReason.END_TURN


def _parse_block(block: dict[str, Any]) -> ContentBlock | None:
    if block.get('type') == 'text':
        return TextBlock(text=str(block.get('text', '')))
    if block.get('type') == 'tool_use':
        return ToolUseBlock(
            id=str(block['id']),
            name=str(block['name']),
            input=dict(block.get('input') or {}),
        )
    return None


def _parse_usage(payload: dict[str, Any]) -> LLMUsage:
    usage = payload.get('usage')
    if not isinstance(usage, dict):
        return LLMUsage()
    input_tokens = usage.get('input_tokens')
    output_tokens = usage.get('output_tokens')
    return LLMUsage(
        input_tokens=input_tokens if isinstance(input_tokens, int) else None,
        output_tokens=output_tokens if isinstance(output_tokens, int) else None,
    )


def _parse_message(payload: dict[str, Any]) -> ModelResponse:
    content = payload.get('content')
    if not isinstance(content, list):
        raise LLMClientError('Unable to extract content from Messages API payload.')

    blocks = [b for b in (_parse_block(c) for c in content if isinstance(c, dict)) if b is not None]
    return ModelResponse(
        stop_reason=_parse_stop_reason(payload.get('stop_reason')),
        content=blocks,
        raw=payload,
        usage=_parse_usage(payload),
    )


async def _iter_sse(resp: httpx.Response) -> AsyncIterator[tuple[str, dict[str, Any]]]:
    event_type = ''
    async for line in resp.aiter_lines():
        if line.startswith('event:'):
            event_type = line[len('event:'):].strip()
        elif line.startswith('data:'):
            data = line[len('data:'):].strip()
            if not data:
                continue
            payload = json.loads(data)
            yield event_type or payload.get('type', ''), payload


class _StreamAccumulator:
    """Rebuilds the final message from streamed deltas."""

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}
        self._partial_json: dict[int, str] = {}
        self._stop_reason: Any = None
        self._message: dict[str, Any] = {}
        self._usage: dict[str, Any] = {}

    def feed(self, event_type: str, data: dict[str, Any]) -> list[StreamEvent]:
        if event_type == 'message_start':
            self._message = dict(data.get('message') or {})
            self._usage.update(self._message.get('usage') or {})
        elif event_type == 'content_block_start':
            index = int(data['index'])
            self._blocks[index] = dict(data.get('content_block') or {})
            if self._blocks[index].get('type') == 'text':
                self._blocks[index].setdefault('text', '')
        elif event_type == 'content_block_delta':
            index = int(data['index'])
            delta = data.get('delta') or {}
            if delta.get('type') == 'text_delta':
                text = str(delta.get('text', ''))
                self._blocks[index]['text'] = self._blocks[index].get('text', '') + text
                return [StreamEvent(type='text', text=text)]
            if delta.get('type') == 'input_json_delta':
                partial = str(delta.get('partial_json', ''))
                self._partial_json[index] = self._partial_json.get(index, '') + partial
                return [StreamEvent(type='tool_input', text=partial)]
        elif event_type == 'content_block_stop':
            index = int(data['index'])
            if index in self._partial_json:
                raw = self._partial_json.pop(index)
                self._blocks[index]['input'] = json.loads(raw) if raw else {}
        elif event_type == 'message_delta':
            delta = data.get('delta') or {}
            self._stop_reason = delta.get('stop_reason', self._stop_reason)
            self._usage.update(data.get('usage') or {})
        elif event_type == 'error':
            error = data.get('error') or {}
            raise LLMClientError(f"Model stream error: {error.get('message', 'unknown error')}")
        return []

    def response(self) -> ModelResponse:
        payload = {
            **self._message,
            'content': [self._blocks[i] for i in sorted(self._blocks)],
            'stop_reason': self._stop_reason,
            'usage': self._usage,
        }
        return _parse_message(payload)
