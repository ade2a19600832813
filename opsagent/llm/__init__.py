"""LLM adapters.

This package intentionally contains ONLY model inference adapters.

Rules:
- No tool execution here.
- No approval logic here.
- No retries.

Those belong in the runtime layer.
"""
from .base import (
    LLMClient,
    LLMUsage,
    ModelRequest,
    ModelResponse,
    StopReason,
    StreamEvent,
    TextBlock,
    ToolUseBlock,
)
