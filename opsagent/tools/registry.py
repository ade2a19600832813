"""
The tool registry: one catalog per process, built at startup and read-only
while requests run.

Handler exceptions are converted into failed ``ToolResult`` values here, so
nothing a tool raises reaches the agent loop.
"""

from __future__ import annotations

import logging
from typing import Any

from opsagent.core.errors import DuplicateToolError
from opsagent.domain.context import AgentDomain, ExecutionContext
from opsagent.observability.tracing import Span, log_event

from .base import ApprovalCategory, RegisteredTool, ToolDefinition, ToolResult


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool) -> None:
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def get_for_domain(self, domain: AgentDomain) -> list[ToolDefinition]:
        """Schemas (no handlers) visible to an agent of ``domain``."""
        return [t.definition for t in self._tools.values() if t.domain == domain]

    def get_handlers_for_domain(self, domain: AgentDomain) -> dict[str, RegisteredTool]:
        return {name: t for name, t in self._tools.items() if t.domain == domain}

    def get_approval_category(self, name: str) -> ApprovalCategory:
        tool = self._tools.get(name)
        return tool.approval_category if tool else ApprovalCategory.AUTO_APPROVE

    def requires_approval(self, name: str) -> bool:
        return self.get_approval_category(name) != ApprovalCategory.AUTO_APPROVE

    def tool_names(self) -> list[str]:
        return list(self._tools)

    def clear(self) -> None:
        self._tools.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, name: str, tool_input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        """Run a tool by name. Never raises."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.fail(f'Tool {name} not found')

        span = Span(name=f'tool.{name}', trace_id=context.request_id)
        try:
            result = await tool.handler(tool_input, context)
        except Exception as exc:  # noqa: BLE001 - boundary wrapper for tool failures
            log_event(
                'tool.failed',
                trace_id=context.request_id,
                level=logging.WARNING,
                tool=name,
                error=f'{type(exc).__name__}: {exc}',
            )
            return ToolResult.fail(str(exc) or 'Unknown error executing tool')
        finally:
            span.end()

        if not isinstance(result, ToolResult):
            return ToolResult.fail(f'Tool {name} returned an invalid result')

        log_event('tool.executed', trace_id=context.request_id, span=span, tool=name, ok=result.success)
        return result
