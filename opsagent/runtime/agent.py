"""
Agent execution core.

One loop drives every domain agent:
- checks the user's rate limit once, before the first model call
- sends the domain's tool schemas with every model call
- executes requested tools through the registry, in order
- pauses (returns) as soon as a tool needs a human decision
- stops after a fixed number of tool rounds, handing back partial progress

The streaming variant runs the same loop and reports progress through a
callback instead of only returning at the end.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from opsagent.core.errors import LLMClientError, RateLimitExceededError
from opsagent.domain.approval import ApprovalGate, ApprovalImpact, ApprovalRequest
from opsagent.domain.context import AgentDomain, ExecutionContext
from opsagent.domain.memory import ActionStatus, ActionStore, RecentAction
from opsagent.domain.policies import ApprovalPolicy, RiskAwareApprovalPolicy
from opsagent.domain.rate_limit import RateLimiter
from opsagent.llm.base import LLMClient, ModelRequest, ModelResponse, StopReason
from opsagent.observability.audit import AgentExecutionLog, AuditLog, ExecutionStatus
from opsagent.observability.tracing import Span, log_event
from opsagent.prompts import load_prompt
from opsagent.tools.base import ApprovalCategory, ToolResult
from opsagent.tools.registry import ToolRegistry

from .results import AgentResult


@dataclass(frozen=True)
class ToolLoopConfig:
    max_iterations: int = 10
    enable_approvals: bool = True
    enable_learning: bool = True

    @classmethod
    def from_settings(cls, settings: Any) -> 'ToolLoopConfig':
        return cls(
            max_iterations=settings.max_tool_iterations,
            enable_approvals=settings.enable_approvals,
            enable_learning=settings.enable_learning,
        )


class LoopState(str, Enum):
    START = "START"
    MODEL_CALL = "MODEL_CALL"
    TOOL_REQUESTED = "TOOL_REQUESTED"
    APPROVAL_CHECK = "APPROVAL_CHECK"
    EXECUTING = "EXECUTING"
    PAUSED_FOR_APPROVAL = "PAUSED_FOR_APPROVAL"
    DONE = "DONE"
    FAILED = "FAILED"


ChunkType = Literal['text', 'tool_input', 'tool_call', 'tool_result', 'approval_required', 'done', 'error']


@dataclass(frozen=True)
class StreamChunk:
    type: ChunkType
    content: str = ''
    tool_name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ChunkCallback = Callable[[StreamChunk], None]


@dataclass
class AgentRuntime:
    """Collaborators shared by every agent of the process."""

    llm: LLMClient
    registry: ToolRegistry
    approval_gate: ApprovalGate
    rate_limiter: RateLimiter
    approval_policy: ApprovalPolicy | None = None
    action_store: ActionStore | None = None
    audit_log: AuditLog | None = None
    loop_config: ToolLoopConfig = field(default_factory=ToolLoopConfig)

    def __post_init__(self) -> None:
        if self.approval_policy is None:
            self.approval_policy = RiskAwareApprovalPolicy(self.registry)


def local_time(tz_name: str, now: datetime | None = None) -> tuple[str, datetime]:
    """Resolve ``tz_name`` (UTC when unknown) and return it with the local time."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz_name, tz = 'UTC', ZoneInfo('UTC')
    return tz_name, (now or datetime.now(timezone.utc)).astimezone(tz)


def format_local_time(value: datetime) -> str:
    return value.strftime('%A, %B %d, %Y at %I:%M %p')


def _tool_result_block(tool_use_id: str, result: ToolResult) -> dict[str, Any]:
    content = result.data if result.success else {'error': result.error}
    return {
        'type': 'tool_result',
        'tool_use_id': tool_use_id,
        'content': json.dumps(content, ensure_ascii=False, default=str),
        'is_error': not result.success,
    }


def _noop(chunk: StreamChunk) -> None:
    return None


class Agent:
    """Base class of every agent. Subclasses set ``agent_type`` and ``domain``."""

    agent_type: str = 'agent'
    domain: AgentDomain = AgentDomain.ORCHESTRATOR
    prompt_name: str | None = None

    def __init__(self, runtime: AgentRuntime) -> None:
        self._rt = runtime

    @property
    def system_prompt(self) -> str:
        return load_prompt(self.prompt_name or self.domain.value)

    def _bind(self, context: ExecutionContext, session_id: str | None) -> ExecutionContext:
        return replace(context, domain=self.domain, session_id=session_id or context.session_id)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def process(self, context: ExecutionContext, message: str, session_id: str | None = None) -> AgentResult:
        return await self.execute_with_tools(self._bind(context, session_id), message)

    async def process_stream(
        self,
        context: ExecutionContext,
        message: str,
        on_chunk: ChunkCallback,
        session_id: str | None = None,
    ) -> AgentResult:
        return await self.execute_with_tools_stream(self._bind(context, session_id), message, on_chunk)

    async def resume_after_approval(
        self,
        context: ExecutionContext,
        approval_id: str,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> AgentResult:
        return await self._rt.approval_gate.resume_after_approval(
            self._bind(context, None),
            approval_id,
            agent_type=self.agent_type,
            tool_name=tool_name,
            tool_input=tool_input,
        )

    async def complete_text(self, context: ExecutionContext, message: str, *, system: str | None = None) -> str:
        """One model call without tools.

        Raises:
            RateLimitExceededError: the user has no calls left in the window.
            LLMClientError: transport or payload failure.
        """
        limit = self._rt.rate_limiter.check(context.user_id)
        if not limit.allowed:
            raise RateLimitExceededError(limit.reset_at)
        messages = [{'role': m.role, 'content': m.content} for m in context.conversation_history]
        messages.append({'role': 'user', 'content': message})
        response = await self._call_model(
            context, system if system is not None else self.build_system_prompt(context), messages, [], None
        )
        return response.text

    async def execute_with_tools(
        self,
        context: ExecutionContext,
        message: str,
        config: ToolLoopConfig | None = None,
    ) -> AgentResult:
        return await self._run(context, message, config or self._rt.loop_config, None, 'execute_with_tools')

    async def execute_with_tools_stream(
        self,
        context: ExecutionContext,
        message: str,
        on_chunk: ChunkCallback,
        config: ToolLoopConfig | None = None,
    ) -> AgentResult:
        return await self._run(context, message, config or self._rt.loop_config, on_chunk, 'execute_with_tools_stream')

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_system_prompt(self, context: ExecutionContext) -> str:
        parts = [self.system_prompt]

        prefs = context.preferences
        if prefs is not None:
            parts.append(
                '## User Preferences\n'
                f'- Communication tone: {prefs.communication_tone}\n'
                f'- Response length preference: {prefs.response_length}\n'
                f'- Language: {prefs.language}\n'
                f'- Working hours: {prefs.working_hours_start} - {prefs.working_hours_end}'
            )

        if context.recent_actions:
            lines = ['## Recent Actions (for context)']
            for action in context.recent_actions[:5]:
                outcome = {
                    ActionStatus.SUCCESS: 'successful',
                    ActionStatus.PENDING_APPROVAL: 'awaiting approval',
                }.get(action.status, 'failed')
                lines.append(f'- {action.action}: {outcome}')
            parts.append('\n'.join(lines))

        if context.patterns:
            lines = ['## Learned User Patterns']
            for pattern in context.patterns[:5]:
                lines.append(f'- {pattern.type}: {json.dumps(pattern.data, default=str)} (confidence: {pattern.confidence})')
            parts.append('\n'.join(lines))

        tz_name, now = local_time(context.timezone)
        parts.append(
            '## Current Context\n'
            f'- Session ID: {context.session_id}\n'
            f'- Request ID: {context.request_id}\n'
            f'- Domain: {context.domain.value}\n'
            f'- Today: {format_local_time(now)}\n'
            f'- User timezone: {tz_name}\n'
            f"Use timezone {tz_name} for all date and time operations. Respond in the user's language."
        )
        return '\n\n'.join(parts)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _call_model(
        self,
        context: ExecutionContext,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        on_chunk: ChunkCallback | None,
    ) -> ModelResponse:
        request = ModelRequest(
            system=system,
            messages=list(messages),
            tools=tools or None,
            metadata={'request_id': context.request_id, 'agent': self.agent_type},
        )
        span = Span(name='llm.call', trace_id=context.request_id)
        if on_chunk is None:
            response = await self._rt.llm.complete(request)
        else:
            response = None
            async for event in self._rt.llm.stream(request):
                if event.type == 'final':
                    response = event.response
                elif event.type == 'tool_input':
                    on_chunk(StreamChunk('tool_input', event.text, tool_name='pending'))
                else:
                    on_chunk(StreamChunk('text', event.text))
            if response is None:
                raise LLMClientError('Model stream ended without a final message')
        span.end()
        self._rt.rate_limiter.increment(context.user_id)
        log_event(
            'llm.response',
            trace_id=context.request_id,
            span=span,
            agent=self.agent_type,
            stop_reason=response.stop_reason.value,
            total_tokens=response.usage.total_tokens,
        )
        return response

    async def _run(
        self,
        context: ExecutionContext,
        message: str,
        config: ToolLoopConfig,
        on_chunk: ChunkCallback | None,
        action: str,
    ) -> AgentResult:
        started = time.perf_counter()
        emit = on_chunk or _noop
        tools_used: list[str] = []
        chain: list[str] = []
        texts: list[str] = []
        iterations = 0
        state = LoopState.START

        limit = self._rt.rate_limiter.check(context.user_id)
        if not limit.allowed:
            error = str(RateLimitExceededError(limit.reset_at))
            await self._audit(context, action, message, started, ExecutionStatus.FAILURE, tools_used, error=error)
            return AgentResult.failure(error)

        tools = [d.to_model_schema() for d in self._rt.registry.get_for_domain(self.domain)]
        messages: list[dict[str, Any]] = [{'role': m.role, 'content': m.content} for m in context.conversation_history]
        messages.append({'role': 'user', 'content': message})
        system = self.build_system_prompt(context)

        try:
            state = LoopState.MODEL_CALL
            response = await self._call_model(context, system, messages, tools, on_chunk)
            if response.text:
                texts.append(response.text)

            while response.stop_reason == StopReason.TOOL_USE:
                if iterations >= config.max_iterations:
                    chain.append(f'Stopped after {iterations} tool rounds')
                    log_event('agent.iteration_limit', trace_id=context.request_id, level=logging.WARNING,
                              agent=self.agent_type, iterations=iterations)
                    break
                iterations += 1
                state = LoopState.TOOL_REQUESTED
                tool_results: list[dict[str, Any]] = []

                for call in response.tool_uses:
                    tools_used.append(call.name)
                    chain.append(f'Calling tool: {call.name}')
                    emit(StreamChunk('tool_call', json.dumps({'name': call.name, 'input': call.input}, default=str),
                                     tool_name=call.name))

                    state = LoopState.APPROVAL_CHECK
                    decision = self._rt.approval_policy.resolve(call.name, call.input, context)
                    if config.enable_approvals and decision.requires_approval:
                        request = await self._rt.approval_gate.create_approval_request(
                            context,
                            agent_type=self.agent_type,
                            tool_name=call.name,
                            tool_input=call.input,
                            category=decision.category,
                            reasoning=decision.reason,
                        )
                        return await self._pause(context, action, message, started, request, tools_used, chain,
                                                 iterations, texts, emit)

                    state = LoopState.EXECUTING
                    result = await self._rt.registry.execute(call.name, call.input, context)
                    emit(StreamChunk('tool_result', json.dumps(
                        {'success': result.success, 'data': result.data, 'error': result.error}, default=str,
                    ), tool_name=call.name))
                    if config.enable_learning:
                        self._record_action(context, call.name, call.input, result)

                    if config.enable_approvals and result.success and result.requires_approval:
                        request = await self._request_handler_approval(context, call.name, call.input, result)
                        return await self._pause(context, action, message, started, request, tools_used, chain,
                                                 iterations, texts, emit)

                    tool_results.append(_tool_result_block(call.id, result))

                messages.append({'role': 'assistant', 'content': response.content_payload()})
                messages.append({'role': 'user', 'content': tool_results})
                state = LoopState.MODEL_CALL
                response = await self._call_model(context, system, messages, tools, on_chunk)
                if response.text:
                    texts.append(response.text)

        except Exception as exc:  # noqa: BLE001 - model/transport failures become a failed result
            error = str(exc) or type(exc).__name__
            log_event('agent.failed', trace_id=context.request_id, level=logging.ERROR, agent=self.agent_type,
                      state=state.value, error=f'{type(exc).__name__}: {exc}')
            emit(StreamChunk('error', error))
            await self._audit(context, action, message, started, ExecutionStatus.FAILURE, tools_used, error=error)
            return AgentResult.failure(error, tools_used=tools_used, chain_of_thought=chain, iterations=iterations)

        final_text = response.text
        emit(StreamChunk('done'))
        log_event('agent.completed', trace_id=context.request_id, agent=self.agent_type,
                  state=LoopState.DONE.value, iterations=iterations, tools_used=tools_used)
        await self._audit(context, action, message, started, ExecutionStatus.SUCCESS, tools_used,
                          output={'response_length': len(final_text)})
        return AgentResult(
            success=True,
            data=final_text,
            tools_used=tools_used,
            chain_of_thought=chain,
            iterations=iterations,
        )

    async def _request_handler_approval(
        self,
        context: ExecutionContext,
        tool_name: str,
        tool_input: dict[str, Any],
        result: ToolResult,
    ) -> ApprovalRequest:
        details = result.approval_details or {}
        return await self._rt.approval_gate.create_approval_request(
            context,
            agent_type=self.agent_type,
            tool_name=tool_name,
            tool_input=tool_input,
            category=ApprovalCategory(details.get('category', ApprovalCategory.REQUEST_APPROVAL)),
            reasoning=details.get('reasoning'),
            impact=ApprovalImpact.from_dict(details['impact']) if details.get('impact') else None,
            is_reversible=details.get('is_reversible', True),
        )

    async def _pause(
        self,
        context: ExecutionContext,
        action: str,
        message: str,
        started: float,
        request: ApprovalRequest,
        tools_used: list[str],
        chain: list[str],
        iterations: int,
        texts: list[str],
        emit: ChunkCallback,
    ) -> AgentResult:
        chain.append(f'Requires approval: {request.category.value}')
        emit(StreamChunk('approval_required', json.dumps({'approval_id': request.id}), tool_name=request.tool_name))
        log_event('agent.paused', trace_id=context.request_id, agent=self.agent_type,
                  state=LoopState.PAUSED_FOR_APPROVAL.value, approval_id=request.id, tool=request.tool_name)
        await self._audit(context, action, message, started, ExecutionStatus.PENDING_APPROVAL, tools_used,
                          approval_id=request.id)
        return AgentResult(
            success=True,
            data='\n'.join(texts) or None,
            requires_approval=True,
            approval_id=request.id,
            approval_category=request.category,
            tools_used=tools_used,
            chain_of_thought=chain,
            iterations=iterations,
        )

    def _record_action(self, context: ExecutionContext, tool_name: str, tool_input: dict[str, Any],
                       result: ToolResult) -> None:
        if self._rt.action_store is None:
            return
        if result.requires_approval:
            status, summary = ActionStatus.PENDING_APPROVAL, f'{tool_name} is waiting for approval'
        elif result.success:
            status, summary = ActionStatus.SUCCESS, f'{tool_name} succeeded'
        else:
            status, summary = ActionStatus.FAILURE, f'{tool_name} failed: {result.error}'
        action = RecentAction(
            agent_type=self.agent_type,
            action=tool_name,
            summary=summary,
            status=status,
            input=dict(tool_input),
            output={'data': result.data} if result.success else {'error': result.error},
        )
        try:
            self._rt.action_store.record(context.user_id, self.domain.value, action)
        except Exception as exc:  # noqa: BLE001 - learning is best effort
            log_event('action.record_failed', trace_id=context.request_id, level=logging.WARNING,
                      tool=tool_name, error=f'{type(exc).__name__}: {exc}')

    async def _audit(
        self,
        context: ExecutionContext,
        action: str,
        message: str,
        started: float,
        status: ExecutionStatus,
        tools_used: list[str],
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        approval_id: str | None = None,
    ) -> None:
        if self._rt.audit_log is None:
            return
        entry = AgentExecutionLog(
            user_id=context.user_id,
            agent_type=self.agent_type,
            action=action,
            input={'message': message[:200], 'tools_used': list(tools_used)},
            output=output or ({'error': error} if error else {}),
            tools_used=list(tools_used),
            duration_ms=(time.perf_counter() - started) * 1000.0,
            status=status,
            error=error,
            approval_id=approval_id,
            request_id=context.request_id,
        )
        try:
            await self._rt.audit_log.log_agent_action(entry)
        except Exception as exc:  # noqa: BLE001 - audit must not change the outcome
            log_event('audit.failed', trace_id=context.request_id, level=logging.WARNING,
                      error=f'{type(exc).__name__}: {exc}')
