"""
Request routing.

The orchestrator asks the model to classify a request, then:
- runs a predefined workflow when the model names one we know
- asks the user to clarify when the model is not confident enough
- otherwise hands the request to the target agent, plus any secondary
  agents, which run concurrently after it
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import replace
from string import Template
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from opsagent.core.errors import LLMParseError, RateLimitExceededError
from opsagent.domain.context import AgentDomain, ChatMessage, ExecutionContext
from opsagent.domain.conversation import ConversationStore
from opsagent.observability.tracing import log_event
from opsagent.prompts import load_prompt

from .agent import Agent, AgentRuntime, format_local_time, local_time
from .agents import DomainAgent, dispatch
from .results import AgentResult
from .workflow_engine import WorkflowEngine
from .workflows import WORKFLOWS, WorkflowDefinition

_FENCED_JSON = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.DOTALL)
_BARE_JSON = re.compile(r'\{.*\}', re.DOTALL)

AgentMap = Mapping[AgentDomain, DomainAgent]


class OrchestratorDecision(BaseModel):
    """Routing decision produced by the model. Accepts camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    intent: str
    target_agent: str = Field(alias='targetAgent')
    confidence: float = 0.0
    parameters: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ''
    secondary_agents: list[str] = Field(default_factory=list, alias='secondaryAgents')
    suggested_workflow: str | None = Field(default=None, alias='suggestedWorkflow')

    @field_validator('confidence')
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    @field_validator('secondary_agents', mode='before')
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return value or []


def parse_decision(text: str) -> OrchestratorDecision:
    """Extract the JSON decision from a model reply (fenced or embedded).

    Raises:
        LLMParseError: no JSON object, invalid JSON, or missing fields.
    """
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    if match is None:
        raise LLMParseError('No JSON found in response')
    raw = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        return OrchestratorDecision.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise LLMParseError(f'Invalid routing decision: {exc}') from exc


class Orchestrator(Agent):
    agent_type = 'OrchestratorAgent'
    domain = AgentDomain.ORCHESTRATOR

    def __init__(
        self,
        runtime: AgentRuntime,
        *,
        agents: AgentMap,
        workflow_engine: WorkflowEngine | None = None,
        conversations: ConversationStore | None = None,
        workflows: Mapping[str, WorkflowDefinition] = WORKFLOWS,
        request_approval_threshold: float = 0.7,
        history_limit: int = 10,
    ) -> None:
        super().__init__(runtime)
        self._agents = agents
        self._engine = workflow_engine or WorkflowEngine(agents)
        self._conversations = conversations
        self._workflows = workflows
        self._threshold = request_approval_threshold
        self._history_limit = history_limit

    def available_workflows(self) -> list[WorkflowDefinition]:
        return list(self._workflows.values())

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._workflows.get(workflow_id)

    def build_system_prompt(self, context: ExecutionContext) -> str:
        tz_name, now = local_time(context.timezone)
        return Template(load_prompt('orchestrator')).safe_substitute(
            local_time=format_local_time(now),
            iso_date=now.date().isoformat(),
            timezone=tz_name,
            workflows='\n'.join(f'- {w.id}: {w.description}' for w in self._workflows.values()),
        )

    async def analyze(self, context: ExecutionContext, message: str) -> OrchestratorDecision:
        reply = await self.complete_text(context, message)
        decision = parse_decision(reply)
        log_event('orchestrator.decision', trace_id=context.request_id, intent=decision.intent,
                  target=decision.target_agent, confidence=decision.confidence,
                  workflow=decision.suggested_workflow)
        return decision

    async def process(self, context: ExecutionContext, message: str, session_id: str | None = None) -> AgentResult:
        context = self._bind(context, session_id)
        history = self._load_history(context)
        if history:
            context = replace(context, conversation_history=tuple(history))

        try:
            decision = await self.analyze(context, message)
        except RateLimitExceededError as exc:
            return AgentResult.failure(str(exc))
        except Exception as exc:  # noqa: BLE001 - model or parse failure becomes a failed result
            log_event('orchestrator.analyze_failed', trace_id=context.request_id, level=logging.WARNING,
                      error=f'{type(exc).__name__}: {exc}')
            return AgentResult.failure(f'Failed to analyze request: {exc}', chain_of_thought=['Analysis failed'])

        workflow = self._workflows.get(decision.suggested_workflow) if decision.suggested_workflow else None
        if workflow is not None:
            result = await self._engine.execute(context, workflow, decision.parameters)
        else:
            result = await self._route(context, decision, message)

        self._remember(context, message, result)
        return result

    async def _route(self, context: ExecutionContext, decision: OrchestratorDecision, message: str) -> AgentResult:
        if decision.confidence < self._threshold:
            return AgentResult(
                success=True,
                data=(
                    "I'm not entirely sure what you need. Could you clarify? "
                    f'I understood: "{decision.intent}" and was going to use the {decision.target_agent} agent. '
                    'Is that correct?'
                ),
                chain_of_thought=[
                    f'Low confidence ({decision.confidence}): requesting clarification',
                    f'Intended agent: {decision.target_agent}',
                    f'Reasoning: {decision.reasoning}',
                ],
            )

        result = await dispatch(self._agents, context, decision.target_agent, message)
        if not decision.secondary_agents:
            return result

        payload = json.dumps(decision.parameters, ensure_ascii=False, default=str)
        secondary = await asyncio.gather(
            *(dispatch(self._agents, context, name, payload) for name in decision.secondary_agents)
        )
        notes = [f"Secondary agents executed: {', '.join(decision.secondary_agents)}"]
        notes.extend(
            f'Secondary agent {name} failed: {r.error}'
            for name, r in zip(decision.secondary_agents, secondary)
            if not r.success
        )
        return replace(result, chain_of_thought=[*result.chain_of_thought, *notes])

    async def process_event(self, context: ExecutionContext, event_type: str, payload: dict[str, Any]) -> AgentResult:
        """Handle an inbound integration event (new email, calendar change, reminder)."""
        context = self._bind(context, None)
        log_event('orchestrator.event', trace_id=context.request_id, event_type=event_type)
        body = json.dumps(payload, ensure_ascii=False, default=str)

        if event_type == 'email.received':
            return await dispatch(self._agents, context, AgentDomain.INBOX, f'Process new email: {body}')

        if event_type == 'calendar.event_created':
            if payload.get('attendees'):
                return await self._engine.execute(context, self._workflows['meeting_prep'], payload)
            return await dispatch(self._agents, context, AgentDomain.CALENDAR, f'Process new calendar event: {body}')

        if event_type == 'calendar.event_reminder':
            event_id = payload.get('event_id') or payload.get('eventId')
            return await dispatch(self._agents, context, AgentDomain.MEETING_PREP,
                                  f'Get meeting prep for event {event_id}')

        log_event('orchestrator.unknown_event', trace_id=context.request_id, level=logging.WARNING,
                  event_type=event_type)
        return AgentResult.failure(f'Unknown event type: {event_type}')

    def _load_history(self, context: ExecutionContext) -> list[ChatMessage]:
        if self._conversations is None:
            return []
        try:
            return self._conversations.history(context.session_id, self._history_limit)
        except Exception as exc:  # noqa: BLE001 - history is optional context
            log_event('conversation.load_failed', trace_id=context.request_id, level=logging.WARNING, error=str(exc))
            return []

    def _remember(self, context: ExecutionContext, message: str, result: AgentResult) -> None:
        if self._conversations is None:
            return
        try:
            self._conversations.append(context.session_id, ChatMessage('user', message))
            if isinstance(result.data, str) and result.data:
                self._conversations.append(context.session_id, ChatMessage('assistant', result.data[:2000]))
        except Exception as exc:  # noqa: BLE001 - history is optional context
            log_event('conversation.save_failed', trace_id=context.request_id, level=logging.WARNING, error=str(exc))
