from __future__ import annotations

import json
from typing import Any

import pytest

from opsagent.core.errors import LLMParseError
from opsagent.domain.context import AgentDomain
from opsagent.domain.conversation import InMemoryConversationStore
from opsagent.llm.mock import ScriptedLLMClient, text_response
from opsagent.runtime.orchestrator import Orchestrator, parse_decision
from opsagent.runtime.results import AgentResult

from tests.fixtures.runtime import build_harness, make_context
from tests.fixtures.stub_agents import StubAgent, stub_agents


def _decision(**overrides: Any):
    body = {
        'intent': 'schedule a meeting',
        'targetAgent': 'calendar',
        'confidence': 0.9,
        'parameters': {'title': 'Sync'},
        'reasoning': 'calendar request',
        'secondaryAgents': [],
        'suggestedWorkflow': None,
    }
    body.update(overrides)
    return text_response(json.dumps(body))


def _orchestrator(llm, agents=None, **kwargs):
    h = build_harness(llm, max_calls=kwargs.pop('max_calls', 100))
    agents = agents if agents is not None else stub_agents()
    return Orchestrator(h.runtime, agents=agents, **kwargs), agents


# ---------------------------------------------------------------------------
# Decision parsing
# ---------------------------------------------------------------------------


def test_parse_fenced_json() -> None:
    text = 'Here you go:\n```json\n{"intent": "x", "targetAgent": "crm", "confidence": 0.8}\n```'

    decision = parse_decision(text)

    assert decision.target_agent == 'crm'
    assert decision.secondary_agents == []
    assert decision.suggested_workflow is None


def test_parse_embedded_json_and_normalise_fields() -> None:
    text = 'Routing: {"intent": "x", "targetAgent": "inbox", "confidence": 1.7, "secondaryAgents": null} done'

    decision = parse_decision(text)

    assert decision.confidence == 1.0
    assert decision.secondary_agents == []


def test_parse_accepts_snake_case_keys() -> None:
    decision = parse_decision('{"intent": "x", "target_agent": "tasks", "suggested_workflow": "daily_briefing"}')

    assert decision.target_agent == 'tasks'
    assert decision.suggested_workflow == 'daily_briefing'


@pytest.mark.parametrize('text', [
    'no json at all',
    '{"intent": "x", "targetAgent": ',
    '{"intent": "missing target"}',
])
def test_parse_rejects_unusable_replies(text: str) -> None:
    with pytest.raises(LLMParseError):
        parse_decision(text)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_confident_decision_routes_to_target_agent() -> None:
    # Arrange
    llm = ScriptedLLMClient([_decision()])
    orchestrator, agents = _orchestrator(llm)

    # Act
    result = await orchestrator.process(make_context(), 'Set up a sync tomorrow')

    # Assert
    assert result.success is True
    assert result.data == 'calendar done'
    assert agents[AgentDomain.CALENDAR].messages == ['Set up a sync tomorrow']
    assert llm.requests[0].tools is None
    assert '$workflows' not in llm.requests[0].system
    assert '- daily_briefing:' in llm.requests[0].system


@pytest.mark.asyncio
async def test_low_confidence_asks_for_clarification() -> None:
    llm = ScriptedLLMClient([_decision(confidence=0.4, intent='book something')])
    orchestrator, agents = _orchestrator(llm)

    result = await orchestrator.process(make_context(), 'book it')

    assert result.success is True
    assert result.data == (
        "I'm not entirely sure what you need. Could you clarify? "
        'I understood: "book something" and was going to use the calendar agent. Is that correct?'
    )
    assert all(agent.messages == [] for agent in agents.values())


@pytest.mark.asyncio
async def test_threshold_is_configurable() -> None:
    llm = ScriptedLLMClient([_decision(confidence=0.4)])
    orchestrator, agents = _orchestrator(llm, request_approval_threshold=0.3)

    await orchestrator.process(make_context(), 'book it')

    assert agents[AgentDomain.CALENDAR].messages == ['book it']


@pytest.mark.asyncio
async def test_secondary_agents_run_after_primary_and_failures_are_noted() -> None:
    # Arrange
    llm = ScriptedLLMClient([_decision(secondaryAgents=['crm', 'tasks'])])
    agents = stub_agents(
        crm=StubAgent(AgentDomain.CRM, AgentResult.failure('crm down'), delay=0.01),
        tasks=StubAgent(AgentDomain.TASKS, delay=0.01),
    )
    orchestrator, _ = _orchestrator(llm, agents)

    # Act
    result = await orchestrator.process(make_context(), 'Schedule and log it')

    # Assert
    assert result.success is True
    assert result.data == 'calendar done'
    assert agents[AgentDomain.CRM].messages == [json.dumps({'title': 'Sync'})]
    assert agents[AgentDomain.TASKS].messages == [json.dumps({'title': 'Sync'})]
    assert result.chain_of_thought[-2:] == [
        'Secondary agents executed: crm, tasks',
        'Secondary agent crm failed: crm down',
    ]


@pytest.mark.asyncio
async def test_unknown_agent_fails_cleanly() -> None:
    llm = ScriptedLLMClient([_decision(targetAgent='finance')])
    orchestrator, _ = _orchestrator(llm)

    result = await orchestrator.process(make_context(), 'Pay the invoice')

    assert result.success is False
    assert result.error == 'Agent not found: finance'
    assert result.chain_of_thought == ['Failed to load agent: finance']


@pytest.mark.asyncio
async def test_agent_crash_is_contained() -> None:
    llm = ScriptedLLMClient([_decision()])
    agents = stub_agents(calendar=StubAgent(AgentDomain.CALENDAR, exc=RuntimeError('calendar api 500')))
    orchestrator, _ = _orchestrator(llm, agents)

    result = await orchestrator.process(make_context(), 'Schedule')

    assert result.success is False
    assert result.error == 'calendar api 500'
    assert result.chain_of_thought == ['Agent execution failed: calendar']


@pytest.mark.asyncio
async def test_unparseable_analysis_fails() -> None:
    llm = ScriptedLLMClient([text_response('I think the calendar agent should do it.')])
    orchestrator, agents = _orchestrator(llm)

    result = await orchestrator.process(make_context(), 'Schedule')

    assert result.success is False
    assert result.error == 'Failed to analyze request: No JSON found in response'
    assert result.chain_of_thought == ['Analysis failed']
    assert all(agent.messages == [] for agent in agents.values())


@pytest.mark.asyncio
async def test_rate_limited_analysis_fails_without_model_call() -> None:
    llm = ScriptedLLMClient([_decision()])
    orchestrator, _ = _orchestrator(llm, max_calls=0)

    result = await orchestrator.process(make_context(), 'Schedule')

    assert result.success is False
    assert result.error.startswith('Rate limit exceeded. Resets at ')
    assert llm.requests == []


# ---------------------------------------------------------------------------
# Workflows and history
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_suggested_workflow_runs_instead_of_routing() -> None:
    llm = ScriptedLLMClient([_decision(suggestedWorkflow='daily_briefing', parameters={'date': '2026-03-02'})])
    orchestrator, agents = _orchestrator(llm)

    result = await orchestrator.process(make_context(), 'Brief me')

    assert result.success is True
    assert result.data == 'Workflow "Daily Briefing" completed. 4/4 steps successful.'
    assert agents[AgentDomain.INBOX].messages[0].startswith('Execute summarize_email: ')


@pytest.mark.asyncio
async def test_unknown_workflow_falls_back_to_routing() -> None:
    llm = ScriptedLLMClient([_decision(suggestedWorkflow='world_domination')])
    orchestrator, agents = _orchestrator(llm)

    await orchestrator.process(make_context(), 'Schedule')

    assert agents[AgentDomain.CALENDAR].messages == ['Schedule']


def test_workflow_catalog_lookup() -> None:
    orchestrator, _ = _orchestrator(ScriptedLLMClient())

    assert {w.id for w in orchestrator.available_workflows()} == {
        'new_meeting_email', 'trip_planning', 'meeting_prep', 'daily_briefing',
    }
    assert orchestrator.get_workflow('trip_planning').name == 'Plan Business Trip'
    assert orchestrator.get_workflow('nope') is None


@pytest.mark.asyncio
async def test_conversation_history_is_stored_and_replayed() -> None:
    # Arrange
    llm = ScriptedLLMClient([_decision()])
    store = InMemoryConversationStore()
    orchestrator, _ = _orchestrator(llm, conversations=store)
    context = make_context()

    # Act
    await orchestrator.process(context, 'first question')
    await orchestrator.process(context, 'second question')

    # Assert
    replayed = llm.requests[1].messages
    assert [(m['role'], m['content']) for m in replayed] == [
        ('user', 'first question'),
        ('assistant', 'calendar done'),
        ('user', 'second question'),
    ]
    assert len(store.history(context.session_id, limit=10)) == 4


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_email_event_goes_to_inbox() -> None:
    orchestrator, agents = _orchestrator(ScriptedLLMClient())

    result = await orchestrator.process_event(make_context(), 'email.received', {'id': 'm-1'})

    assert result.success is True
    assert agents[AgentDomain.INBOX].messages == ['Process new email: {"id": "m-1"}']


@pytest.mark.asyncio
async def test_calendar_event_with_attendees_runs_meeting_prep() -> None:
    orchestrator, agents = _orchestrator(ScriptedLLMClient())

    result = await orchestrator.process_event(make_context(), 'calendar.event_created',
                                              {'event_id': 'e1', 'attendees': ['ana@acme.test']})

    assert result.data == 'Workflow "Prepare for Meeting" completed. 4/4 steps successful.'
    assert len(agents[AgentDomain.MEETING_PREP].messages) == 3
    assert agents[AgentDomain.CALENDAR].messages == []


@pytest.mark.asyncio
async def test_calendar_event_without_attendees_goes_to_calendar() -> None:
    orchestrator, agents = _orchestrator(ScriptedLLMClient())

    await orchestrator.process_event(make_context(), 'calendar.event_created', {'event_id': 'e1'})

    assert agents[AgentDomain.CALENDAR].messages == ['Process new calendar event: {"event_id": "e1"}']


@pytest.mark.asyncio
async def test_reminder_event_requests_meeting_prep() -> None:
    orchestrator, agents = _orchestrator(ScriptedLLMClient())

    await orchestrator.process_event(make_context(), 'calendar.event_reminder', {'eventId': 'e9'})

    assert agents[AgentDomain.MEETING_PREP].messages == ['Get meeting prep for event e9']


@pytest.mark.asyncio
async def test_unknown_event_fails() -> None:
    orchestrator, agents = _orchestrator(ScriptedLLMClient())

    result = await orchestrator.process_event(make_context(), 'crm.contact_merged', {})

    assert result.success is False
    assert result.error == 'Unknown event type: crm.contact_merged'
