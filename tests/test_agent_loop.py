from __future__ import annotations

import json
from datetime import timedelta

import pytest

from opsagent.core.errors import LLMClientError
from opsagent.domain.approval import ApprovalStatus
from opsagent.domain.context import AgentDomain, ChatMessage, UserPreferences
from opsagent.domain.memory import ActionStatus, RecentAction
from opsagent.llm.base import LLMClient, ModelRequest, ModelResponse
from opsagent.llm.mock import ScriptedLLMClient, text_response, tool_response
from opsagent.observability.audit import ExecutionStatus
from opsagent.runtime.agent import ToolLoopConfig
from opsagent.runtime.agents import CalendarAgent, InboxAgent
from opsagent.tools.base import ApprovalCategory, ToolResult

from tests.fixtures.runtime import ToolSpy, build_harness, make_context, spy_tool


class FailingLLM(LLMClient):
    async def complete(self, request: ModelRequest) -> ModelResponse:
        raise LLMClientError('Model request failed: 529 overloaded')


class BrokenActionStore:
    def record(self, user_id, domain, action):
        raise ConnectionError('redis unavailable')

    def recent(self, user_id, domain, limit=20):
        return []


@pytest.mark.asyncio
async def test_plain_text_answer_needs_no_tools() -> None:
    llm = ScriptedLLMClient([text_response('You have two meetings today.')])
    h = build_harness(llm)

    context = make_context()

    result = await CalendarAgent(h.runtime).process(context, 'What is on today?')

    assert result.success is True
    assert result.data == 'You have two meetings today.'
    assert result.tools_used == []
    assert result.iterations == 0
    assert len(llm.requests) == 1
    assert h.audit.entries[-1].status == ExecutionStatus.SUCCESS
    assert h.audit.entries[-1].request_id == context.request_id


@pytest.mark.asyncio
async def test_tool_result_is_fed_back_to_the_model() -> None:
    # Arrange
    first = tool_response(('detect_conflicts', {'date': '2026-03-02'}))
    llm = ScriptedLLMClient([first, text_response('No conflicts.')])
    spy = ToolSpy(ToolResult.ok({'conflicts': []}))
    h = build_harness(llm, spy_tool('detect_conflicts', spy))

    # Act
    result = await CalendarAgent(h.runtime).process(make_context(), 'Any conflicts?')

    # Assert
    assert result.success is True
    assert result.data == 'No conflicts.'
    assert result.tools_used == ['detect_conflicts']
    assert result.chain_of_thought == ['Calling tool: detect_conflicts']
    assert spy.calls[0][0] == {'date': '2026-03-02'}

    second = llm.requests[1]
    assert second.messages[1] == {'role': 'assistant', 'content': first.content_payload()}
    block = second.messages[2]['content'][0]
    assert block['tool_use_id'] == first.tool_uses[0].id
    assert block['is_error'] is False
    assert json.loads(block['content']) == {'conflicts': []}


@pytest.mark.asyncio
async def test_loop_stops_after_max_iterations_without_failing() -> None:
    llm = ScriptedLLMClient([tool_response(('detect_conflicts', {}), text='still looking')])
    spy = ToolSpy()
    h = build_harness(llm, spy_tool('detect_conflicts', spy), loop_config=ToolLoopConfig(max_iterations=3))

    result = await CalendarAgent(h.runtime).process(make_context(), 'Loop forever')

    assert result.success is True
    assert result.iterations == 3
    assert len(spy.calls) == 3
    assert len(llm.requests) == 4
    assert result.data == 'still looking'
    assert result.chain_of_thought[-1] == 'Stopped after 3 tool rounds'


@pytest.mark.asyncio
async def test_approval_required_tool_pauses_before_execution() -> None:
    # Arrange
    send = ToolSpy()
    archive = ToolSpy()
    llm = ScriptedLLMClient([
        tool_response(('send_email', {'to': ['ceo@acme.test'], 'subject': 'Hi', 'body': 'Hello'}),
                      ('archive_emails', {'email_ids': ['m1']})),
    ])
    h = build_harness(
        llm,
        spy_tool('send_email', send, domain=AgentDomain.INBOX, category=ApprovalCategory.REQUEST_APPROVAL),
        spy_tool('archive_emails', archive, domain=AgentDomain.INBOX),
    )

    # Act
    result = await InboxAgent(h.runtime).process(make_context(domain=AgentDomain.INBOX), 'Email the CEO')

    # Assert
    assert result.success is True
    assert result.requires_approval is True
    assert result.approval_category == ApprovalCategory.REQUEST_APPROVAL
    assert result.tools_used == ['send_email']
    assert result.chain_of_thought[-1] == 'Requires approval: REQUEST_APPROVAL'
    assert send.calls == [] and archive.calls == []
    assert len(llm.requests) == 1

    stored = h.approvals.get(result.approval_id)
    assert stored.status == ApprovalStatus.PENDING
    assert stored.tool_name == 'send_email'
    assert stored.agent_type == 'InboxAgent'
    assert stored.proposed_action['subject'] == 'Hi'
    assert stored.expires_at == h.clock.now + timedelta(hours=24)
    assert len(h.notifier.sent) == 1
    assert h.audit.entries[-1].status == ExecutionStatus.PENDING_APPROVAL
    assert h.audit.entries[-1].approval_id == result.approval_id


@pytest.mark.asyncio
async def test_disabled_approvals_execute_directly() -> None:
    send = ToolSpy()
    llm = ScriptedLLMClient([tool_response(('send_email', {'to': ['a@b.test']})), text_response('Sent.')])
    h = build_harness(
        llm,
        spy_tool('send_email', send, domain=AgentDomain.INBOX, category=ApprovalCategory.REQUEST_APPROVAL),
        loop_config=ToolLoopConfig(enable_approvals=False),
    )

    result = await InboxAgent(h.runtime).process(make_context(), 'Send it')

    assert result.requires_approval is False
    assert result.data == 'Sent.'
    assert len(send.calls) == 1


@pytest.mark.asyncio
async def test_rate_limit_short_circuits_before_model_call() -> None:
    llm = ScriptedLLMClient([text_response('unused')])
    h = build_harness(llm, max_calls=1)
    h.limiter.increment('user-1')

    result = await CalendarAgent(h.runtime).process(make_context(), 'Hello')

    assert result.success is False
    assert result.error.startswith('Rate limit exceeded. Resets at ')
    assert llm.requests == []


@pytest.mark.asyncio
async def test_each_model_round_trip_counts_against_the_rate_limit() -> None:
    llm = ScriptedLLMClient([tool_response(('detect_conflicts', {})), text_response('done')])
    h = build_harness(llm, spy_tool('detect_conflicts', ToolSpy()), max_calls=10)

    await CalendarAgent(h.runtime).process(make_context(), 'Check')

    assert h.limiter.check('user-1').remaining == 8


@pytest.mark.asyncio
async def test_model_error_becomes_failed_result() -> None:
    h = build_harness(FailingLLM())

    result = await CalendarAgent(h.runtime).process(make_context(), 'Hello')

    assert result.success is False
    assert result.error == 'Model request failed: 529 overloaded'
    assert h.audit.entries[-1].status == ExecutionStatus.FAILURE
    assert h.audit.entries[-1].error == result.error


@pytest.mark.asyncio
async def test_tool_failure_is_visible_to_the_model_and_loop_continues() -> None:
    llm = ScriptedLLMClient([tool_response(('detect_conflicts', {})), text_response('The calendar is unavailable.')])
    h = build_harness(llm, spy_tool('detect_conflicts', ToolSpy(exc=TimeoutError('backend timeout'))))

    result = await CalendarAgent(h.runtime).process(make_context(), 'Check')

    assert result.success is True
    block = llm.requests[1].messages[-1]['content'][0]
    assert block['is_error'] is True
    assert json.loads(block['content']) == {'error': 'backend timeout'}
    recorded = h.actions.recent('user-1', 'calendar')
    assert recorded[0].status == ActionStatus.FAILURE


@pytest.mark.asyncio
async def test_learning_failure_does_not_fail_the_request() -> None:
    llm = ScriptedLLMClient([tool_response(('detect_conflicts', {})), text_response('ok')])
    h = build_harness(llm, spy_tool('detect_conflicts', ToolSpy()), action_store=BrokenActionStore())

    result = await CalendarAgent(h.runtime).process(make_context(), 'Check')

    assert result.success is True
    assert result.data == 'ok'


@pytest.mark.asyncio
async def test_successful_tools_are_recorded_for_learning() -> None:
    llm = ScriptedLLMClient([tool_response(('detect_conflicts', {'date': 'today'})), text_response('ok')])
    h = build_harness(llm, spy_tool('detect_conflicts', ToolSpy()))

    await CalendarAgent(h.runtime).process(make_context(domain=AgentDomain.INBOX), 'Check')

    [action] = h.actions.recent('user-1', 'calendar')
    assert action.action == 'detect_conflicts'
    assert action.agent_type == 'CalendarAgent'
    assert action.status == ActionStatus.SUCCESS
    assert action.confidence == 0.8
    assert action.input == {'date': 'today'}


@pytest.mark.asyncio
async def test_handler_declared_approval_pauses_and_resumes_with_approval_context() -> None:
    # Arrange: the handler asks for confirmation unless it runs under an approval
    calls = []

    async def schedule(tool_input, context):
        calls.append(context.approval_id)
        if context.approval_id is None:
            return ToolResult(
                success=True,
                data={'message': 'needs confirmation'},
                requires_approval=True,
                approval_details={'reasoning': 'Meeting with external attendees',
                                  'impact': {'level': 'MEDIUM', 'affected_areas': ['calendar']}},
            )
        return ToolResult.ok({'event_id': 'evt-1'})

    llm = ScriptedLLMClient([tool_response(('block_focus_time', {'duration_minutes': 60}))])
    h = build_harness(llm, spy_tool('block_focus_time', schedule))
    agent = CalendarAgent(h.runtime)
    context = make_context()

    # Act
    paused = await agent.process(context, 'Block an hour')
    h.gate.decide(paused.approval_id, approved=True)
    resumed = await agent.resume_after_approval(context, paused.approval_id)

    # Assert
    assert paused.requires_approval is True
    assert h.approvals.get(paused.approval_id).reasoning == 'Meeting with external attendees'
    assert resumed.success is True
    assert resumed.data == {'event_id': 'evt-1'}
    assert resumed.tools_used == ['block_focus_time']
    assert calls == [None, paused.approval_id]


@pytest.mark.asyncio
async def test_streaming_reports_progress_across_tool_rounds() -> None:
    llm = ScriptedLLMClient([
        tool_response(('detect_conflicts', {}), text='Checking your calendar'),
        text_response('All clear'),
    ])
    h = build_harness(llm, spy_tool('detect_conflicts', ToolSpy()))
    chunks = []

    result = await CalendarAgent(h.runtime).process_stream(make_context(), 'Conflicts?', chunks.append)

    assert result.success is True
    assert result.data == 'All clear'
    assert [c.type for c in chunks] == ['text', 'tool_call', 'tool_result', 'text', 'done']
    assert chunks[1].tool_name == 'detect_conflicts'


@pytest.mark.asyncio
async def test_streaming_reports_approval_pause() -> None:
    llm = ScriptedLLMClient([tool_response(('cancel_meeting', {'event_id': 'e1'}))])
    h = build_harness(llm, spy_tool('cancel_meeting', ToolSpy(), category=ApprovalCategory.ALWAYS_ASK))
    chunks = []

    result = await CalendarAgent(h.runtime).process_stream(make_context(), 'Cancel it', chunks.append)

    assert result.requires_approval is True
    assert chunks[-1].type == 'approval_required'
    assert json.loads(chunks[-1].content) == {'approval_id': result.approval_id}


@pytest.mark.asyncio
async def test_system_prompt_carries_user_context() -> None:
    llm = ScriptedLLMClient([text_response('ok')])
    h = build_harness(llm)
    context = make_context(
        timezone='America/New_York',
        preferences=UserPreferences(communication_tone='casual'),
        recent_actions=(RecentAction('CalendarAgent', 'schedule_meeting', 's', ActionStatus.SUCCESS),),
        conversation_history=(ChatMessage('user', 'earlier question'), ChatMessage('assistant', 'earlier answer')),
    )

    await CalendarAgent(h.runtime).process(context, 'Now what?')

    request = llm.requests[0]
    assert 'Calendar Agent' in request.system
    assert 'Communication tone: casual' in request.system
    assert '- schedule_meeting: successful' in request.system
    assert 'User timezone: America/New_York' in request.system
    assert 'Domain: calendar' in request.system
    assert [m['content'] for m in request.messages] == ['earlier question', 'earlier answer', 'Now what?']


@pytest.mark.asyncio
async def test_unknown_timezone_falls_back_to_utc() -> None:
    llm = ScriptedLLMClient([text_response('ok')])
    h = build_harness(llm)

    await CalendarAgent(h.runtime).process(make_context(timezone='Mars/Olympus'), 'hi')

    assert 'User timezone: UTC' in llm.requests[0].system


@pytest.mark.asyncio
async def test_agent_only_sees_tools_of_its_domain() -> None:
    llm = ScriptedLLMClient([text_response('ok')])
    h = build_harness(
        llm,
        spy_tool('detect_conflicts', ToolSpy(), domain=AgentDomain.CALENDAR),
        spy_tool('search_emails', ToolSpy(), domain=AgentDomain.INBOX),
    )

    await CalendarAgent(h.runtime).process(make_context(domain=AgentDomain.INBOX), 'hi')

    assert [t['name'] for t in llm.requests[0].tools] == ['detect_conflicts']
