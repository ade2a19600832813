from __future__ import annotations

from datetime import timedelta

import pytest

from opsagent.core.errors import (
    ApprovalAlreadyDecidedError,
    ApprovalExpiredError,
    ApprovalMessages,
    ApprovalNotFoundError,
)
from opsagent.domain.approval import ApprovalGate, ApprovalStatus, InMemoryApprovalRequestRepository
from opsagent.domain.approval.entities import DecidedBy, ImpactLevel
from opsagent.domain.memory import ActionStatus, InMemoryActionStore
from opsagent.tools.base import ApprovalCategory, ToolResult
from opsagent.tools.registry import ToolRegistry

from tests.fixtures.recording_notifier import RecordingNotificationDispatcher
from tests.fixtures.runtime import MutableClock, ToolSpy, make_context, spy_tool


class ExplodingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def send(self, user_id, title, body, actions=None) -> bool:
        self.calls += 1
        raise ConnectionError('push service down')


def _gate(spy: ToolSpy | None = None, notifier=None):
    clock = MutableClock()
    registry = ToolRegistry()
    registry.register(spy_tool('send_email', spy or ToolSpy(), category=ApprovalCategory.REQUEST_APPROVAL))
    repo = InMemoryApprovalRequestRepository()
    actions = InMemoryActionStore()
    gate = ApprovalGate(repo, registry, notifier=notifier, action_store=actions, clock=clock)
    return gate, repo, actions, clock


async def _pending(gate: ApprovalGate, **kwargs):
    return await gate.create_approval_request(
        make_context(),
        agent_type='InboxAgent',
        tool_name='send_email',
        tool_input=kwargs.pop('tool_input', {'to': ['a@b.test'], 'subject': 'Draft'}),
        category=kwargs.pop('category', ApprovalCategory.REQUEST_APPROVAL),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_create_persists_pending_request_and_notifies() -> None:
    # Arrange
    notifier = RecordingNotificationDispatcher()
    gate, repo, _, clock = _gate(notifier=notifier)

    # Act
    request = await _pending(gate)

    # Assert
    stored = repo.get(request.id)
    assert stored.status == ApprovalStatus.PENDING
    assert stored.expires_at == clock.now + timedelta(hours=24)
    assert stored.reasoning == "Tool 'send_email' requires user approval"
    assert stored.impact.level == ImpactLevel.MEDIUM
    assert stored.impact.affected_areas == ('InboxAgent',)
    [sent] = notifier.sent
    assert sent['title'] == 'Approval needed: send_email'
    assert [a['action'] for a in sent['actions']] == ['approve', 'reject']


@pytest.mark.asyncio
async def test_always_ask_defaults_to_high_impact() -> None:
    gate, _, _, _ = _gate()

    request = await _pending(gate, category=ApprovalCategory.ALWAYS_ASK)

    assert request.impact.level == ImpactLevel.HIGH


@pytest.mark.asyncio
async def test_irreversible_always_ask_defaults_to_critical_impact() -> None:
    gate, _, _, _ = _gate()

    request = await _pending(gate, category=ApprovalCategory.ALWAYS_ASK, is_reversible=False)

    assert request.impact.level == ImpactLevel.CRITICAL


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_creation() -> None:
    notifier = ExplodingNotifier()
    gate, repo, _, _ = _gate(notifier=notifier)

    request = await _pending(gate)

    assert notifier.calls == 1
    assert repo.get(request.id).status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_approved_request_executes_exactly_once() -> None:
    # Arrange
    spy = ToolSpy(ToolResult.ok({'message_id': 'm-1'}))
    gate, repo, actions, _ = _gate(spy)
    request = await _pending(gate)
    gate.decide(request.id, approved=True)
    context = make_context()

    # Act
    first = await gate.resume_after_approval(context, request.id, agent_type='InboxAgent')
    second = await gate.resume_after_approval(context, request.id, agent_type='InboxAgent')

    # Assert
    assert first.success is True
    assert first.data == {'message_id': 'm-1'}
    assert first.tools_used == ['send_email']
    assert first.approval_id == request.id
    assert second.success is False
    assert second.error == ApprovalMessages.ALREADY_EXECUTED
    assert len(spy.calls) == 1
    assert spy.calls[0][1].approval_id == request.id
    assert repo.get(request.id).consumed_at is not None
    [recorded] = actions.recent('user-1', 'calendar')
    assert recorded.status == ActionStatus.SUCCESS
    assert recorded.summary == 'Executed send_email after approval'


@pytest.mark.asyncio
async def test_modifications_override_the_proposed_input() -> None:
    spy = ToolSpy()
    gate, _, _, _ = _gate(spy)
    request = await _pending(gate, tool_input={'to': ['a@b.test'], 'subject': 'Draft'})
    gate.decide(request.id, approved=True, modifications={'subject': 'Final'})

    await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent')

    assert spy.calls[0][0] == {'to': ['a@b.test'], 'subject': 'Final'}


@pytest.mark.asyncio
async def test_rejected_request_never_executes() -> None:
    spy = ToolSpy()
    gate, repo, _, _ = _gate(spy)
    request = await _pending(gate)
    gate.decide(request.id, approved=False, feedback='Not now')

    result = await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent')

    assert result.success is False
    assert result.error == ApprovalMessages.REJECTED
    assert spy.calls == []
    assert repo.get(request.id).feedback == 'Not now'


@pytest.mark.asyncio
async def test_resume_reports_each_non_executable_state() -> None:
    spy = ToolSpy()
    gate, repo, _, clock = _gate(spy)
    pending = await _pending(gate)
    stale = await _pending(gate)
    context = make_context()

    missing = await gate.resume_after_approval(context, 'nope', agent_type='InboxAgent')
    waiting = await gate.resume_after_approval(context, pending.id, agent_type='InboxAgent')
    clock.advance(hours=25)
    expired = await gate.resume_after_approval(context, stale.id, agent_type='InboxAgent')

    assert missing.error == ApprovalMessages.NOT_FOUND
    assert waiting.error == ApprovalMessages.PENDING
    assert expired.error == ApprovalMessages.EXPIRED
    assert repo.get(stale.id).status == ApprovalStatus.EXPIRED
    assert spy.calls == []


@pytest.mark.asyncio
async def test_approval_decided_in_time_still_executes_after_its_deadline() -> None:
    # Arrange
    spy = ToolSpy(ToolResult.ok({'message_id': 'm-2'}))
    gate, repo, _, clock = _gate(spy)
    request = await _pending(gate)
    clock.advance(hours=23)
    gate.decide(request.id, approved=True)
    clock.advance(hours=2)

    # Act
    result = await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent')

    # Assert
    assert result.success is True
    assert result.data == {'message_id': 'm-2'}
    assert len(spy.calls) == 1
    assert repo.get(request.id).status == ApprovalStatus.APPROVED
    assert gate.expire_stale() == 0


@pytest.mark.asyncio
async def test_resume_rejects_a_different_tool() -> None:
    spy = ToolSpy()
    gate, repo, _, _ = _gate(spy)
    request = await _pending(gate)
    gate.decide(request.id, approved=True)

    result = await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent',
                                              tool_name='delete_contact')

    assert result.error == ApprovalMessages.MISMATCH
    assert spy.calls == []
    assert repo.get(request.id).consumed_at is None


@pytest.mark.asyncio
async def test_failed_execution_is_still_consumed() -> None:
    spy = ToolSpy(exc=RuntimeError('smtp refused'))
    gate, _, actions, _ = _gate(spy)
    request = await _pending(gate)
    gate.decide(request.id, approved=True)

    first = await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent')
    second = await gate.resume_after_approval(make_context(), request.id, agent_type='InboxAgent')

    assert first.success is False
    assert first.error == 'smtp refused'
    assert second.error == ApprovalMessages.ALREADY_EXECUTED
    assert actions.recent('user-1', 'calendar')[0].status == ActionStatus.FAILURE


@pytest.mark.asyncio
async def test_decide_errors() -> None:
    gate, repo, _, clock = _gate()
    decided = await _pending(gate)
    late = await _pending(gate)
    gate.decide(decided.id, approved=True)

    with pytest.raises(ApprovalNotFoundError):
        gate.decide('missing', approved=True)
    with pytest.raises(ApprovalAlreadyDecidedError):
        gate.decide(decided.id, approved=False)

    clock.advance(hours=24)
    with pytest.raises(ApprovalExpiredError):
        gate.decide(late.id, approved=True)
    assert repo.get(late.id).status == ApprovalStatus.EXPIRED
    with pytest.raises(ApprovalExpiredError):
        gate.decide(late.id, approved=True)


@pytest.mark.asyncio
async def test_decide_records_who_and_when() -> None:
    gate, _, _, clock = _gate()
    request = await _pending(gate)

    decided = gate.decide(request.id, approved=True, decided_by=DecidedBy.AUTO)

    assert decided.status == ApprovalStatus.APPROVED
    assert decided.decided_by == DecidedBy.AUTO
    assert decided.decided_at == clock.now


@pytest.mark.asyncio
async def test_expire_stale_only_touches_overdue_pending_requests() -> None:
    gate, repo, _, clock = _gate()
    old = await _pending(gate)
    approved = await _pending(gate)
    gate.decide(approved.id, approved=True)
    clock.advance(hours=20)
    fresh = await _pending(gate)
    clock.advance(hours=5)

    count = gate.expire_stale()

    assert count == 1
    assert repo.get(old.id).status == ApprovalStatus.EXPIRED
    assert repo.get(old.id).decided_by == DecidedBy.TIMEOUT
    assert repo.get(approved.id).status == ApprovalStatus.APPROVED
    assert repo.get(fresh.id).status == ApprovalStatus.PENDING
    assert gate.expire_stale() == 0


@pytest.mark.asyncio
async def test_pending_history_and_stats() -> None:
    gate, _, _, clock = _gate()
    first = await _pending(gate)
    clock.advance(minutes=1)
    second = await _pending(gate)
    clock.advance(minutes=1)
    third = await _pending(gate)
    gate.decide(second.id, approved=True)
    gate.decide(third.id, approved=False)

    pending = gate.pending_for_user('user-1')
    history = gate.history('user-1')
    stats = gate.stats('user-1')

    assert [r.id for r in pending] == [first.id]
    assert [r.id for r in history] == [third.id, second.id, first.id]
    assert (stats.pending, stats.approved, stats.rejected, stats.expired) == (1, 1, 1, 0)
    assert stats.total == 3
    assert gate.pending_for_user('someone-else') == []
