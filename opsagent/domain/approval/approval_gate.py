"""Approval gate.

Sits between "tool selected" and "tool executed": it persists a pending
decision, lets the user decide it, and on resume runs the approved tool at most
once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from opsagent.core.errors import (
    ApprovalAlreadyDecidedError,
    ApprovalExpiredError,
    ApprovalMessages,
    ApprovalNotFoundError,
)
from opsagent.domain.context import ExecutionContext
from opsagent.domain.memory import ActionStatus, ActionStore, RecentAction
from opsagent.domain.rate_limit import Clock, utcnow
from opsagent.notifications import NotificationAction, NotificationDispatcher
from opsagent.observability.tracing import log_event
from opsagent.runtime.results import AgentResult
from opsagent.tools.base import ApprovalCategory
from opsagent.tools.registry import ToolRegistry

from .entities import ApprovalImpact, ApprovalRequest, ApprovalStats, ApprovalStatus, DecidedBy, ImpactLevel
from .repository import ApprovalRequestRepositoryProtocol


def _default_impact(category: ApprovalCategory, is_reversible: bool) -> ImpactLevel:
    if category != ApprovalCategory.ALWAYS_ASK:
        return ImpactLevel.MEDIUM
    return ImpactLevel.HIGH if is_reversible else ImpactLevel.CRITICAL


class ApprovalGate:
    def __init__(
        self,
        repository: ApprovalRequestRepositoryProtocol,
        registry: ToolRegistry,
        *,
        notifier: NotificationDispatcher | None = None,
        action_store: ActionStore | None = None,
        ttl_hours: int = 24,
        clock: Clock = utcnow,
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._notifier = notifier
        self._actions = action_store
        self._ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    async def create_approval_request(
        self,
        context: ExecutionContext,
        *,
        agent_type: str,
        tool_name: str,
        tool_input: dict[str, Any],
        category: ApprovalCategory,
        reasoning: str | None = None,
        impact: ApprovalImpact | None = None,
        is_reversible: bool = True,
        ttl: timedelta | None = None,
    ) -> ApprovalRequest:
        now = self._clock()
        request = ApprovalRequest(
            user_id=context.user_id,
            agent_type=agent_type,
            tool_name=tool_name,
            category=category,
            proposed_action=dict(tool_input),
            reasoning=reasoning or f"Tool '{tool_name}' requires user approval",
            impact=impact or ApprovalImpact(
                level=_default_impact(category, is_reversible),
                affected_areas=(agent_type,),
            ),
            is_reversible=is_reversible,
            created_at=now,
            expires_at=now + (ttl or self._ttl),
            session_id=context.session_id,
            request_id=context.request_id,
        )
        self._repo.create(request)
        log_event(
            'approval.created',
            trace_id=context.request_id,
            approval_id=request.id,
            tool=tool_name,
            category=category.value,
        )
        await self._notify(request)
        return request

    async def _notify(self, request: ApprovalRequest) -> None:
        if self._notifier is None:
            return
        actions = [
            NotificationAction('Approve', 'approve', {'approval_id': request.id}),
            NotificationAction('Reject', 'reject', {'approval_id': request.id}),
        ]
        try:
            delivered = await self._notifier.send(
                request.user_id,
                f'Approval needed: {request.tool_name}',
                request.reasoning,
                actions,
            )
        except Exception as exc:  # noqa: BLE001 - notification is best effort
            delivered = False
            log_event(
                'approval.notify_failed',
                trace_id=request.request_id or request.id,
                level=logging.WARNING,
                approval_id=request.id,
                error=f'{type(exc).__name__}: {exc}',
            )
        if not delivered:
            log_event(
                'approval.notify_skipped',
                trace_id=request.request_id or request.id,
                level=logging.WARNING,
                approval_id=request.id,
            )

    def decide(
        self,
        approval_id: str,
        *,
        approved: bool,
        decided_by: DecidedBy = DecidedBy.USER,
        feedback: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        """Move a PENDING approval to APPROVED or REJECTED.

        Raises:
            ApprovalNotFoundError: unknown id.
            ApprovalExpiredError: past ``expires_at`` (the record is marked EXPIRED).
            ApprovalAlreadyDecidedError: the approval is no longer pending.
        """
        request = self._repo.get(approval_id)
        if request is None:
            raise ApprovalNotFoundError(approval_id)
        if request.status == ApprovalStatus.EXPIRED:
            raise ApprovalExpiredError(approval_id)
        if request.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyDecidedError(approval_id)

        now = self._clock()
        if request.expires_at <= now:
            self._repo.mark_expired(approval_id, now)
            raise ApprovalExpiredError(approval_id)

        changed = self._repo.mark_decided(
            approval_id,
            status=ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED,
            decided_by=decided_by,
            decided_at=now,
            feedback=feedback,
            modifications=modifications if approved else None,
        )
        if not changed:
            # lost a race with another decision or the expiry sweep
            current = self._repo.get(approval_id)
            if current is not None and current.status == ApprovalStatus.EXPIRED:
                raise ApprovalExpiredError(approval_id)
            raise ApprovalAlreadyDecidedError(approval_id)

        log_event('approval.decided', trace_id=request.request_id or approval_id, approval_id=approval_id,
                  approved=approved, decided_by=decided_by.value)
        return self._repo.get(approval_id)

    async def resume_after_approval(
        self,
        context: ExecutionContext,
        approval_id: str,
        *,
        agent_type: str,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> AgentResult:
        """Execute the approved tool call, at most once per approval."""
        request = self._repo.get(approval_id)
        if request is None:
            return AgentResult.failure(ApprovalMessages.NOT_FOUND, approval_id=approval_id)
        if request.status == ApprovalStatus.REJECTED:
            return AgentResult.failure(ApprovalMessages.REJECTED, approval_id=approval_id)
        if request.status == ApprovalStatus.APPROVED and request.consumed_at is not None:
            return AgentResult.failure(ApprovalMessages.ALREADY_EXECUTED, approval_id=approval_id)

        now = self._clock()
        if request.is_expired(now):
            if request.status == ApprovalStatus.PENDING:
                self._repo.mark_expired(approval_id, now)
            return AgentResult.failure(ApprovalMessages.EXPIRED, approval_id=approval_id)
        if request.status == ApprovalStatus.PENDING:
            return AgentResult.failure(ApprovalMessages.PENDING, approval_id=approval_id)

        name = tool_name or request.tool_name
        if name != request.tool_name:
            return AgentResult.failure(ApprovalMessages.MISMATCH, approval_id=approval_id)

        if not self._repo.mark_consumed(approval_id, now):
            return AgentResult.failure(ApprovalMessages.ALREADY_EXECUTED, approval_id=approval_id)

        final_input = {**(request.proposed_action if tool_input is None else tool_input), **(request.modifications or {})}
        result = await self._registry.execute(name, final_input, context.for_approval(approval_id))
        log_event('approval.resumed', trace_id=context.request_id, approval_id=approval_id, tool=name,
                  ok=result.success)

        self._record(context, agent_type, name, final_input, result.success, result.data, result.error)
        if not result.success:
            return AgentResult.failure(
                result.error or f'Tool {name} failed',
                approval_id=approval_id,
                tools_used=[name],
            )
        return AgentResult(success=True, data=result.data, approval_id=approval_id, tools_used=[name])

    def _record(self, context, agent_type, tool_name, tool_input, ok, data, error) -> None:
        if self._actions is None:
            return
        action = RecentAction(
            agent_type=agent_type,
            action=tool_name,
            summary=f'Executed {tool_name} after approval' if ok else f'Approved {tool_name} failed: {error}',
            status=ActionStatus.SUCCESS if ok else ActionStatus.FAILURE,
            input=tool_input,
            output={'data': data} if ok else {'error': error},
        )
        try:
            self._actions.record(context.user_id, context.domain.value, action)
        except Exception as exc:  # noqa: BLE001 - learning is best effort
            log_event('action.record_failed', trace_id=context.request_id, level=logging.WARNING, error=str(exc))

    def expire_stale(self, now: datetime | None = None) -> int:
        """Mark every pending approval past its deadline EXPIRED. Returns the count."""
        now = now or self._clock()
        expired = 0
        for request in self._repo.list_pending():
            if request.expires_at <= now and self._repo.mark_expired(request.id, now):
                expired += 1
        if expired:
            log_event('approval.expired', trace_id='sweep', count=expired)
        return expired

    def pending_for_user(self, user_id: str) -> list[ApprovalRequest]:
        now = self._clock()
        return [r for r in self._repo.list_pending(user_id) if r.expires_at > now]

    def history(self, user_id: str, limit: int = 50) -> list[ApprovalRequest]:
        return self._repo.list_for_user(user_id, limit)

    def stats(self, user_id: str) -> ApprovalStats:
        counts = {status: 0 for status in ApprovalStatus}
        for request in self._repo.list_for_user(user_id, limit=10_000):
            counts[request.status] += 1
        return ApprovalStats(
            pending=counts[ApprovalStatus.PENDING],
            approved=counts[ApprovalStatus.APPROVED],
            rejected=counts[ApprovalStatus.REJECTED],
            expired=counts[ApprovalStatus.EXPIRED],
        )
