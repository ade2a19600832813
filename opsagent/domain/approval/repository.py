# ============================================================
# Approval persistence
# ============================================================
"""Approval request storage.

State changes are conditional updates: a transition only happens when the row
is still in the expected state, and the boolean return value tells the caller
whether it won. This is what keeps a decision (and a resume) exactly-once when
two callers race on the same approval id.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from opsagent.tools.base import ApprovalCategory

from .entities import ApprovalImpact, ApprovalRequest, ApprovalStatus, DecidedBy
from .models import ApprovalRequestRecord


class ApprovalRequestRepositoryProtocol(Protocol):
    def create(self, request: ApprovalRequest) -> ApprovalRequest:
        """Persist a new PENDING approval"""
        ...

    def get(self, approval_id: str) -> ApprovalRequest | None:
        """Get an approval by id"""
        ...

    def mark_decided(
        self,
        approval_id: str,
        *,
        status: ApprovalStatus,
        decided_by: DecidedBy,
        decided_at: datetime,
        feedback: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> bool:
        """PENDING -> APPROVED/REJECTED. False if the approval was not pending"""
        ...

    def mark_expired(self, approval_id: str, now: datetime) -> bool:
        """PENDING -> EXPIRED. False if the approval was not pending"""
        ...

    def mark_consumed(self, approval_id: str, now: datetime) -> bool:
        """Claim an APPROVED approval for execution. False if already claimed"""
        ...

    def list_pending(self, user_id: str | None = None) -> list[ApprovalRequest]:
        """Pending approvals, oldest first"""
        ...

    def list_for_user(self, user_id: str, limit: int = 50) -> list[ApprovalRequest]:
        """All approvals of a user, newest first"""
        ...


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryApprovalRequestRepository:
    def __init__(self) -> None:
        self._items: dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def create(self, request: ApprovalRequest) -> ApprovalRequest:
        with self._lock:
            self._items[request.id] = replace(request)
        return request

    def get(self, approval_id: str) -> ApprovalRequest | None:
        with self._lock:
            item = self._items.get(approval_id)
            return replace(item) if item else None

    def mark_decided(self, approval_id, *, status, decided_by, decided_at, feedback=None, modifications=None) -> bool:
        with self._lock:
            item = self._items.get(approval_id)
            if item is None or item.status != ApprovalStatus.PENDING:
                return False
            self._items[approval_id] = replace(
                item,
                status=status,
                decided_by=decided_by,
                decided_at=decided_at,
                feedback=feedback,
                modifications=modifications,
            )
            return True

    def mark_expired(self, approval_id: str, now: datetime) -> bool:
        with self._lock:
            item = self._items.get(approval_id)
            if item is None or item.status != ApprovalStatus.PENDING:
                return False
            self._items[approval_id] = replace(
                item, status=ApprovalStatus.EXPIRED, decided_by=DecidedBy.TIMEOUT, decided_at=now
            )
            return True

    def mark_consumed(self, approval_id: str, now: datetime) -> bool:
        with self._lock:
            item = self._items.get(approval_id)
            if item is None or item.status != ApprovalStatus.APPROVED or item.consumed_at is not None:
                return False
            self._items[approval_id] = replace(item, consumed_at=now)
            return True

    def list_pending(self, user_id: str | None = None) -> list[ApprovalRequest]:
        with self._lock:
            items = [
                replace(i) for i in self._items.values()
                if i.status == ApprovalStatus.PENDING and (user_id is None or i.user_id == user_id)
            ]
        return sorted(items, key=lambda i: i.created_at)

    def list_for_user(self, user_id: str, limit: int = 50) -> list[ApprovalRequest]:
        with self._lock:
            items = [replace(i) for i in self._items.values() if i.user_id == user_id]
        return sorted(items, key=lambda i: i.created_at, reverse=True)[:limit]


class SqlApprovalRequestRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_entity(row: ApprovalRequestRecord) -> ApprovalRequest:
        return ApprovalRequest(
            id=row.id,
            user_id=row.user_id,
            agent_type=row.agent_type,
            tool_name=row.tool_name,
            category=ApprovalCategory(row.category),
            proposed_action=dict(row.proposed_action or {}),
            reasoning=row.reasoning or '',
            impact=ApprovalImpact.from_dict(row.impact),
            is_reversible=row.is_reversible,
            status=ApprovalStatus(row.status),
            expires_at=_utc(row.expires_at),
            created_at=_utc(row.created_at),
            decided_at=_utc(row.decided_at),
            decided_by=DecidedBy(row.decided_by) if row.decided_by else None,
            feedback=row.feedback,
            modifications=row.modifications,
            consumed_at=_utc(row.consumed_at),
            session_id=row.session_id,
            request_id=row.request_id,
        )

    def _transition(self, approval_id: str, conditions: list[Any], **values: Any) -> bool:
        stmt = (
            update(ApprovalRequestRecord)
            .where(ApprovalRequestRecord.id == approval_id, *conditions)
            .values(**values)
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def create(self, request: ApprovalRequest) -> ApprovalRequest:
        record = ApprovalRequestRecord(
            id=request.id,
            user_id=request.user_id,
            agent_type=request.agent_type,
            tool_name=request.tool_name,
            category=request.category.value,
            proposed_action=request.proposed_action,
            reasoning=request.reasoning,
            impact=request.impact.to_dict(),
            is_reversible=request.is_reversible,
            status=request.status.value,
            expires_at=_utc(request.expires_at),
            created_at=_utc(request.created_at),
            session_id=request.session_id,
            request_id=request.request_id,
        )
        with self._session_factory() as db:
            db.add(record)
            db.commit()
        return request

    def get(self, approval_id: str) -> ApprovalRequest | None:
        with self._session_factory() as db:
            row = db.get(ApprovalRequestRecord, approval_id)
            return self._to_entity(row) if row else None

    def mark_decided(self, approval_id, *, status, decided_by, decided_at, feedback=None, modifications=None) -> bool:
        return self._transition(
            approval_id,
            [ApprovalRequestRecord.status == ApprovalStatus.PENDING.value],
            status=status.value,
            decided_by=decided_by.value,
            decided_at=_utc(decided_at),
            feedback=feedback,
            modifications=modifications,
        )

    def mark_expired(self, approval_id: str, now: datetime) -> bool:
        return self._transition(
            approval_id,
            [ApprovalRequestRecord.status == ApprovalStatus.PENDING.value],
            status=ApprovalStatus.EXPIRED.value,
            decided_by=DecidedBy.TIMEOUT.value,
            decided_at=_utc(now),
        )

    def mark_consumed(self, approval_id: str, now: datetime) -> bool:
        return self._transition(
            approval_id,
            [
                ApprovalRequestRecord.status == ApprovalStatus.APPROVED.value,
                ApprovalRequestRecord.consumed_at.is_(None),
            ],
            consumed_at=_utc(now),
        )

    def list_pending(self, user_id: str | None = None) -> list[ApprovalRequest]:
        stmt = select(ApprovalRequestRecord).where(ApprovalRequestRecord.status == ApprovalStatus.PENDING.value)
        if user_id is not None:
            stmt = stmt.where(ApprovalRequestRecord.user_id == user_id)
        stmt = stmt.order_by(ApprovalRequestRecord.created_at.asc())
        with self._session_factory() as db:
            return [self._to_entity(row) for row in db.scalars(stmt)]

    def list_for_user(self, user_id: str, limit: int = 50) -> list[ApprovalRequest]:
        stmt = (
            select(ApprovalRequestRecord)
            .where(ApprovalRequestRecord.user_id == user_id)
            .order_by(ApprovalRequestRecord.created_at.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [self._to_entity(row) for row in db.scalars(stmt)]
