from __future__ import annotations

from datetime import timezone

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .entities import ActionStatus, RecentAction
from .models import ActionLogRecord


class SqlActionLogRepository:
    """Durable ``ActionStore``: every recorded action is one row, never updated."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, user_id: str, domain: str, action: RecentAction) -> None:
        with self._session_factory() as db:
            db.add(ActionLogRecord(
                id=action.id,
                user_id=user_id,
                domain=domain,
                agent_type=action.agent_type,
                action=action.action,
                summary=action.summary,
                status=action.status.value,
                input=action.input,
                output=action.output,
                confidence=action.confidence,
                timestamp=action.timestamp,
            ))
            db.commit()

    def recent(self, user_id: str, domain: str, limit: int = 20) -> list[RecentAction]:
        stmt = (
            select(ActionLogRecord)
            .where(ActionLogRecord.user_id == user_id, ActionLogRecord.domain == domain)
            .order_by(ActionLogRecord.timestamp.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [
                RecentAction(
                    id=row.id,
                    agent_type=row.agent_type,
                    action=row.action,
                    summary=row.summary,
                    status=ActionStatus(row.status),
                    input=dict(row.input or {}),
                    output=row.output,
                    confidence=row.confidence,
                    timestamp=row.timestamp if row.timestamp.tzinfo else row.timestamp.replace(tzinfo=timezone.utc),
                )
                for row in db.scalars(stmt)
            ]
