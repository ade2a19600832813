"""Audit trail of agent invocations.

One entry is written per tool-loop invocation, whatever its outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from .tracing import log_event


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING_APPROVAL = "PENDING_APPROVAL"


@dataclass(frozen=True)
class AgentExecutionLog:
    user_id: str
    agent_type: str
    action: str
    input: dict[str, Any]
    output: dict[str, Any]
    tools_used: list[str]
    duration_ms: float
    status: ExecutionStatus
    error: str | None = None
    approval_id: str | None = None
    request_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLog(Protocol):
    async def log_agent_action(self, entry: AgentExecutionLog) -> None:
        ...


class InMemoryAuditLog:
    """Keeps entries in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        self.entries: list[AgentExecutionLog] = []

    async def log_agent_action(self, entry: AgentExecutionLog) -> None:
        self.entries.append(entry)


class LoggingAuditLog:
    """Writes each entry as a structured ``agent.audit`` event."""

    async def log_agent_action(self, entry: AgentExecutionLog) -> None:
        log_event(
            'agent.audit',
            trace_id=entry.request_id or entry.approval_id or '-',
            level=logging.INFO if entry.status != ExecutionStatus.FAILURE else logging.WARNING,
            user_id=entry.user_id,
            agent_type=entry.agent_type,
            action=entry.action,
            status=entry.status.value,
            tools_used=entry.tools_used,
            duration_ms=round(entry.duration_ms, 2),
            error=entry.error,
            approval_id=entry.approval_id,
        )
