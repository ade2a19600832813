from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ActionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING_APPROVAL = "PENDING_APPROVAL"


@dataclass(frozen=True)
class RecentAction:
    """Audit/learning record appended after every tool execution. Never mutated."""

    agent_type: str
    action: str
    summary: str
    status: ActionStatus
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    confidence: float = 0.8
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class LearnedPattern:
    id: str
    type: str
    data: dict[str, Any]
    confidence: float
    occurrences: int = 1
