# ============================================================
# Business/domain entities
# ============================================================
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from opsagent.tools.base import ApprovalCategory


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class DecidedBy(str, Enum):
    USER = "USER"
    AUTO = "AUTO"
    TIMEOUT = "TIMEOUT"


class ImpactLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class ApprovalImpact:
    level: ImpactLevel = ImpactLevel.MEDIUM
    affected_areas: tuple[str, ...] = ()
    estimated_cost: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'level': self.level.value,
            'affected_areas': list(self.affected_areas),
            'estimated_cost': self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> 'ApprovalImpact':
        if not raw:
            return cls()
        return cls(
            level=ImpactLevel(raw.get('level') or raw.get('type') or ImpactLevel.MEDIUM),
            affected_areas=tuple(raw.get('affected_areas') or ()),
            estimated_cost=raw.get('estimated_cost'),
        )


@dataclass
class ApprovalRequest:
    user_id: str
    agent_type: str
    tool_name: str
    category: ApprovalCategory
    proposed_action: dict[str, Any]
    expires_at: datetime
    reasoning: str = ''
    impact: ApprovalImpact = field(default_factory=ApprovalImpact)
    is_reversible: bool = True
    status: ApprovalStatus = ApprovalStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decided_at: datetime | None = None
    decided_by: DecidedBy | None = None
    feedback: str | None = None
    modifications: dict[str, Any] | None = None
    consumed_at: datetime | None = None
    session_id: str | None = None
    request_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        # the deadline only bounds the decision; APPROVED is terminal
        return self.status == ApprovalStatus.EXPIRED or (
            self.status == ApprovalStatus.PENDING and self.expires_at <= now
        )


@dataclass(frozen=True)
class ApprovalStats:
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    expired: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected + self.expired
