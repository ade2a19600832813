"""This module handles tool approvals: persistence, decisions and resumption."""
from .approval_gate import ApprovalGate
from .entities import ApprovalImpact, ApprovalRequest, ApprovalStats, ApprovalStatus, DecidedBy, ImpactLevel
from .repository import (
    ApprovalRequestRepositoryProtocol,
    InMemoryApprovalRequestRepository,
    SqlApprovalRequestRepository,
)
