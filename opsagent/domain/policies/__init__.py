"""Approval policies applied between tool selection and tool execution."""
from .approval_policy import HIGH_RISK_ACTIONS, ApprovalDecision, ApprovalPolicy, RiskAwareApprovalPolicy
