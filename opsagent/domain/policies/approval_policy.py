"""Approval policy for tool calls.

Core rules:
- The registry's static category is the baseline
- High-risk actions that spend above the threshold always ask
- High-risk actions touching a VIP contact always ask
- Nothing here ever lowers a category
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from opsagent.domain.context import ExecutionContext
from opsagent.tools.base import ApprovalCategory
from opsagent.tools.registry import ToolRegistry

HIGH_RISK_ACTIONS = frozenset({
    'send_email',
    'schedule_meeting',
    'reschedule_meeting',
    'cancel_meeting',
    'book_flight',
    'book_hotel',
    'cancel_booking',
    'delete_task',
    'delete_contact',
})

_SPEND_KEYS = ('amount', 'cost', 'price')


@dataclass(frozen=True)
class ApprovalDecision:
    category: ApprovalCategory
    tool: str
    reason: str | None = None

    @property
    def requires_approval(self) -> bool:
        return self.category != ApprovalCategory.AUTO_APPROVE


class ApprovalPolicy(Protocol):
    def resolve(self, tool_name: str, tool_input: dict[str, Any], context: ExecutionContext) -> ApprovalDecision:
        ...


class RiskAwareApprovalPolicy:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        spending_threshold: float = 50.0,
        vip_importance_threshold: int = 8,
    ) -> None:
        self._registry = registry
        self._spending_threshold = spending_threshold
        self._vip_threshold = vip_importance_threshold

    def resolve(self, tool_name: str, tool_input: dict[str, Any], context: ExecutionContext) -> ApprovalDecision:
        category = self._registry.get_approval_category(tool_name)

        if tool_name in HIGH_RISK_ACTIONS:
            amount = next((tool_input[k] for k in _SPEND_KEYS if k in tool_input), None)
            if isinstance(amount, (int, float)) and not isinstance(amount, bool) and amount > self._spending_threshold:
                return ApprovalDecision(
                    ApprovalCategory.ALWAYS_ASK,
                    tool_name,
                    f"Spending {amount} exceeds the {self._spending_threshold:g} threshold",
                )

            importance = tool_input.get('contactImportance', tool_input.get('contact_importance'))
            if isinstance(importance, (int, float)) and importance >= self._vip_threshold:
                return ApprovalDecision(ApprovalCategory.ALWAYS_ASK, tool_name, 'Action involves a VIP contact')

        if category == ApprovalCategory.AUTO_APPROVE:
            return ApprovalDecision(category, tool_name)
        return ApprovalDecision(category, tool_name, f"Tool '{tool_name}' requires user approval")
