from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opsagent.tools.base import ApprovalCategory


@dataclass
class AgentResult:
    """Outcome of one agent, workflow or orchestrator invocation.

    ``success=False`` always comes with a human-readable ``error``. An approval
    pause is a success carrying ``requires_approval`` and ``approval_id``.
    """

    success: bool
    data: Any = None
    error: str | None = None
    requires_approval: bool = False
    approval_id: str | None = None
    approval_category: ApprovalCategory | None = None
    tools_used: list[str] = field(default_factory=list)
    chain_of_thought: list[str] = field(default_factory=list)
    iterations: int = 0

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> 'AgentResult':
        return cls(success=False, error=error, **kwargs)
