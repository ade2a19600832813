"""Per-request execution context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal

from .memory import ActionStore, LearnedPattern, PatternSource, RecentAction


class AgentDomain(str, Enum):
    INBOX = "inbox"
    CALENDAR = "calendar"
    CRM = "crm"
    TRAVEL = "travel"
    TASKS = "tasks"
    MEETING_PREP = "meeting_prep"
    ORCHESTRATOR = "orchestrator"


@dataclass(frozen=True)
class UserPreferences:
    communication_tone: str = "professional"
    response_length: str = "concise"
    language: str = "en"
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class ExecutionContext:
    """Read-only inputs of a single request."""

    user_id: str
    domain: AgentDomain
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timezone: str = "Europe/Amsterdam"
    preferences: UserPreferences | None = None
    recent_actions: tuple[RecentAction, ...] = ()
    patterns: tuple[LearnedPattern, ...] = ()
    conversation_history: tuple[ChatMessage, ...] = ()
    # set while a previously approved tool call is being executed
    approval_id: str | None = None

    def with_domain(self, domain: AgentDomain) -> "ExecutionContext":
        return replace(self, domain=domain)

    def for_approval(self, approval_id: str) -> "ExecutionContext":
        return replace(self, approval_id=approval_id)


class ContextBuilder:
    """Builds an ``ExecutionContext`` from the memory collaborators."""

    def __init__(
        self,
        *,
        action_store: ActionStore,
        pattern_source: PatternSource | None = None,
        default_timezone: str = "Europe/Amsterdam",
        recent_actions_limit: int = 20,
    ) -> None:
        self._actions = action_store
        self._patterns = pattern_source
        self._default_timezone = default_timezone
        self._limit = recent_actions_limit

    def build(
        self,
        user_id: str,
        domain: AgentDomain,
        *,
        session_id: str | None = None,
        timezone: str | None = None,
        preferences: UserPreferences | None = None,
        conversation_history: tuple[ChatMessage, ...] = (),
    ) -> ExecutionContext:
        patterns = self._patterns.active_patterns(user_id) if self._patterns else []
        return ExecutionContext(
            user_id=user_id,
            domain=domain,
            session_id=session_id or str(uuid.uuid4()),
            timezone=timezone or self._default_timezone,
            preferences=preferences,
            recent_actions=tuple(self._actions.recent(user_id, domain.value, self._limit)),
            patterns=tuple(patterns),
            conversation_history=conversation_history,
        )
