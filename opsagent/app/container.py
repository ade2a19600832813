# --------------------------------
# DI container
# --------------------------------

from __future__ import annotations

from functools import lru_cache

from opsagent.config import Settings, get_settings
from opsagent.db.connection import create_session_factory
from opsagent.domain.approval import ApprovalGate, SqlApprovalRequestRepository
from opsagent.domain.context import AgentDomain, ContextBuilder, ExecutionContext
from opsagent.domain.conversation import InMemoryConversationStore
from opsagent.domain.memory import SqlActionLogRepository
from opsagent.domain.policies import RiskAwareApprovalPolicy
from opsagent.domain.rate_limit import InMemoryRateLimiter
from opsagent.llm.anthropic_messages import AnthropicMessagesLLMClient
from opsagent.llm.base import LLMClient
from opsagent.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from opsagent.observability.audit import LoggingAuditLog
from opsagent.observability.tracing import configure_logging
from opsagent.runtime.agent import AgentRuntime, ToolLoopConfig
from opsagent.runtime.agents import build_agent_map
from opsagent.runtime.orchestrator import Orchestrator
from opsagent.runtime.workflow_engine import WorkflowEngine
from opsagent.tools.catalog import register_domain_tools
from opsagent.tools.registry import ToolRegistry


class Container:
    """Builds every long-lived object once.

    ``backend`` is the object implementing the domain tools (one coroutine
    method per catalog tool name). Without it the agents run with no tools.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        llm: LLMClient | None = None,
        backend: object | None = None,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level)

        self.registry = ToolRegistry()
        if backend is not None:
            register_domain_tools(self.registry, backend)

        session_factory = create_session_factory(self.settings.database_url)
        self.approvals = SqlApprovalRequestRepository(session_factory)
        self.action_store = SqlActionLogRepository(session_factory)

        if notifier is None:
            if self.settings.notification_webhook_url:
                notifier = WebhookNotificationDispatcher(self.settings.notification_webhook_url)
            else:
                notifier = LoggingNotificationDispatcher()
        self.notifier = notifier

        self.approval_gate = ApprovalGate(
            self.approvals,
            self.registry,
            notifier=self.notifier,
            action_store=self.action_store,
            ttl_hours=self.settings.approval_ttl_hours,
        )
        self.runtime = AgentRuntime(
            llm=llm or AnthropicMessagesLLMClient.from_settings(self.settings),
            registry=self.registry,
            approval_gate=self.approval_gate,
            rate_limiter=InMemoryRateLimiter(
                max_calls=self.settings.rate_limit_max_calls,
                window_seconds=self.settings.rate_limit_window_seconds,
            ),
            approval_policy=RiskAwareApprovalPolicy(
                self.registry,
                spending_threshold=self.settings.spending_threshold,
                vip_importance_threshold=self.settings.vip_importance_threshold,
            ),
            action_store=self.action_store,
            audit_log=LoggingAuditLog(),
            loop_config=ToolLoopConfig.from_settings(self.settings),
        )

        self.agents = build_agent_map(self.runtime)
        self.workflow_engine = WorkflowEngine(self.agents)
        self._orchestrator = Orchestrator(
            self.runtime,
            agents=self.agents,
            workflow_engine=self.workflow_engine,
            conversations=InMemoryConversationStore(),
            request_approval_threshold=self.settings.request_approval_threshold,
        )
        self.context_builder = ContextBuilder(
            action_store=self.action_store,
            default_timezone=self.settings.default_timezone,
            recent_actions_limit=self.settings.recent_actions_limit,
        )

    @property
    def orchestrator(self) -> Orchestrator:
        return self._orchestrator

    def context_for(self, user_id: str, domain: AgentDomain = AgentDomain.ORCHESTRATOR, **kwargs) -> ExecutionContext:
        return self.context_builder.build(user_id, domain, **kwargs)


@lru_cache
def get_container() -> Container:
    return Container()
