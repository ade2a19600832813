"""Domain agents.

Each agent is the shared loop bound to one domain: its own prompt, its own
slice of the tool registry, its own name in audit and learning records.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Mapping, Protocol, Sequence

from opsagent.domain.context import AgentDomain, ExecutionContext
from opsagent.observability.tracing import log_event

from .agent import Agent, AgentRuntime
from .results import AgentResult


class DomainAgent(Protocol):
    agent_type: str
    domain: AgentDomain

    async def process(self, context: ExecutionContext, message: str, session_id: str | None = None) -> AgentResult:
        ...


class InboxAgent(Agent):
    agent_type = 'InboxAgent'
    domain = AgentDomain.INBOX


class CalendarAgent(Agent):
    agent_type = 'CalendarAgent'
    domain = AgentDomain.CALENDAR

    async def find_available_slots(
        self,
        context: ExecutionContext,
        duration_minutes: int,
        *,
        attendees: Sequence[str] = (),
        start: datetime | None = None,
        end: datetime | None = None,
        preferred_times: Sequence[str] = (),
        session_id: str | None = None,
    ) -> AgentResult:
        message = f'Find available {duration_minutes}-minute meeting slots'
        if attendees:
            message += f" with {', '.join(attendees)}"
        if start and end:
            message += f' between {start.isoformat()} and {end.isoformat()}'
        if preferred_times:
            message += f". Prefer times around: {', '.join(preferred_times)}"
        return await self.process(context, message, session_id)

    async def schedule_meeting(
        self,
        context: ExecutionContext,
        title: str,
        start: datetime,
        duration_minutes: int = 30,
        *,
        attendees: Sequence[str] = (),
        location: str | None = None,
        session_id: str | None = None,
    ) -> AgentResult:
        message = f'Schedule a {duration_minutes}-minute meeting "{title}" at {start.isoformat()}'
        if attendees:
            message += f" with {', '.join(attendees)}"
        if location:
            message += f' at {location}'
        message += '. Check for conflicts first.'
        return await self.process(context, message, session_id)

    async def daily_briefing(
        self,
        context: ExecutionContext,
        day: date | None = None,
        session_id: str | None = None,
    ) -> AgentResult:
        target = (day or date.today()).strftime('%A %B %d %Y')
        message = (
            f'Provide a briefing for {target}:\n'
            '1. List all scheduled meetings with times and attendees\n'
            '2. Highlight conflicts or tight transitions\n'
            '3. Note meetings that need preparation\n'
            '4. Identify available focus time\n'
            '5. Mention travel time considerations'
        )
        return await self.process(context, message, session_id)


class CRMAgent(Agent):
    agent_type = 'CRMAgent'
    domain = AgentDomain.CRM


class TravelAgent(Agent):
    agent_type = 'TravelAgent'
    domain = AgentDomain.TRAVEL


class TaskAgent(Agent):
    agent_type = 'TaskAgent'
    domain = AgentDomain.TASKS


class MeetingPrepAgent(Agent):
    agent_type = 'MeetingPrepAgent'
    domain = AgentDomain.MEETING_PREP


AGENT_CLASSES: tuple[type[Agent], ...] = (
    InboxAgent,
    CalendarAgent,
    CRMAgent,
    TravelAgent,
    TaskAgent,
    MeetingPrepAgent,
)


def build_agent_map(runtime: AgentRuntime) -> dict[AgentDomain, Agent]:
    """One instance per domain, created once at startup."""
    return {cls.domain: cls(runtime) for cls in AGENT_CLASSES}


async def dispatch(
    agents: Mapping[AgentDomain, DomainAgent],
    context: ExecutionContext,
    domain: AgentDomain | str,
    message: str,
) -> AgentResult:
    """Run one agent by domain. Unknown domains and agent crashes become failed results."""
    try:
        agent = agents.get(AgentDomain(domain))
    except ValueError:
        agent = None
    name = domain.value if isinstance(domain, AgentDomain) else domain
    if agent is None:
        return AgentResult.failure(f'Agent not found: {name}', chain_of_thought=[f'Failed to load agent: {name}'])
    try:
        return await agent.process(context, message, context.session_id)
    except Exception as exc:  # noqa: BLE001 - one agent failing must not take the caller down
        log_event('agent.crashed', trace_id=context.request_id, level=logging.ERROR, agent=name,
                  error=f'{type(exc).__name__}: {exc}')
        return AgentResult.failure(str(exc) or 'Unknown error', chain_of_thought=[f'Agent execution failed: {name}'])
