"""Workflow models and the predefined workflow catalog.

A workflow is a small static DAG:
- steps: each one is delegated to a domain agent
- depends_on: a step runs after its dependencies and receives their results
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from opsagent.core.errors import WorkflowCycleError
from opsagent.domain.context import AgentDomain


class WorkflowStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    agent: AgentDomain
    action: str
    description: str
    depends_on: list[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    steps: list[WorkflowStep]
    trigger_conditions: dict[str, Any] = Field(default_factory=dict)


class WorkflowStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class StepExecution(BaseModel):
    """Execution record for one step."""
    step_id: str
    agent: AgentDomain
    status: Literal['completed', 'failed', 'approval_required']
    result: Any = None
    error: str | None = None
    approval_id: str | None = None


class WorkflowExecution(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    steps: list[StepExecution] = Field(default_factory=list)
    completed_steps: int = 0
    summary: str = ''
    approval_id: str | None = None


def order_steps_by_dependencies(steps: list[WorkflowStep], workflow_id: str | None = None) -> list[WorkflowStep]:
    """Depth-first topological order.

    Dependencies come before dependents; otherwise the declared order is kept.
    Dependency ids that name no step are skipped here and reported as unmet
    when the step runs.

    Raises:
        WorkflowCycleError: a step is reached again while its own dependencies
            are still being visited.
    """
    by_id = {step.id: step for step in steps}
    visited: set[str] = set()
    visiting: set[str] = set()
    ordered: list[WorkflowStep] = []

    def visit(step: WorkflowStep) -> None:
        if step.id in visited:
            return
        if step.id in visiting:
            raise WorkflowCycleError(step.id, workflow_id)
        visiting.add(step.id)
        for dep_id in step.depends_on:
            dep = by_id.get(dep_id)
            if dep is not None:
                visit(dep)
        visiting.discard(step.id)
        visited.add(step.id)
        ordered.append(step)

    for step in steps:
        visit(step)
    return ordered


def _step(id: str, agent: AgentDomain, action: str, description: str, *depends_on: str) -> WorkflowStep:
    return WorkflowStep(id=id, agent=agent, action=action, description=description, depends_on=list(depends_on))


WORKFLOWS: dict[str, WorkflowDefinition] = {
    'new_meeting_email': WorkflowDefinition(
        id='new_meeting_email',
        name='Process New Meeting Request Email',
        description='Categorize an incoming meeting request, check availability and draft a response',
        steps=[
            _step('categorize', AgentDomain.INBOX, 'categorize_email', 'Categorize and extract meeting details'),
            _step('check_availability', AgentDomain.CALENDAR, 'find_available_slots',
                  'Check calendar availability', 'categorize'),
            _step('update_crm', AgentDomain.CRM, 'log_interaction', 'Log the interaction with the contact',
                  'categorize'),
            _step('draft_response', AgentDomain.INBOX, 'draft_reply', 'Draft a response with available times',
                  'check_availability'),
        ],
        trigger_conditions={'email_category': 'MEETING_REQUEST'},
    ),
    'trip_planning': WorkflowDefinition(
        id='trip_planning',
        name='Plan Business Trip',
        description='Flights, hotel, trip record and a calendar block',
        steps=[
            _step('search_flights', AgentDomain.TRAVEL, 'search_flights', 'Search for flight options'),
            _step('search_hotels', AgentDomain.TRAVEL, 'search_hotels', 'Search for hotel options'),
            _step('create_trip', AgentDomain.TRAVEL, 'create_trip', 'Create the trip record',
                  'search_flights', 'search_hotels'),
            _step('block_calendar', AgentDomain.CALENDAR, 'schedule_meeting', 'Block the calendar for travel',
                  'create_trip'),
        ],
        trigger_conditions={'intent': 'plan_trip'},
    ),
    'meeting_prep': WorkflowDefinition(
        id='meeting_prep',
        name='Prepare for Meeting',
        description='Meeting brief from attendee research, email history and related tasks',
        steps=[
            _step('research_attendees', AgentDomain.MEETING_PREP, 'research_attendees', 'Research meeting attendees'),
            _step('get_email_history', AgentDomain.MEETING_PREP, 'get_email_history_with_attendees',
                  'Get email history with attendees'),
            _step('get_related_tasks', AgentDomain.TASKS, 'get_tasks', 'Get related tasks'),
            _step('generate_brief', AgentDomain.MEETING_PREP, 'generate_meeting_brief', 'Generate the brief',
                  'research_attendees', 'get_email_history', 'get_related_tasks'),
        ],
        trigger_conditions={'intent': 'prepare_meeting'},
    ),
    'daily_briefing': WorkflowDefinition(
        id='daily_briefing',
        name='Daily Briefing',
        description='Daily summary across inbox, calendar, tasks and follow-ups',
        steps=[
            _step('inbox_summary', AgentDomain.INBOX, 'summarize_email', 'Summarize important emails'),
            _step('calendar_overview', AgentDomain.CALENDAR, 'optimize_day', 'Get the calendar overview'),
            _step('task_priorities', AgentDomain.TASKS, 'prioritize_tasks', 'Get priority tasks'),
            _step('followup_reminders', AgentDomain.CRM, 'get_overdue_followups', 'Check overdue follow-ups'),
        ],
        trigger_conditions={'intent': 'daily_briefing'},
    ),
}
