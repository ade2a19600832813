"""Static tool catalog for the six domain agents.

Only the schemas and approval categories live here. The business logic is an
external collaborator: ``register_domain_tools`` binds every definition to the
coroutine method with the same name on a backend object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opsagent.domain.context import AgentDomain, ExecutionContext
from opsagent.observability.tracing import log_event

from .base import ApprovalCategory, RegisteredTool, ToolHandler, ToolResult, create_tool
from .registry import ToolRegistry

AUTO = ApprovalCategory.AUTO_APPROVE
REQUEST = ApprovalCategory.REQUEST_APPROVAL
ALWAYS = ApprovalCategory.ALWAYS_ASK


@dataclass(frozen=True)
class ToolSpec:
    name: str
    domain: AgentDomain
    description: str
    properties: dict[str, Any]
    required: tuple[str, ...] = ()
    category: ApprovalCategory = AUTO


def _s(description: str, **extra: Any) -> dict[str, Any]:
    return {'type': 'string', 'description': description, **extra}


def _n(description: str) -> dict[str, Any]:
    return {'type': 'number', 'description': description}


def _b(description: str) -> dict[str, Any]:
    return {'type': 'boolean', 'description': description}


def _list(description: str, items: dict[str, Any] | None = None) -> dict[str, Any]:
    return {'type': 'array', 'description': description, 'items': items or {'type': 'string'}}


_TZ = _s('IANA timezone of the user')

TOOL_SPECS: tuple[ToolSpec, ...] = (
    # inbox
    ToolSpec('search_emails', AgentDomain.INBOX, 'Search emails by query, sender or date range',
             {'query': _s('Search text'), 'from': _s('Sender address'), 'limit': _n('Max results')}),
    ToolSpec('categorize_email', AgentDomain.INBOX, 'Categorize an email and extract key details',
             {'email_id': _s('Email id')}, ('email_id',)),
    ToolSpec('summarize_email', AgentDomain.INBOX, 'Summarize one email or the important unread ones',
             {'email_id': _s('Email id, omit for unread digest')}),
    ToolSpec('extract_action_items', AgentDomain.INBOX, 'Extract action items from an email',
             {'email_id': _s('Email id')}, ('email_id',)),
    ToolSpec('draft_reply', AgentDomain.INBOX, 'Draft a reply without sending it',
             {'email_id': _s('Email id'), 'instructions': _s('What the reply should say')}, ('email_id',)),
    ToolSpec('send_email', AgentDomain.INBOX, 'Send an email',
             {'to': _list('Recipients'), 'subject': _s('Subject'), 'body': _s('Body'),
              'reply_to_id': _s('Email being answered')}, ('to', 'subject', 'body'), REQUEST),
    ToolSpec('archive_emails', AgentDomain.INBOX, 'Archive emails',
             {'email_ids': _list('Email ids')}, ('email_ids',)),
    ToolSpec('set_follow_up_reminder', AgentDomain.INBOX, 'Remind the user to follow up on an email',
             {'email_id': _s('Email id'), 'remind_at': _s('ISO datetime')}, ('email_id', 'remind_at')),
    ToolSpec('update_sender_importance', AgentDomain.INBOX, 'Adjust how important a sender is',
             {'sender': _s('Sender address'), 'importance': _n('1-10')}, ('sender', 'importance')),
    # calendar
    ToolSpec('find_available_slots', AgentDomain.CALENDAR, 'Find free meeting slots',
             {'duration_minutes': _n('Meeting length'), 'attendees': _list('Attendee emails'),
              'start_date': _s('ISO date'), 'end_date': _s('ISO date'), 'timezone': _TZ},
             ('duration_minutes',)),
    ToolSpec('schedule_meeting', AgentDomain.CALENDAR, 'Create a calendar event and invite attendees',
             {'title': _s('Title'), 'start_time': _s('ISO datetime'), 'duration_minutes': _n('Length'),
              'attendees': _list('Attendee emails'), 'location': _s('Location or video link'),
              'timezone': _TZ}, ('title', 'start_time', 'duration_minutes'), REQUEST),
    ToolSpec('reschedule_meeting', AgentDomain.CALENDAR, 'Move an existing meeting',
             {'event_id': _s('Event id'), 'new_start_time': _s('ISO datetime'), 'reason': _s('Why')},
             ('event_id', 'new_start_time'), REQUEST),
    ToolSpec('cancel_meeting', AgentDomain.CALENDAR, 'Cancel a meeting and notify attendees',
             {'event_id': _s('Event id'), 'reason': _s('Why')}, ('event_id',), ALWAYS),
    ToolSpec('add_buffer_time', AgentDomain.CALENDAR, 'Add buffer time around a meeting',
             {'event_id': _s('Event id'), 'before_minutes': _n('Before'), 'after_minutes': _n('After')},
             ('event_id',)),
    ToolSpec('calculate_travel_time', AgentDomain.CALENDAR, 'Estimate travel time between two locations',
             {'origin': _s('From'), 'destination': _s('To'), 'mode': _s('Travel mode')},
             ('origin', 'destination')),
    ToolSpec('detect_conflicts', AgentDomain.CALENDAR, 'Detect scheduling conflicts on a date',
             {'date': _s('ISO date'), 'timezone': _TZ}),
    ToolSpec('optimize_day', AgentDomain.CALENDAR, 'Suggest improvements to a day schedule',
             {'date': _s('ISO date'), 'timezone': _TZ}),
    ToolSpec('block_focus_time', AgentDomain.CALENDAR, 'Block focus time',
             {'duration_minutes': _n('Length'), 'title': _s('Title'), 'recurring': _b('Daily recurrence'),
              'preferred_time': _s('HH:MM')}, ('duration_minutes',)),
    # crm
    ToolSpec('find_contacts', AgentDomain.CRM, 'Search contacts', {'query': _s('Name, company or email')}),
    ToolSpec('get_contact_profile', AgentDomain.CRM, 'Get a contact profile with history',
             {'contact_id': _s('Contact id')}, ('contact_id',)),
    ToolSpec('update_contact', AgentDomain.CRM, 'Update contact fields',
             {'contact_id': _s('Contact id'), 'fields': {'type': 'object', 'description': 'Fields to set'}},
             ('contact_id', 'fields')),
    ToolSpec('log_interaction', AgentDomain.CRM, 'Log an interaction with a contact',
             {'contact_id': _s('Contact id'), 'type': _s('email, call, meeting'), 'summary': _s('Summary')},
             ('summary',)),
    ToolSpec('set_follow_up', AgentDomain.CRM, 'Set a follow-up date for a contact',
             {'contact_id': _s('Contact id'), 'due_date': _s('ISO date')}, ('contact_id', 'due_date')),
    ToolSpec('get_overdue_followups', AgentDomain.CRM, 'List overdue follow-ups', {}),
    ToolSpec('analyze_relationship', AgentDomain.CRM, 'Assess relationship health',
             {'contact_id': _s('Contact id')}, ('contact_id',)),
    ToolSpec('get_network_insights', AgentDomain.CRM, 'Summarize the user network', {}),
    ToolSpec('suggest_outreach', AgentDomain.CRM, 'Suggest contacts to reach out to',
             {'limit': _n('Max suggestions')}),
    ToolSpec('delete_contact', AgentDomain.CRM, 'Delete a contact permanently',
             {'contact_id': _s('Contact id')}, ('contact_id',), ALWAYS),
    # travel
    ToolSpec('search_flights', AgentDomain.TRAVEL, 'Search flights',
             {'origin': _s('IATA code'), 'destination': _s('IATA code'), 'departure_date': _s('ISO date'),
              'return_date': _s('ISO date'), 'cabin_class': _s('ECONOMY or BUSINESS')},
             ('origin', 'destination', 'departure_date')),
    ToolSpec('search_hotels', AgentDomain.TRAVEL, 'Search hotels',
             {'location': _s('City or address'), 'check_in': _s('ISO date'), 'check_out': _s('ISO date'),
              'min_stars': _n('Minimum stars')}, ('location', 'check_in', 'check_out')),
    ToolSpec('search_restaurants', AgentDomain.TRAVEL, 'Search restaurants near a location',
             {'location': _s('City or address'), 'cuisine': _s('Cuisine')}, ('location',)),
    ToolSpec('create_trip', AgentDomain.TRAVEL, 'Create a trip record',
             {'name': _s('Trip name'), 'destination': _s('Destination'), 'start_date': _s('ISO date'),
              'end_date': _s('ISO date')}, ('destination', 'start_date', 'end_date')),
    ToolSpec('get_trip_itinerary', AgentDomain.TRAVEL, 'Get a trip itinerary',
             {'trip_id': _s('Trip id')}, ('trip_id',)),
    ToolSpec('estimate_ground_transport', AgentDomain.TRAVEL, 'Estimate ground transport options',
             {'origin': _s('From'), 'destination': _s('To')}, ('origin', 'destination')),
    ToolSpec('book_flight', AgentDomain.TRAVEL, 'Book a flight',
             {'flight_id': _s('Offer id'), 'amount': _n('Total price'), 'currency': _s('ISO currency')},
             ('flight_id',), ALWAYS),
    ToolSpec('book_hotel', AgentDomain.TRAVEL, 'Book a hotel',
             {'hotel_id': _s('Offer id'), 'amount': _n('Total price'), 'currency': _s('ISO currency')},
             ('hotel_id',), ALWAYS),
    ToolSpec('cancel_booking', AgentDomain.TRAVEL, 'Cancel a booking',
             {'booking_id': _s('Booking id')}, ('booking_id',), ALWAYS),
    # tasks
    ToolSpec('create_task', AgentDomain.TASKS, 'Create a task',
             {'title': _s('Title'), 'due_date': _s('ISO date'), 'priority': _s('LOW, MEDIUM, HIGH, URGENT')},
             ('title',)),
    ToolSpec('update_task', AgentDomain.TASKS, 'Update a task',
             {'task_id': _s('Task id'), 'fields': {'type': 'object', 'description': 'Fields to set'}},
             ('task_id', 'fields')),
    ToolSpec('complete_task', AgentDomain.TASKS, 'Mark a task done', {'task_id': _s('Task id')}, ('task_id',)),
    ToolSpec('delete_task', AgentDomain.TASKS, 'Delete a task', {'task_id': _s('Task id')}, ('task_id',), REQUEST),
    ToolSpec('get_tasks', AgentDomain.TASKS, 'List tasks',
             {'status': _s('Filter by status'), 'query': _s('Search text')}),
    ToolSpec('prioritize_tasks', AgentDomain.TASKS, 'Rank open tasks by priority', {}),
    ToolSpec('suggest_time_blocks', AgentDomain.TASKS, 'Suggest calendar blocks for tasks',
             {'date': _s('ISO date')}),
    ToolSpec('extract_tasks_from_text', AgentDomain.TASKS, 'Extract tasks from free text',
             {'text': _s('Source text')}, ('text',)),
    ToolSpec('get_overdue_tasks', AgentDomain.TASKS, 'List overdue tasks', {}),
    # meeting prep
    ToolSpec('research_attendees', AgentDomain.MEETING_PREP, 'Research meeting attendees',
             {'event_id': _s('Event id'), 'attendees': _list('Attendee emails')}),
    ToolSpec('get_email_history_with_attendees', AgentDomain.MEETING_PREP, 'Recent emails with attendees',
             {'attendees': _list('Attendee emails'), 'limit': _n('Max emails')}),
    ToolSpec('suggest_talking_points', AgentDomain.MEETING_PREP, 'Suggest talking points',
             {'event_id': _s('Event id')}, ('event_id',)),
    ToolSpec('generate_meeting_brief', AgentDomain.MEETING_PREP, 'Generate a meeting brief',
             {'event_id': _s('Event id')}),
    ToolSpec('get_meeting_prep', AgentDomain.MEETING_PREP, 'Get saved prep for a meeting',
             {'event_id': _s('Event id')}, ('event_id',)),
    ToolSpec('save_meeting_notes', AgentDomain.MEETING_PREP, 'Save notes for a meeting',
             {'event_id': _s('Event id'), 'notes': _s('Notes')}, ('event_id', 'notes')),
    ToolSpec('schedule_prep_reminder', AgentDomain.MEETING_PREP, 'Remind the user to prepare',
             {'event_id': _s('Event id'), 'minutes_before': _n('Lead time')}, ('event_id',)),
)

DEFAULT_APPROVAL_CATEGORIES: dict[str, ApprovalCategory] = {spec.name: spec.category for spec in TOOL_SPECS}


def _bind(method: Any) -> ToolHandler:
    async def handler(tool_input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        value = await method(tool_input, context)
        return value if isinstance(value, ToolResult) else ToolResult.ok(value)

    return handler


def build_tool(spec: ToolSpec, handler: ToolHandler) -> RegisteredTool:
    return create_tool(
        spec.name,
        spec.description,
        spec.properties,
        list(spec.required),
        domain=spec.domain,
        handler=handler,
        approval_category=spec.category,
    )


def register_domain_tools(
    registry: ToolRegistry,
    backend: object,
    domains: set[AgentDomain] | None = None,
) -> list[str]:
    """Register every catalog tool the backend implements.

    Returns the registered names. Raises ``DuplicateToolError`` on a second call
    against the same registry.
    """
    registered: list[str] = []
    for spec in TOOL_SPECS:
        if domains is not None and spec.domain not in domains:
            continue
        method = getattr(backend, spec.name, None)
        if method is None:
            log_event('tool.unbound', trace_id='boot', level=logging.WARNING, tool=spec.name, domain=spec.domain.value)
            continue
        registry.register(build_tool(spec, _bind(method)))
        registered.append(spec.name)
    return registered
