"""Sequential workflow execution.

Steps run one at a time in dependency order. A failed step does not stop the
workflow (its dependents fail as unmet); an approval pause does, and nothing
after the paused step runs until the caller starts a new workflow.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from opsagent.domain.context import AgentDomain, ExecutionContext
from opsagent.observability.tracing import Span, log_event

from .agents import DomainAgent, dispatch
from .results import AgentResult
from .workflows import (
    StepExecution,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
    order_steps_by_dependencies,
)


class WorkflowEngine:
    def __init__(self, agents: Mapping[AgentDomain, DomainAgent]) -> None:
        self._agents = agents

    async def execute(
        self,
        context: ExecutionContext,
        workflow: WorkflowDefinition,
        parameters: dict[str, Any] | None = None,
    ) -> AgentResult:
        _, result = await self._execute(context, workflow, parameters or {})
        return result

    async def run(
        self,
        context: ExecutionContext,
        workflow: WorkflowDefinition,
        parameters: dict[str, Any] | None = None,
    ) -> WorkflowExecution:
        execution, _ = await self._execute(context, workflow, parameters or {})
        return execution

    async def _execute(
        self,
        context: ExecutionContext,
        workflow: WorkflowDefinition,
        parameters: dict[str, Any],
    ) -> tuple[WorkflowExecution, AgentResult]:
        # raises WorkflowCycleError before any step runs
        ordered = order_steps_by_dependencies(workflow.steps, workflow.id)

        span = Span(name=f'workflow.{workflow.id}', trace_id=context.request_id)
        log_event('workflow.started', trace_id=context.request_id, workflow=workflow.id, steps=len(ordered))

        step_results: dict[str, Any] = {}
        executed: list[StepExecution] = []
        tools_used: list[str] = []
        chain: list[str] = [f'Starting workflow: {workflow.name}']

        for step in ordered:
            chain.append(f'Executing step: {step.id} ({step.description})')

            unmet = [dep for dep in step.depends_on if dep not in step_results]
            if unmet:
                error = f"Unmet dependencies: {', '.join(unmet)}"
                executed.append(StepExecution(step_id=step.id, agent=step.agent, status='failed', error=error))
                chain.append(f'Step skipped: {step.id} - {error}')
                continue

            step_params = dict(parameters)
            for dep in step.depends_on:
                step_params[f'{dep}_result'] = step_results[dep]

            message = f'Execute {step.action}: {json.dumps(step_params, ensure_ascii=False, default=str)}'
            result = await dispatch(self._agents, context, step.agent, message)

            if result.requires_approval:
                executed.append(StepExecution(
                    step_id=step.id,
                    agent=step.agent,
                    status='approval_required',
                    approval_id=result.approval_id,
                ))
                tools_used.extend(result.tools_used)
                chain.append(f'Workflow paused: approval required for {step.action}')
                span.end()
                log_event('workflow.paused', trace_id=context.request_id, span=span, workflow=workflow.id,
                          step=step.id, approval_id=result.approval_id)
                paused = f'Workflow paused at step "{step.description}". Approval required.'
                execution = WorkflowExecution(
                    workflow_id=workflow.id,
                    status=WorkflowStatus.PENDING_APPROVAL,
                    steps=executed,
                    completed_steps=sum(1 for s in executed if s.status == 'completed'),
                    summary=paused,
                    approval_id=result.approval_id,
                )
                return execution, AgentResult(
                    success=True,
                    data=paused,
                    requires_approval=True,
                    approval_id=result.approval_id,
                    approval_category=result.approval_category,
                    tools_used=tools_used,
                    chain_of_thought=chain,
                )

            if result.success:
                step_results[step.id] = result.data
                executed.append(StepExecution(step_id=step.id, agent=step.agent, status='completed',
                                              result=result.data))
                tools_used.extend(result.tools_used)
            else:
                executed.append(StepExecution(step_id=step.id, agent=step.agent, status='failed',
                                              error=result.error))
                chain.append(f'Step failed: {step.id} - {result.error}')

        completed = sum(1 for s in executed if s.status == 'completed')
        summary = f'Workflow "{workflow.name}" completed. {completed}/{len(executed)} steps successful.'
        chain.append(summary)

        if completed == 0:
            status = WorkflowStatus.FAILED
        elif completed == len(executed):
            status = WorkflowStatus.COMPLETED
        else:
            status = WorkflowStatus.PARTIAL

        span.end()
        log_event('workflow.finished', trace_id=context.request_id, span=span, workflow=workflow.id,
                  status=status.value, completed=completed, executed=len(executed))

        execution = WorkflowExecution(
            workflow_id=workflow.id,
            status=status,
            steps=executed,
            completed_steps=completed,
            summary=summary,
        )
        if completed == 0:
            return execution, AgentResult.failure(summary, data=summary, tools_used=tools_used, chain_of_thought=chain)
        return execution, AgentResult(success=True, data=summary, tools_used=tools_used, chain_of_thought=chain)
