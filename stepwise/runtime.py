"""Drive flow runs: start them, complete steps, cancel them.

``FlowRuntime`` is the caller-side glue around the pure components. It
resolves roles, seeds step executions, routes branch/decision/goto/terminate
steps, persists the run and hands lifecycle effects to a dispatcher.
Concurrent calls for the same run must be serialized by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import StructureLimits
from .contracts import BranchStep, DecisionStep, GotoStep, TerminateStep, Workflow
from .engine import tree
from .engine.validation import ensure_unique_step_ids
from .exceptions import FlowRunNotFound, StepExecutionNotFound
from .lifecycle.controller import LifecycleEffects, StepLifecycleController
from .lifecycle.due_dates import compute_flow_due_at, ensure_utc
from .lifecycle.settings import NotificationSettings, SettingsCache
from .lifecycle.state import (
    FlowRun,
    FlowStatus,
    StepExecution,
    StepStatus,
    seed_step_executions,
    utcnow,
)
from .persistence.repository import Repository
from .resolution.assignees import AssigneeResolver, ResolutionContext
from .resolution.conditions import select_branch_paths, select_decision_outcome
from .resolution.tokens import (
    CompletedStep,
    EvaluationContext,
    RoleAssignment,
    WorkspaceInfo,
    build_evaluation_context,
)
from .scheduling.dispatcher import EffectDispatcher

logger = logging.getLogger(__name__)

# Automatic jumps allowed within one call before a goto loop is stopped.
MAX_AUTOMATIC_JUMPS = 50

TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)
DECISION_KEYS = ("outcomeId", "outcome_id", "outcome", "label")


@dataclass
class _RunState:
    """A loaded run plus the effects accumulated while advancing it."""

    run: FlowRun
    executions: List[StepExecution]
    now: datetime
    effects: LifecycleEffects = field(default_factory=LifecycleEffects)
    jumps: int = 0

    def add(self, effects: LifecycleEffects) -> None:
        self.effects = self.effects.merge(effects)

    def find(self, execution_id: Optional[str]) -> Optional[StepExecution]:
        if execution_id is None:
            return None
        return next(
            (e for e in self.executions if e.execution_id == execution_id), None
        )

    def container(
        self,
        parent_execution_id: Optional[str],
        parent_iteration: int,
        container_id: Optional[str],
    ) -> List[StepExecution]:
        members = [
            e
            for e in self.executions
            if e.parent_execution_id == parent_execution_id
            and e.container_id == container_id
            and (parent_execution_id is None or e.parent_iteration == parent_iteration)
        ]
        return sorted(members, key=lambda e: e.position)

    def siblings(self, execution: StepExecution) -> List[StepExecution]:
        return self.container(
            execution.parent_execution_id,
            execution.parent_iteration,
            execution.container_id,
        )

    def children(self, parent: StepExecution) -> List[StepExecution]:
        return [
            e
            for e in self.executions
            if e.parent_execution_id == parent.execution_id
            and e.parent_iteration == parent.iteration
        ]

    def is_live(self, execution: StepExecution) -> bool:
        parent = self.find(execution.parent_execution_id)
        if parent is None:
            return execution.parent_execution_id is None
        return execution.parent_iteration == parent.iteration and self.is_live(parent)

    def ancestors(self, execution: StepExecution) -> List[StepExecution]:
        chain = []
        parent = self.find(execution.parent_execution_id)
        while parent is not None:
            chain.append(parent)
            parent = self.find(parent.parent_execution_id)
        return chain


class FlowRuntime:
    """Run flows against a repository, dispatching lifecycle effects."""

    def __init__(
        self,
        repository: Repository,
        dispatcher: EffectDispatcher,
        settings_cache: Optional[SettingsCache] = None,
        limits: Optional[StructureLimits] = None,
        controller: Optional[StepLifecycleController] = None,
        clock=utcnow,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.settings_cache = settings_cache or SettingsCache()
        self.limits = limits or StructureLimits()
        self.controller = controller or StepLifecycleController(clock=clock)
        self.resolver = AssigneeResolver(repository)
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API

    async def start_flow(
        self,
        template: Workflow,
        organization_id: str,
        started_by_user_id: str,
        *,
        name: Optional[str] = None,
        kickoff_data: Optional[Dict[str, Any]] = None,
        flow_variables: Optional[Dict[str, Any]] = None,
        manual_assignments: Optional[Dict[str, str]] = None,
        workspace: Optional[WorkspaceInfo] = None,
    ) -> FlowRun:
        """Start a run of ``template`` and activate its first step."""

        ensure_unique_step_ids(template)
        now = ensure_utc(self._clock())
        run = FlowRun(
            template_id=template.workflow_id,
            organization_id=organization_id,
            started_by_user_id=started_by_user_id,
            name=name or template.name,
            workflow=template.model_copy(deep=True),
            started_at=now,
            due_at=compute_flow_due_at(template.flow_due, now),
            kickoff_data=kickoff_data or {},
            flow_variables=flow_variables or {},
            workspace=workspace,
        )
        run.role_assignments = await self.resolver.resolve_assignees(
            template.roles,
            ResolutionContext(
                organization_id=organization_id,
                started_by_user_id=started_by_user_id,
                template_id=template.workflow_id,
                role_assignments=manual_assignments or {},
                kickoff_data=run.kickoff_data,
                flow_variables=run.flow_variables,
            ),
        )

        state = _RunState(
            run=run, executions=seed_step_executions(run, template.steps), now=now
        )
        logger.info(f"Started flow run {run.run_id} of template {template.workflow_id}")

        if state.executions:
            self._activate(state, state.executions[0])
        else:
            self._finish_flow(state)
        return await self._commit(state)

    async def complete_step(
        self,
        run_id: str,
        execution_id: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> FlowRun:
        """Record a step's result and advance the flow.

        Raises:
            FlowRunNotFound: If the run does not exist.
            StepExecutionNotFound: If the execution is not part of the run.
            InvalidStatusTransition: If the execution cannot be completed.
        """

        state = await self._load(run_id)
        execution = self._execution(state, execution_id)
        execution.result_data = dict(result or {})
        execution.transition(StepStatus.COMPLETED, state.now)
        self._skip_descendants(state, execution)
        state.add(self.controller.complete(execution, recipients=[state.run.started_by_user_id]))
        logger.info(f"Completed step {execution.step_id} in flow run {run_id}")

        step = self._step(state.run, execution.step_id)
        if isinstance(step, DecisionStep):
            self._route_decision(state, execution, step)
        else:
            self._advance_after(state, execution)
        return await self._commit(state)

    async def assign_step(
        self,
        run_id: str,
        execution_id: str,
        contact_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> FlowRun:
        """Give a step an assignee, starting it if it was waiting for one."""

        state = await self._load(run_id)
        execution = self._execution(state, execution_id)
        execution.assigned_contact_id = contact_id
        execution.assigned_user_id = user_id
        if execution.status is StepStatus.WAITING_FOR_ASSIGNEE and execution.assignee_id:
            self._start(state, execution)
        return await self._commit(state)

    async def reassign_due(self, run_id: str, execution_id: str, due_at: datetime) -> FlowRun:
        """Move a step's due date, replacing its pending timers."""

        state = await self._load(run_id)
        execution = self._execution(state, execution_id)
        effects = self.controller.reassign_due(
            execution, due_at, self._settings(state.run), state.now
        )
        execution.due_at = effects.due_at
        state.add(effects)
        return await self._commit(state)

    async def cancel_flow(self, run_id: str) -> FlowRun:
        state = await self._load(run_id)
        if state.run.status is FlowStatus.RUNNING:
            self._cancel_run(state)
        return await self._commit(state)

    async def get_executions(self, run_id: str) -> List[StepExecution]:
        return await self.repository.get_step_executions(run_id)

    # ------------------------------------------------------------------
    # Loading and saving

    async def _load(self, run_id: str) -> _RunState:
        run = await self.repository.get_flow_run(run_id)
        if run is None:
            raise FlowRunNotFound(run_id)
        executions = await self.repository.get_step_executions(run_id)
        return _RunState(run=run, executions=executions, now=ensure_utc(self._clock()))

    @staticmethod
    def _execution(state: _RunState, execution_id: str) -> StepExecution:
        execution = state.find(execution_id)
        if execution is None:
            raise StepExecutionNotFound(execution_id)
        return execution

    async def _commit(self, state: _RunState) -> FlowRun:
        await self.repository.save_flow_run(state.run)
        await self.repository.save_step_executions(state.executions)
        await self.dispatcher.dispatch(state.effects)
        return state.run

    def _settings(self, run: FlowRun) -> NotificationSettings:
        return self.settings_cache.get_or_load(
            run.template_id, lambda: run.workflow.notifications
        )

    @staticmethod
    def _step(run: FlowRun, step_id: str) -> Optional[Any]:
        location = tree.find_step(run.workflow, step_id)
        return location.step if location else None

    def _evaluation_context(self, state: _RunState) -> EvaluationContext:
        completed = [
            CompletedStep(
                step_id=e.step_id, step_name=e.step_name, result_data=e.result_data
            )
            for e in state.executions
            if e.status is StepStatus.COMPLETED
        ]
        roles = {
            name: RoleAssignment(contact_id=assignee.contact_id)
            for name, assignee in state.run.role_assignments.items()
            if assignee.resolved
        }
        return build_evaluation_context(
            state.run.kickoff_data, roles, completed, state.run.workspace
        )

    # ------------------------------------------------------------------
    # Activation

    def _activate(self, state: _RunState, execution: StepExecution) -> None:
        if state.run.status is not FlowStatus.RUNNING:
            return
        step = self._step(state.run, execution.step_id)
        if step is None:
            logger.warning(
                f"Step {execution.step_id} missing from run {state.run.run_id} snapshot, skipping"
            )
            execution.transition(StepStatus.SKIPPED, state.now)
            self._advance_after(state, execution)
            return

        if isinstance(step, BranchStep):
            execution.transition(StepStatus.IN_PROGRESS, state.now)
            self._route_branch(state, execution, step)
        elif isinstance(step, GotoStep):
            self._goto(state, execution, step)
        elif isinstance(step, TerminateStep):
            self._terminate(state, execution, step)
        elif step.type == "GOTO_DESTINATION":
            execution.transition(StepStatus.IN_PROGRESS, state.now)
            execution.transition(StepStatus.COMPLETED, state.now)
            self._advance_after(state, execution)
        elif step.assignee_role and not execution.assignee_id:
            execution.transition(StepStatus.WAITING_FOR_ASSIGNEE, state.now)
            logger.info(
                f"Step {execution.step_id} waiting for an assignee for role {step.assignee_role}"
            )
        else:
            self._start(state, execution)

    def _start(self, state: _RunState, execution: StepExecution) -> None:
        step = self._step(state.run, execution.step_id)
        execution.transition(StepStatus.IN_PROGRESS, state.now)
        effects = self.controller.activate(
            execution,
            step.due if step is not None else None,
            self._settings(state.run),
            state.run.due_at,
            state.now,
        )
        execution.due_at = effects.due_at
        state.add(effects)
        logger.info(f"Activated step {execution.step_id} in flow run {state.run.run_id}")

    # ------------------------------------------------------------------
    # Routing

    def _route_branch(
        self, state: _RunState, execution: StepExecution, step: BranchStep
    ) -> None:
        decision = select_branch_paths(step, self._evaluation_context(state))
        execution.result_data = {"selectedPathIds": decision.selected_path_ids}
        if not decision.matched:
            logger.warning(
                f"No path of branch {step.step_id} matched in flow run {state.run.run_id}; branch stalls"
            )
            return

        for path_id in decision.selected_path_ids:
            path = tree.find_path(step, path_id)
            state.executions.extend(
                seed_step_executions(state.run, path.steps, parent=execution, container_id=path_id)
            )
        for path_id in decision.selected_path_ids:
            members = state.container(execution.execution_id, execution.iteration, path_id)
            if members and members[0].status is StepStatus.PENDING:
                self._activate(state, members[0])
        self._maybe_finish_branch(state, execution)

    def _route_decision(
        self, state: _RunState, execution: StepExecution, step: DecisionStep
    ) -> None:
        result = execution.result_data
        selection = next((result[k] for k in DECISION_KEYS if result.get(k)), None)
        outcome = select_decision_outcome(step, str(selection) if selection else None)
        if outcome is None:
            logger.warning(
                f"Decision {step.step_id} result {selection!r} matches no outcome; continuing past it"
            )
            self._advance_after(state, execution)
            return

        execution.result_data = {**result, "selectedOutcomeId": outcome.outcome_id}
        members = seed_step_executions(
            state.run, outcome.steps, parent=execution, container_id=outcome.outcome_id
        )
        state.executions.extend(members)
        if members:
            self._activate(state, members[0])
        else:
            self._advance_after(state, execution)

    def _advance_after(self, state: _RunState, execution: StepExecution) -> None:
        if state.run.status is not FlowStatus.RUNNING:
            return
        following = next(
            (
                e
                for e in state.siblings(execution)
                if e.position > execution.position and e.status is StepStatus.PENDING
            ),
            None,
        )
        if following is not None:
            self._activate(state, following)
            return

        parent = state.find(execution.parent_execution_id)
        if parent is None:
            self._finish_flow(state)
        elif isinstance(self._step(state.run, parent.step_id), BranchStep):
            self._maybe_finish_branch(state, parent)
        else:
            self._advance_after(state, parent)

    def _container_done(self, state: _RunState, parent: StepExecution, container_id: str) -> bool:
        members = state.container(parent.execution_id, parent.iteration, container_id)
        return all(e.status in TERMINAL_STATUSES for e in members)

    def _maybe_finish_branch(self, state: _RunState, execution: StepExecution) -> None:
        if execution.status is not StepStatus.IN_PROGRESS:
            return
        selected = execution.result_data.get("selectedPathIds") or []
        if selected and all(self._container_done(state, execution, p) for p in selected):
            execution.transition(StepStatus.COMPLETED, state.now)
            self._advance_after(state, execution)

    # ------------------------------------------------------------------
    # Control transfer

    def _goto(self, state: _RunState, execution: StepExecution, step: GotoStep) -> None:
        execution.transition(StepStatus.IN_PROGRESS, state.now)
        execution.transition(StepStatus.COMPLETED, state.now)
        execution.result_data = {"targetStepId": step.target_step_id}

        target = next(
            (
                e
                for e in state.executions
                if e.step_id == step.target_step_id and e is not execution and state.is_live(e)
            ),
            None,
        )
        if target is None:
            logger.warning(
                f"Goto {step.step_id} target {step.target_step_id} is not reachable; continuing"
            )
            self._advance_after(state, execution)
            return

        state.jumps += 1
        if state.jumps > MAX_AUTOMATIC_JUMPS:
            logger.warning(
                f"Goto {step.step_id} exceeded {MAX_AUTOMATIC_JUMPS} automatic jumps; flow run {state.run.run_id} stalls"
            )
            return

        for sibling in state.siblings(target):
            if sibling.position >= target.position:
                self._reopen(state, sibling)
            elif sibling.status is StepStatus.PENDING:
                sibling.transition(StepStatus.SKIPPED, state.now)
            elif sibling.is_active:
                self._close(state, sibling, StepStatus.COMPLETED)
        logger.info(f"Goto {step.step_id} jumps to {target.step_id} in flow run {state.run.run_id}")
        self._activate(state, target)

    def _terminate(
        self, state: _RunState, execution: StepExecution, step: TerminateStep
    ) -> None:
        execution.transition(StepStatus.IN_PROGRESS, state.now)
        execution.transition(StepStatus.COMPLETED, state.now)
        if step.status == "CANCELLED":
            self._cancel_run(state)
            return

        ancestors = {e.execution_id for e in state.ancestors(execution)}
        for other in state.executions:
            if other is execution:
                continue
            if other.status is StepStatus.PENDING:
                other.transition(StepStatus.SKIPPED, state.now)
            elif other.is_active:
                status = (
                    StepStatus.COMPLETED
                    if other.execution_id in ancestors
                    else StepStatus.CANCELLED
                )
                self._close(state, other, status)
        self._finish_flow(state)

    def _reopen(self, state: _RunState, execution: StepExecution) -> None:
        if execution.is_active:
            self._close(state, execution, StepStatus.COMPLETED)
        else:
            self._skip_descendants(state, execution)
        if execution.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            execution.transition(StepStatus.PENDING, state.now)

    def _close(self, state: _RunState, execution: StepExecution, status: StepStatus) -> None:
        self._skip_descendants(state, execution)
        if execution.status is StepStatus.WAITING_FOR_ASSIGNEE and status is StepStatus.COMPLETED:
            status = StepStatus.CANCELLED
        execution.transition(status, state.now)
        state.add(LifecycleEffects(cancel=[execution.execution_id]))

    def _skip_descendants(self, state: _RunState, execution: StepExecution) -> None:
        for child in state.children(execution):
            if child.status is StepStatus.PENDING:
                self._skip_descendants(state, child)
                child.transition(StepStatus.SKIPPED, state.now)
            elif child.is_active:
                self._close(state, child, StepStatus.CANCELLED)

    # ------------------------------------------------------------------
    # Flow end

    def _finish_flow(self, state: _RunState) -> None:
        if state.run.status is not FlowStatus.RUNNING:
            return
        state.run.status = FlowStatus.COMPLETED
        state.run.completed_at = state.now
        state.add(self.controller.flow_completed(state.run))
        logger.info(f"Flow run {state.run.run_id} completed")

    def _cancel_run(self, state: _RunState) -> None:
        state.add(self.controller.flow_cancelled(state.run, state.executions))
        for execution in state.executions:
            if execution.status not in TERMINAL_STATUSES:
                execution.transition(StepStatus.CANCELLED, state.now)
        state.run.status = FlowStatus.CANCELLED
        state.run.completed_at = state.now
        logger.info(f"Flow run {state.run.run_id} cancelled")
