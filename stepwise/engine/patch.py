"""Apply ordered edit operations to a workflow.

Operations run in list order, each against the state the previous one left
behind. Every operation is applied to a private copy and only committed when
it succeeds, so a rejected operation never leaves a half-edited tree and the
rest of the batch still runs.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic.alias_generators import to_snake

from ..config import StructureLimits
from ..contracts import (
    ActionStep,
    BranchPath,
    BranchStep,
    ContactTbdResolution,
    DecisionOutcome,
    DecisionStep,
    GotoStep,
    Role,
    Step,
    TerminateStep,
    Workflow,
    nested_containers,
)
from ..operations import (
    AddBranchPath,
    AddDecisionOutcome,
    AddMilestone,
    AddOutcomeStepAfter,
    AddOutcomeStepBefore,
    AddPathStepAfter,
    AddPathStepBefore,
    AddRole,
    AddStepAfter,
    AddStepBefore,
    MoveOutcomeStep,
    MovePathStep,
    MoveStep,
    OperationResult,
    PatchResult,
    RemoveBranchPath,
    RemoveDecisionOutcome,
    RemoveMilestone,
    RemoveOutcomeStep,
    RemovePathStep,
    RemoveRole,
    RemoveStep,
    UpdateBranchPathCondition,
    UpdateDecisionOutcomeLabel,
    UpdateFlowName,
    UpdateGotoTarget,
    UpdateMilestone,
    UpdateOutcomeStep,
    UpdatePathStep,
    UpdateRole,
    UpdateStep,
    UpdateTerminateStatus,
    parse_operation,
)
from . import tree
from .validation import duplicate_step_ids, ensure_unique_step_ids, structure_errors

logger = logging.getLogger(__name__)

STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)
STEP_FIELDS = frozenset(
    name
    for model in (ActionStep, BranchStep, DecisionStep, GotoStep, TerminateStep)
    for name in model.model_fields
)


class OperationRejected(Exception):
    """Raised inside a handler to reject the current operation."""


def apply_operations(
    workflow: Workflow,
    operations: Iterable[Any],
    limits: Optional[StructureLimits] = None,
) -> PatchResult:
    """Apply ``operations`` in order and report one result per operation.

    ``operations`` may mix operation models and raw payloads. The input
    workflow is never modified.

    Raises:
        DuplicateStepIdError: If ``workflow`` already repeats a step id.
    """

    limits = limits or StructureLimits()
    ensure_unique_step_ids(workflow)

    working = workflow.model_copy(deep=True)
    results: List[OperationResult] = []

    for index, raw in enumerate(operations):
        try:
            operation = raw if isinstance(raw, BaseModel) else parse_operation(raw)
        except ValidationError as e:
            name = raw.get("op") if isinstance(raw, dict) else None
            logger.debug(f"Operation #{index} failed to parse: {e}")
            results.append(
                OperationResult(
                    index=index,
                    op=str(name or "UNKNOWN"),
                    success=False,
                    error=f"Invalid operation: {e.error_count()} validation error(s)",
                )
            )
            continue

        op_name = str(getattr(operation, "op", type(operation).__name__))
        handler = _HANDLERS.get(type(operation))
        if handler is None:
            results.append(
                OperationResult(
                    index=index,
                    op=op_name,
                    success=False,
                    error=f"Unknown operation type: {op_name}",
                )
            )
            continue

        candidate = working.model_copy(deep=True)
        try:
            handler(candidate, operation, limits)
        except OperationRejected as e:
            logger.debug(f"Operation #{index} {op_name} rejected: {e}")
            results.append(
                OperationResult(
                    index=index,
                    op=op_name,
                    success=False,
                    error=str(e),
                    operation=operation,
                )
            )
            continue

        working = candidate
        logger.debug(f"Operation #{index} {op_name} applied")
        results.append(
            OperationResult(index=index, op=op_name, success=True, operation=operation)
        )

    return PatchResult(workflow=working, results=results)


# ---------------------------------------------------------------------------
# Invariant checks


def _check_subtree(workflow: Workflow, step: Any, limits: StructureLimits) -> None:
    """Reject ``step`` if its ids clash or any nested container is malformed."""
    new_ids = list(tree.walk_ids(step))
    existing = set(workflow.step_ids())
    seen: set[str] = set()
    for step_id in new_ids:
        if step_id in existing or step_id in seen:
            raise OperationRejected(f"Duplicate step id: {step_id}")
        seen.add(step_id)
    _check_structure(step, limits)


def _check_structure(step: Any, limits: StructureLimits) -> None:
    issues = structure_errors(step, limits)
    if issues:
        raise OperationRejected(issues[0].message)
    for _, nested in nested_containers(step):
        for child in nested:
            _check_structure(child, limits)


def _new_step(workflow: Workflow, step: Any, limits: StructureLimits) -> Any:
    _check_subtree(workflow, step, limits)
    return step.model_copy(deep=True)


def _merge_updates(step: Any, updates: Dict[str, Any]) -> Any:
    """Shallow-merge ``updates`` (camelCase or snake_case keys) into ``step``."""
    changes = {to_snake(key): value for key, value in updates.items()}
    unknown = sorted(key for key in changes if key not in STEP_FIELDS)
    if unknown:
        raise OperationRejected(
            f"Invalid update for step {step.step_id}: unknown field(s) {', '.join(unknown)}"
        )
    data = step.model_dump()
    data.update(changes)
    try:
        return STEP_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise OperationRejected(
            f"Invalid update for step {step.step_id}: {e.error_count()} validation error(s)"
        ) from e


def _replace(
    workflow: Workflow,
    container: List[Any],
    step_id: str,
    updates: Dict[str, Any],
    limits: StructureLimits,
    missing: str,
) -> None:
    index = next(
        (i for i, step in enumerate(container) if step.step_id == step_id), -1
    )
    if index == -1:
        raise OperationRejected(missing)
    container[index] = _merge_updates(container[index], updates)
    duplicates = duplicate_step_ids(workflow)
    if duplicates:
        raise OperationRejected(f"Duplicate step id: {duplicates[0]}")
    _check_structure(container[index], limits)


def _insert(
    workflow: Workflow,
    container: List[Any],
    step: Any,
    limits: StructureLimits,
    *,
    after: Optional[str] = None,
    before: Optional[str] = None,
    missing: str = "Step not found",
) -> None:
    new_step = _new_step(workflow, step, limits)
    if before is not None:
        ok = tree.insert_before(container, before, new_step)
    elif after is not None:
        ok = tree.insert_after(container, after, new_step)
    else:
        tree.insert_at_start(container, new_step)
        ok = True
    if not ok:
        raise OperationRejected(f"{missing}: {before if before is not None else after}")


# ---------------------------------------------------------------------------
# Lookups


def _branch(workflow: Workflow, step_id: str) -> BranchStep:
    branch = tree.find_branch_step(workflow, step_id)
    if branch is None:
        raise OperationRejected(f"Branch step not found: {step_id}")
    return branch


def _path(workflow: Workflow, branch_step_id: str, path_id: str) -> BranchPath:
    path = tree.find_path(_branch(workflow, branch_step_id), path_id)
    if path is None:
        raise OperationRejected(f"Path not found: {path_id}")
    return path


def _decision(workflow: Workflow, step_id: str) -> DecisionStep:
    decision = tree.find_decision_step(workflow, step_id)
    if decision is None:
        raise OperationRejected(f"Decision step not found: {step_id}")
    return decision


def _outcome(workflow: Workflow, decision_step_id: str, outcome_id: str) -> DecisionOutcome:
    outcome = tree.find_outcome(_decision(workflow, decision_step_id), outcome_id)
    if outcome is None:
        raise OperationRejected(f"Outcome not found: {outcome_id}")
    return outcome


# ---------------------------------------------------------------------------
# Main path


def _add_step_after(workflow: Workflow, op: AddStepAfter, limits: StructureLimits) -> None:
    _insert(workflow, workflow.steps, op.step, limits, after=op.after_step_id)


def _add_step_before(workflow: Workflow, op: AddStepBefore, limits: StructureLimits) -> None:
    _insert(workflow, workflow.steps, op.step, limits, before=op.before_step_id)


def _remove_step(workflow: Workflow, op: RemoveStep, limits: StructureLimits) -> None:
    if tree.remove(workflow.steps, op.step_id) is None:
        raise OperationRejected(f"Step not found: {op.step_id}")


def _update_step(workflow: Workflow, op: UpdateStep, limits: StructureLimits) -> None:
    location = tree.find_step(workflow, op.step_id)
    if location is None:
        raise OperationRejected(f"Step not found: {op.step_id}")
    _replace(
        workflow,
        location.container,
        op.step_id,
        op.updates,
        limits,
        f"Step not found: {op.step_id}",
    )


def _move_step(workflow: Workflow, op: MoveStep, limits: StructureLimits) -> None:
    if not tree.move(workflow.steps, op.step_id, op.after_step_id):
        raise OperationRejected(f"Failed to move step: {op.step_id}")


# ---------------------------------------------------------------------------
# Branch paths


def _add_path_step_after(
    workflow: Workflow, op: AddPathStepAfter, limits: StructureLimits
) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    _insert(
        workflow,
        path.steps,
        op.step,
        limits,
        after=op.after_step_id,
        missing="Step not found in path",
    )


def _add_path_step_before(
    workflow: Workflow, op: AddPathStepBefore, limits: StructureLimits
) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    _insert(
        workflow,
        path.steps,
        op.step,
        limits,
        before=op.before_step_id,
        missing="Step not found in path",
    )


def _remove_path_step(
    workflow: Workflow, op: RemovePathStep, limits: StructureLimits
) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    if tree.remove(path.steps, op.step_id) is None:
        raise OperationRejected(f"Step not found in path: {op.step_id}")


def _update_path_step(
    workflow: Workflow, op: UpdatePathStep, limits: StructureLimits
) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    _replace(
        workflow,
        path.steps,
        op.step_id,
        op.updates,
        limits,
        f"Step not found in path: {op.step_id}",
    )


def _move_path_step(workflow: Workflow, op: MovePathStep, limits: StructureLimits) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    if not tree.move(path.steps, op.step_id, op.after_step_id):
        raise OperationRejected(f"Failed to move step: {op.step_id}")


def _add_branch_path(workflow: Workflow, op: AddBranchPath, limits: StructureLimits) -> None:
    branch = _branch(workflow, op.branch_step_id)
    if tree.find_path(branch, op.path.path_id) is not None:
        raise OperationRejected(f"Path already exists: {op.path.path_id}")
    if len(branch.paths) + 1 > limits.max_branch_paths:
        raise OperationRejected(
            f"Branch {branch.step_id} would exceed the maximum of {limits.max_branch_paths} paths"
        )
    path = op.path.model_copy(deep=True)
    for step in path.steps:
        _check_subtree(workflow, step, limits)
    branch.paths.append(path)
    duplicates = duplicate_step_ids(workflow)
    if duplicates:
        raise OperationRejected(f"Duplicate step id: {duplicates[0]}")


def _remove_branch_path(
    workflow: Workflow, op: RemoveBranchPath, limits: StructureLimits
) -> None:
    branch = _branch(workflow, op.branch_step_id)
    path = tree.find_path(branch, op.path_id)
    if path is None:
        raise OperationRejected(f"Path not found: {op.path_id}")
    if len(branch.paths) - 1 < limits.min_branch_paths:
        raise OperationRejected(
            f"Branch {branch.step_id} would drop below the minimum of {limits.min_branch_paths} paths"
        )
    branch.paths.remove(path)


def _update_branch_path_condition(
    workflow: Workflow, op: UpdateBranchPathCondition, limits: StructureLimits
) -> None:
    path = _path(workflow, op.branch_step_id, op.path_id)
    path.condition = op.condition.model_copy() if op.condition is not None else None


# ---------------------------------------------------------------------------
# Decision outcomes


def _add_decision_outcome(
    workflow: Workflow, op: AddDecisionOutcome, limits: StructureLimits
) -> None:
    decision = _decision(workflow, op.decision_step_id)
    if tree.find_outcome(decision, op.outcome.outcome_id) is not None:
        raise OperationRejected(f"Outcome already exists: {op.outcome.outcome_id}")
    if len(decision.outcomes) + 1 > limits.max_decision_outcomes:
        raise OperationRejected(
            f"Decision {decision.step_id} would exceed the maximum of {limits.max_decision_outcomes} outcomes"
        )
    outcome = op.outcome.model_copy(deep=True)
    for step in outcome.steps:
        _check_subtree(workflow, step, limits)
    decision.outcomes.append(outcome)
    duplicates = duplicate_step_ids(workflow)
    if duplicates:
        raise OperationRejected(f"Duplicate step id: {duplicates[0]}")


def _remove_decision_outcome(
    workflow: Workflow, op: RemoveDecisionOutcome, limits: StructureLimits
) -> None:
    decision = _decision(workflow, op.decision_step_id)
    outcome = tree.find_outcome(decision, op.outcome_id)
    if outcome is None:
        raise OperationRejected(f"Outcome not found: {op.outcome_id}")
    if len(decision.outcomes) - 1 < limits.min_decision_outcomes:
        raise OperationRejected(
            f"Decision {decision.step_id} would drop below the minimum of {limits.min_decision_outcomes} outcomes"
        )
    decision.outcomes.remove(outcome)


def _update_decision_outcome_label(
    workflow: Workflow, op: UpdateDecisionOutcomeLabel, limits: StructureLimits
) -> None:
    _outcome(workflow, op.decision_step_id, op.outcome_id).label = op.label


def _add_outcome_step_after(
    workflow: Workflow, op: AddOutcomeStepAfter, limits: StructureLimits
) -> None:
    outcome = _outcome(workflow, op.decision_step_id, op.outcome_id)
    _insert(
        workflow,
        outcome.steps,
        op.step,
        limits,
        after=op.after_step_id,
        missing="Step not found in outcome",
    )


def _add_outcome_step_before(
    workflow: Workflow, op: AddOutcomeStepBefore, limits: StructureLimits
) -> None:
    outcome = _outcome(workflow, op.decision_step_id, op.outcome_id)
    _insert(
        workflow,
        outcome.steps,
        op.step,
        limits,
        before=op.before_step_id,
        missing="Step not found in outcome",
    )


def _remove_outcome_step(
    workflow: Workflow, op: RemoveOutcomeStep, limits: StructureLimits
) -> None:
    outcome = _outcome(workflow, op.decision_step_id, op.outcome_id)
    if tree.remove(outcome.steps, op.step_id) is None:
        raise OperationRejected(f"Step not found in outcome: {op.step_id}")


def _update_outcome_step(
    workflow: Workflow, op: UpdateOutcomeStep, limits: StructureLimits
) -> None:
    outcome = _outcome(workflow, op.decision_step_id, op.outcome_id)
    _replace(
        workflow,
        outcome.steps,
        op.step_id,
        op.updates,
        limits,
        f"Step not found in outcome: {op.step_id}",
    )


def _move_outcome_step(
    workflow: Workflow, op: MoveOutcomeStep, limits: StructureLimits
) -> None:
    outcome = _outcome(workflow, op.decision_step_id, op.outcome_id)
    if not tree.move(outcome.steps, op.step_id, op.after_step_id):
        raise OperationRejected(f"Failed to move step: {op.step_id}")


# ---------------------------------------------------------------------------
# Control transfer


def _update_terminate_status(
    workflow: Workflow, op: UpdateTerminateStatus, limits: StructureLimits
) -> None:
    location = tree.find_step(workflow, op.step_id)
    if location is None:
        raise OperationRejected(f"Step not found: {op.step_id}")
    if not isinstance(location.step, TerminateStep):
        raise OperationRejected(f"Step is not a TERMINATE step: {op.step_id}")
    if op.status not in limits.terminate_statuses:
        raise OperationRejected(f"Invalid terminate status: {op.status}")
    location.step.status = op.status


def _update_goto_target(
    workflow: Workflow, op: UpdateGotoTarget, limits: StructureLimits
) -> None:
    location = tree.find_step(workflow, op.step_id)
    if location is None:
        raise OperationRejected(f"Step not found: {op.step_id}")
    if not isinstance(location.step, GotoStep):
        raise OperationRejected(f"Step is not a GOTO step: {op.step_id}")
    location.step.target_step_id = op.target_step_id


# ---------------------------------------------------------------------------
# Workflow metadata


def _sort_milestones(workflow: Workflow) -> None:
    workflow.milestones.sort(key=lambda milestone: milestone.sequence)


def _add_milestone(workflow: Workflow, op: AddMilestone, limits: StructureLimits) -> None:
    milestone_id = op.milestone.milestone_id
    if any(m.milestone_id == milestone_id for m in workflow.milestones):
        raise OperationRejected(f"Milestone already exists: {milestone_id}")
    workflow.milestones.append(op.milestone.model_copy())
    _sort_milestones(workflow)


def _remove_milestone(
    workflow: Workflow, op: RemoveMilestone, limits: StructureLimits
) -> None:
    milestone = next(
        (m for m in workflow.milestones if m.milestone_id == op.milestone_id), None
    )
    if milestone is None:
        raise OperationRejected(f"Milestone not found: {op.milestone_id}")
    in_use = [
        step for step, _, _ in workflow.iter_steps() if step.milestone_id == op.milestone_id
    ]
    if in_use:
        raise OperationRejected(
            f"Cannot remove milestone {op.milestone_id}: {len(in_use)} steps are assigned to it"
        )
    workflow.milestones.remove(milestone)


def _update_milestone(
    workflow: Workflow, op: UpdateMilestone, limits: StructureLimits
) -> None:
    milestone = next(
        (m for m in workflow.milestones if m.milestone_id == op.milestone_id), None
    )
    if milestone is None:
        raise OperationRejected(f"Milestone not found: {op.milestone_id}")
    if op.updates.name is not None:
        milestone.name = op.updates.name
    if op.updates.sequence is not None:
        milestone.sequence = op.updates.sequence
    _sort_milestones(workflow)


def _update_flow_name(workflow: Workflow, op: UpdateFlowName, limits: StructureLimits) -> None:
    if not op.name.strip():
        raise OperationRejected("Workflow name cannot be empty")
    workflow.name = op.name


def _add_role(workflow: Workflow, op: AddRole, limits: StructureLimits) -> None:
    if workflow.find_role(op.name) is not None:
        raise OperationRejected(f"Role already exists: {op.name}")
    resolution = op.resolution or ContactTbdResolution()
    workflow.roles.append(
        Role(name=op.name, role_id=op.role_id, resolution=resolution.model_copy(deep=True))
    )


def _remove_role(workflow: Workflow, op: RemoveRole, limits: StructureLimits) -> None:
    role = workflow.find_role(op.name)
    if role is None:
        raise OperationRejected(f"Role not found: {op.name}")
    in_use = [step for step, _, _ in workflow.iter_steps() if step.assignee_role == op.name]
    if in_use:
        raise OperationRejected(
            f"Cannot remove role {op.name}: {len(in_use)} steps are assigned to it"
        )
    workflow.roles.remove(role)


def _update_role(workflow: Workflow, op: UpdateRole, limits: StructureLimits) -> None:
    role = workflow.find_role(op.name)
    if role is None:
        raise OperationRejected(f"Role not found: {op.name}")
    if op.new_name is not None and op.new_name != op.name:
        if workflow.find_role(op.new_name) is not None:
            raise OperationRejected(f"Role already exists: {op.new_name}")
        role.name = op.new_name
        for step, _, _ in workflow.iter_steps():
            if step.assignee_role == op.name:
                step.assignee_role = op.new_name
    if op.resolution is not None:
        role.resolution = op.resolution.model_copy(deep=True)


_HANDLERS: Dict[type, Callable[[Workflow, Any, StructureLimits], None]] = {
    AddStepAfter: _add_step_after,
    AddStepBefore: _add_step_before,
    RemoveStep: _remove_step,
    UpdateStep: _update_step,
    MoveStep: _move_step,
    AddPathStepAfter: _add_path_step_after,
    AddPathStepBefore: _add_path_step_before,
    RemovePathStep: _remove_path_step,
    UpdatePathStep: _update_path_step,
    MovePathStep: _move_path_step,
    AddBranchPath: _add_branch_path,
    RemoveBranchPath: _remove_branch_path,
    UpdateBranchPathCondition: _update_branch_path_condition,
    AddDecisionOutcome: _add_decision_outcome,
    RemoveDecisionOutcome: _remove_decision_outcome,
    UpdateDecisionOutcomeLabel: _update_decision_outcome_label,
    AddOutcomeStepAfter: _add_outcome_step_after,
    AddOutcomeStepBefore: _add_outcome_step_before,
    RemoveOutcomeStep: _remove_outcome_step,
    UpdateOutcomeStep: _update_outcome_step,
    MoveOutcomeStep: _move_outcome_step,
    UpdateTerminateStatus: _update_terminate_status,
    UpdateGotoTarget: _update_goto_target,
    AddMilestone: _add_milestone,
    RemoveMilestone: _remove_milestone,
    UpdateMilestone: _update_milestone,
    UpdateFlowName: _update_flow_name,
    AddRole: _add_role,
    RemoveRole: _remove_role,
    UpdateRole: _update_role,
}
