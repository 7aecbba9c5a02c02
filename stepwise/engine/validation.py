"""Whole-workflow structural validation."""

from __future__ import annotations

from collections import Counter
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..config import StructureLimits
from ..contracts import (
    BranchStep,
    DecisionStep,
    GotoStep,
    TerminateStep,
    Workflow,
    nested_containers,
)
from ..exceptions import DuplicateStepIdError


class ValidationIssue(BaseModel):
    code: str
    message: str
    step_id: Optional[str] = None


class ValidationReport(BaseModel):
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]


def duplicate_step_ids(workflow: Workflow) -> List[str]:
    counts = Counter(workflow.step_ids())
    return [step_id for step_id, count in counts.items() if count > 1]


def ensure_unique_step_ids(workflow: Workflow) -> None:
    """Raise ``DuplicateStepIdError`` if any id appears twice in the tree."""
    duplicates = duplicate_step_ids(workflow)
    if duplicates:
        raise DuplicateStepIdError(duplicates)


def structure_errors(step: Any, limits: StructureLimits) -> List[ValidationIssue]:
    """Path/outcome count and id problems of a single branch or decision step."""
    issues: List[ValidationIssue] = []
    if isinstance(step, BranchStep):
        count = len(step.paths)
        if count < limits.min_branch_paths:
            issues.append(
                ValidationIssue(
                    code="MIN_PATHS",
                    message=f"Branch {step.step_id} needs at least {limits.min_branch_paths} paths, has {count}",
                    step_id=step.step_id,
                )
            )
        if count > limits.max_branch_paths:
            issues.append(
                ValidationIssue(
                    code="MAX_PATHS",
                    message=f"Branch {step.step_id} allows at most {limits.max_branch_paths} paths, has {count}",
                    step_id=step.step_id,
                )
            )
        ids = [path.path_id for path in step.paths]
    elif isinstance(step, DecisionStep):
        count = len(step.outcomes)
        if count < limits.min_decision_outcomes:
            issues.append(
                ValidationIssue(
                    code="MIN_OUTCOMES",
                    message=f"Decision {step.step_id} needs at least {limits.min_decision_outcomes} outcomes, has {count}",
                    step_id=step.step_id,
                )
            )
        if count > limits.max_decision_outcomes:
            issues.append(
                ValidationIssue(
                    code="MAX_OUTCOMES",
                    message=f"Decision {step.step_id} allows at most {limits.max_decision_outcomes} outcomes, has {count}",
                    step_id=step.step_id,
                )
            )
        ids = [outcome.outcome_id for outcome in step.outcomes]
    else:
        return issues

    repeated = sorted(key for key, n in Counter(ids).items() if n > 1)
    if repeated:
        issues.append(
            ValidationIssue(
                code="UNIQUE_ID",
                message=f"Step {step.step_id} repeats container ids: {', '.join(repeated)}",
                step_id=step.step_id,
            )
        )
    return issues


def validate_workflow(
    workflow: Workflow, limits: Optional[StructureLimits] = None
) -> ValidationReport:
    """Check structural rules and cross references of ``workflow``.

    Goto and terminate steps refer to other steps by id, so they are checked
    here rather than by containment.
    """

    limits = limits or StructureLimits()
    report = ValidationReport()
    issues = report.issues

    for step_id in duplicate_step_ids(workflow):
        issues.append(
            ValidationIssue(
                code="UNIQUE_ID",
                message=f"Duplicate step id: {step_id}",
                step_id=step_id,
            )
        )

    role_counts = Counter(role.name for role in workflow.roles)
    for name, count in role_counts.items():
        if count > 1:
            issues.append(
                ValidationIssue(code="DUPLICATE_ROLE", message=f"Duplicate role: {name}")
            )

    all_ids = set(workflow.step_ids())
    main_ids = {step.step_id for step in workflow.steps}
    milestone_ids = {milestone.milestone_id for milestone in workflow.milestones}

    def visit(steps: List[Any], depth: int) -> None:
        for step in steps:
            issues.extend(structure_errors(step, limits))
            level = depth
            if isinstance(step, (BranchStep, DecisionStep)):
                level = depth + 1
                if level > limits.max_nesting_depth:
                    issues.append(
                        ValidationIssue(
                            code="MAX_NESTING_DEPTH",
                            message=f"Step {step.step_id} nests {level} levels deep (max {limits.max_nesting_depth})",
                            step_id=step.step_id,
                        )
                    )
            if isinstance(step, GotoStep):
                if step.target_step_id not in all_ids:
                    issues.append(
                        ValidationIssue(
                            code="GOTO_TARGET_MISSING",
                            message=f"Goto {step.step_id} targets unknown step {step.target_step_id}",
                            step_id=step.step_id,
                        )
                    )
                elif (
                    limits.goto_target_must_be_on_main_path
                    and step.target_step_id not in main_ids
                ):
                    issues.append(
                        ValidationIssue(
                            code="GOTO_TARGET_MAIN_PATH",
                            message=f"Goto {step.step_id} must target a main path step, not {step.target_step_id}",
                            step_id=step.step_id,
                        )
                    )
            if (
                isinstance(step, TerminateStep)
                and step.status not in limits.terminate_statuses
            ):
                issues.append(
                    ValidationIssue(
                        code="TERMINATE_STATUS",
                        message=f"Terminate {step.step_id} has invalid status {step.status}",
                        step_id=step.step_id,
                    )
                )
            if step.assignee_role and step.assignee_role not in role_counts:
                issues.append(
                    ValidationIssue(
                        code="UNKNOWN_ROLE",
                        message=f"Step {step.step_id} uses undefined role {step.assignee_role}",
                        step_id=step.step_id,
                    )
                )
            if step.milestone_id and step.milestone_id not in milestone_ids:
                issues.append(
                    ValidationIssue(
                        code="UNKNOWN_MILESTONE",
                        message=f"Step {step.step_id} uses undefined milestone {step.milestone_id}",
                        step_id=step.step_id,
                    )
                )
            for _, nested in nested_containers(step):
                visit(nested, level)

    visit(workflow.steps, 0)
    return report
