"""Patch operation contracts.

Every edit to a workflow, whether typed by a person or proposed by an AI
assistant, is expressed as an ordered list of these operations.
"""

from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from .contracts import (
    BranchPath,
    Condition,
    DecisionOutcome,
    IRModel,
    Milestone,
    Resolution,
    Step,
    TerminateStatus,
    Workflow,
)

# ---------------------------------------------------------------------------
# Main path


class AddStepAfter(IRModel):
    op: Literal["ADD_STEP_AFTER"] = "ADD_STEP_AFTER"
    after_step_id: str
    step: Step


class AddStepBefore(IRModel):
    op: Literal["ADD_STEP_BEFORE"] = "ADD_STEP_BEFORE"
    before_step_id: str
    step: Step


class RemoveStep(IRModel):
    op: Literal["REMOVE_STEP"] = "REMOVE_STEP"
    step_id: str


class UpdateStep(IRModel):
    """Shallow-merge ``updates`` into a step found anywhere in the tree."""

    op: Literal["UPDATE_STEP"] = "UPDATE_STEP"
    step_id: str
    updates: dict[str, Any]


class MoveStep(IRModel):
    """Move a main-path step after ``after_step_id`` (``None`` = to the start)."""

    op: Literal["MOVE_STEP"] = "MOVE_STEP"
    step_id: str
    after_step_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Branch paths


class AddPathStepAfter(IRModel):
    op: Literal["ADD_PATH_STEP_AFTER"] = "ADD_PATH_STEP_AFTER"
    branch_step_id: str
    path_id: str
    after_step_id: Optional[str] = None
    step: Step


class AddPathStepBefore(IRModel):
    op: Literal["ADD_PATH_STEP_BEFORE"] = "ADD_PATH_STEP_BEFORE"
    branch_step_id: str
    path_id: str
    before_step_id: str
    step: Step


class RemovePathStep(IRModel):
    op: Literal["REMOVE_PATH_STEP"] = "REMOVE_PATH_STEP"
    branch_step_id: str
    path_id: str
    step_id: str


class UpdatePathStep(IRModel):
    op: Literal["UPDATE_PATH_STEP"] = "UPDATE_PATH_STEP"
    branch_step_id: str
    path_id: str
    step_id: str
    updates: dict[str, Any]


class MovePathStep(IRModel):
    op: Literal["MOVE_PATH_STEP"] = "MOVE_PATH_STEP"
    branch_step_id: str
    path_id: str
    step_id: str
    after_step_id: Optional[str] = None


class AddBranchPath(IRModel):
    op: Literal["ADD_BRANCH_PATH"] = "ADD_BRANCH_PATH"
    branch_step_id: str
    path: BranchPath


class RemoveBranchPath(IRModel):
    op: Literal["REMOVE_BRANCH_PATH"] = "REMOVE_BRANCH_PATH"
    branch_step_id: str
    path_id: str


class UpdateBranchPathCondition(IRModel):
    """Replace a path's condition; ``None`` turns it into the default path."""

    op: Literal["UPDATE_BRANCH_PATH_CONDITION"] = "UPDATE_BRANCH_PATH_CONDITION"
    branch_step_id: str
    path_id: str
    condition: Optional[Condition] = None


# ---------------------------------------------------------------------------
# Decision outcomes


class AddDecisionOutcome(IRModel):
    op: Literal["ADD_DECISION_OUTCOME"] = "ADD_DECISION_OUTCOME"
    decision_step_id: str
    outcome: DecisionOutcome


class RemoveDecisionOutcome(IRModel):
    op: Literal["REMOVE_DECISION_OUTCOME"] = "REMOVE_DECISION_OUTCOME"
    decision_step_id: str
    outcome_id: str


class UpdateDecisionOutcomeLabel(IRModel):
    op: Literal["UPDATE_DECISION_OUTCOME_LABEL"] = "UPDATE_DECISION_OUTCOME_LABEL"
    decision_step_id: str
    outcome_id: str
    label: str


class AddOutcomeStepAfter(IRModel):
    op: Literal["ADD_OUTCOME_STEP_AFTER"] = "ADD_OUTCOME_STEP_AFTER"
    decision_step_id: str
    outcome_id: str
    after_step_id: Optional[str] = None
    step: Step


class AddOutcomeStepBefore(IRModel):
    op: Literal["ADD_OUTCOME_STEP_BEFORE"] = "ADD_OUTCOME_STEP_BEFORE"
    decision_step_id: str
    outcome_id: str
    before_step_id: str
    step: Step


class RemoveOutcomeStep(IRModel):
    op: Literal["REMOVE_OUTCOME_STEP"] = "REMOVE_OUTCOME_STEP"
    decision_step_id: str
    outcome_id: str
    step_id: str


class UpdateOutcomeStep(IRModel):
    op: Literal["UPDATE_OUTCOME_STEP"] = "UPDATE_OUTCOME_STEP"
    decision_step_id: str
    outcome_id: str
    step_id: str
    updates: dict[str, Any]


class MoveOutcomeStep(IRModel):
    op: Literal["MOVE_OUTCOME_STEP"] = "MOVE_OUTCOME_STEP"
    decision_step_id: str
    outcome_id: str
    step_id: str
    after_step_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Control transfer


class UpdateTerminateStatus(IRModel):
    op: Literal["UPDATE_TERMINATE_STATUS"] = "UPDATE_TERMINATE_STATUS"
    step_id: str
    status: TerminateStatus


class UpdateGotoTarget(IRModel):
    op: Literal["UPDATE_GOTO_TARGET"] = "UPDATE_GOTO_TARGET"
    step_id: str
    target_step_id: str


# ---------------------------------------------------------------------------
# Workflow metadata


class AddMilestone(IRModel):
    op: Literal["ADD_MILESTONE"] = "ADD_MILESTONE"
    milestone: Milestone


class RemoveMilestone(IRModel):
    op: Literal["REMOVE_MILESTONE"] = "REMOVE_MILESTONE"
    milestone_id: str


class MilestoneUpdates(IRModel):
    name: Optional[str] = None
    sequence: Optional[int] = None


class UpdateMilestone(IRModel):
    op: Literal["UPDATE_MILESTONE"] = "UPDATE_MILESTONE"
    milestone_id: str
    updates: MilestoneUpdates


class UpdateFlowName(IRModel):
    op: Literal["UPDATE_FLOW_NAME"] = "UPDATE_FLOW_NAME"
    name: str


class AddRole(IRModel):
    op: Literal["ADD_ROLE"] = "ADD_ROLE"
    name: str
    role_id: Optional[str] = None
    resolution: Optional[Resolution] = None


class RemoveRole(IRModel):
    op: Literal["REMOVE_ROLE"] = "REMOVE_ROLE"
    name: str


class UpdateRole(IRModel):
    """Rename a role and/or replace its resolution strategy."""

    op: Literal["UPDATE_ROLE"] = "UPDATE_ROLE"
    name: str
    new_name: Optional[str] = None
    resolution: Optional[Resolution] = None


Operation = Annotated[
    Union[
        AddStepAfter,
        AddStepBefore,
        RemoveStep,
        UpdateStep,
        MoveStep,
        AddPathStepAfter,
        AddPathStepBefore,
        RemovePathStep,
        UpdatePathStep,
        MovePathStep,
        AddBranchPath,
        RemoveBranchPath,
        UpdateBranchPathCondition,
        AddDecisionOutcome,
        RemoveDecisionOutcome,
        UpdateDecisionOutcomeLabel,
        AddOutcomeStepAfter,
        AddOutcomeStepBefore,
        RemoveOutcomeStep,
        UpdateOutcomeStep,
        MoveOutcomeStep,
        UpdateTerminateStatus,
        UpdateGotoTarget,
        AddMilestone,
        RemoveMilestone,
        UpdateMilestone,
        UpdateFlowName,
        AddRole,
        RemoveRole,
        UpdateRole,
    ],
    Field(discriminator="op"),
]

OPERATION_ADAPTER: TypeAdapter[Operation] = TypeAdapter(Operation)


def parse_operation(data: Any) -> Operation:
    """Validate a raw operation payload (camelCase or snake_case keys)."""
    return OPERATION_ADAPTER.validate_python(data)


def parse_operations(data: List[Any]) -> List[Operation]:
    return [parse_operation(item) for item in data]


# ---------------------------------------------------------------------------
# Results


class OperationResult(IRModel):
    """Outcome of one operation; ``error`` explains a failure."""

    index: int
    op: str
    success: bool
    error: Optional[str] = None
    operation: Optional[Operation] = None


class PatchResult(IRModel):
    """Workflow produced by a patch batch plus one result per operation."""

    workflow: Workflow
    results: List[OperationResult] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def failures(self) -> List[OperationResult]:
        return [result for result in self.results if not result.success]
