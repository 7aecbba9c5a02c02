"""Locating and repositioning steps inside a workflow tree.

All helpers mutate the lists they are handed; callers work on a copy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

from ..contracts import (
    BranchPath,
    BranchStep,
    DecisionOutcome,
    DecisionStep,
    Workflow,
    nested_containers,
)


@dataclass
class StepLocation:
    """Where a step lives: its container list, index and owning step."""

    step: Any
    container: List[Any]
    index: int
    parent: Optional[Any] = None


def _index_of(steps: List[Any], step_id: str) -> int:
    for index, step in enumerate(steps):
        if step.step_id == step_id:
            return index
    return -1


def _search_nested(steps: List[Any], step_id: str) -> Optional[StepLocation]:
    for step in steps:
        for _, nested in nested_containers(step):
            index = _index_of(nested, step_id)
            if index != -1:
                return StepLocation(nested[index], nested, index, step)
            found = _search_nested(nested, step_id)
            if found is not None:
                return found
    return None


def find_in_main_path(workflow: Workflow, step_id: str) -> Optional[StepLocation]:
    index = _index_of(workflow.steps, step_id)
    if index == -1:
        return None
    return StepLocation(workflow.steps[index], workflow.steps, index)


def find_step(workflow: Workflow, step_id: str) -> Optional[StepLocation]:
    """Find a step anywhere, preferring the main path over nested sequences."""
    return find_in_main_path(workflow, step_id) or _search_nested(
        workflow.steps, step_id
    )


def find_branch_step(workflow: Workflow, step_id: str) -> Optional[BranchStep]:
    location = find_step(workflow, step_id)
    if location is None or not isinstance(location.step, BranchStep):
        return None
    return location.step


def find_decision_step(workflow: Workflow, step_id: str) -> Optional[DecisionStep]:
    location = find_step(workflow, step_id)
    if location is None or not isinstance(location.step, DecisionStep):
        return None
    return location.step


def find_path(step: BranchStep, path_id: str) -> Optional[BranchPath]:
    return next((path for path in step.paths if path.path_id == path_id), None)


def find_outcome(step: DecisionStep, outcome_id: str) -> Optional[DecisionOutcome]:
    return next(
        (outcome for outcome in step.outcomes if outcome.outcome_id == outcome_id),
        None,
    )


def walk_ids(step: Any) -> Iterator[str]:
    """Yield ``step``'s id followed by every id nested beneath it."""
    yield step.step_id
    for _, nested in nested_containers(step):
        for child in nested:
            yield from walk_ids(child)


# ---------------------------------------------------------------------------
# Positional edits


def insert_after(steps: List[Any], after_step_id: str, new_step: Any) -> bool:
    index = _index_of(steps, after_step_id)
    if index == -1:
        return False
    steps.insert(index + 1, new_step)
    return True


def insert_before(steps: List[Any], before_step_id: str, new_step: Any) -> bool:
    index = _index_of(steps, before_step_id)
    if index == -1:
        return False
    steps.insert(index, new_step)
    return True


def insert_at_start(steps: List[Any], new_step: Any) -> None:
    steps.insert(0, new_step)


def remove(steps: List[Any], step_id: str) -> Optional[Any]:
    index = _index_of(steps, step_id)
    if index == -1:
        return None
    return steps.pop(index)


def move(steps: List[Any], step_id: str, after_step_id: Optional[str]) -> bool:
    """Move ``step_id`` after ``after_step_id``, or to the start when ``None``.

    The step stays where it is when the anchor does not exist.
    """
    current = _index_of(steps, step_id)
    if current == -1:
        return False
    step = steps.pop(current)
    if after_step_id is None:
        steps.insert(0, step)
        return True
    anchor = _index_of(steps, after_step_id)
    if anchor == -1:
        steps.insert(current, step)
        return False
    steps.insert(anchor + 1, step)
    return True
