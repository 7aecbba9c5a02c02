"""Branch condition evaluation and routing."""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional

from ..contracts import BranchPath, BranchStep, Condition, DecisionOutcome, DecisionStep, IRModel
from .tokens import EvaluationContext, resolve, stringify

logger = logging.getLogger(__name__)

# Leading numeric prefix, so "5 days" compares as 5.
_NUMBER = re.compile(r"\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "not_empty",
    "in",
    "not_in",
)


def parse_number(text: str) -> Optional[float]:
    match = _NUMBER.match(text)
    if match is None:
        return None
    return float(match.group(1))


def resolve_source(source: str, ctx: EvaluationContext) -> str:
    """Resolve tokens in ``source``; text without braces is a literal."""
    if "{" in source and "}" in source:
        resolved = resolve(source, ctx)
        # Nothing substituted means nothing to compare against.
        return "" if resolved == source else resolved
    return source


def comparison_value(value: Any) -> str:
    """Render a condition value; list values read as comma-separated options."""
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(item) or "" for item in value)
    return stringify(value) or ""


def evaluate_condition(condition: Condition, ctx: EvaluationContext) -> bool:
    """Evaluate one condition. Never raises; bad input evaluates to ``False``."""

    source = resolve_source(condition.source or "", ctx)
    value = comparison_value(condition.value)
    operator = condition.operator

    if operator == "equals":
        return source.lower() == value.lower()
    if operator == "not_equals":
        return source.lower() != value.lower()
    if operator == "contains":
        return value.lower() in source.lower()
    if operator == "not_contains":
        return value.lower() not in source.lower()
    if operator in ("greater_than", "less_than"):
        left, right = parse_number(source), parse_number(value)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_empty":
        return source.strip() == ""
    if operator == "not_empty":
        return source.strip() != ""
    if operator in ("in", "not_in"):
        options = [option.strip().lower() for option in value.split(",")]
        member = source.lower() in options
        return member if operator == "in" else not member

    logger.warning(f"Unknown condition operator: {operator}")
    return False


def evaluate_path(path: BranchPath, ctx: EvaluationContext) -> bool:
    """Evaluate every condition of ``path``; a path without any always matches."""
    conditions = ([path.condition] if path.condition is not None else []) + list(
        path.conditions
    )
    if not conditions:
        return True
    outcomes = (evaluate_condition(condition, ctx) for condition in conditions)
    return any(outcomes) if path.condition_logic == "ANY" else all(outcomes)


class RoutingDecision(IRModel):
    step_id: str
    selected_path_ids: List[str]

    @property
    def matched(self) -> bool:
        return bool(self.selected_path_ids)


def select_branch_paths(step: BranchStep, ctx: EvaluationContext) -> RoutingDecision:
    """Choose the path(s) a branch step sends the flow down.

    Parallel branches take every path. Choice branches take the first path,
    in declaration order, whose conditions hold; paths are never reordered,
    so the default path should be declared last.
    """

    if step.type == "PARALLEL_BRANCH":
        return RoutingDecision(
            step_id=step.step_id, selected_path_ids=[p.path_id for p in step.paths]
        )
    for path in step.paths:
        if evaluate_path(path, ctx):
            return RoutingDecision(step_id=step.step_id, selected_path_ids=[path.path_id])
    return RoutingDecision(step_id=step.step_id, selected_path_ids=[])


def select_decision_outcome(
    step: DecisionStep, selection: Optional[str]
) -> Optional[DecisionOutcome]:
    """Match the assignee's choice by outcome id, then by label (case-insensitive)."""
    if not selection:
        return None
    for outcome in step.outcomes:
        if outcome.outcome_id == selection:
            return outcome
    lowered = selection.strip().lower()
    for outcome in step.outcomes:
        if outcome.label.strip().lower() == lowered:
            return outcome
    return None
