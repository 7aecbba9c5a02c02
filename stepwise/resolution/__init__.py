from .assignees import (
    AssigneeResolver,
    ContactDirectory,
    ResolutionContext,
    ResolvedAssignee,
)
from .conditions import (
    RoutingDecision,
    evaluate_condition,
    evaluate_path,
    select_branch_paths,
    select_decision_outcome,
)
from .tokens import (
    EvaluationContext,
    RoleAssignment,
    WorkspaceInfo,
    build_evaluation_context,
    has_tokens,
    parse_tokens,
    resolve,
)

__all__ = [
    "AssigneeResolver",
    "ContactDirectory",
    "EvaluationContext",
    "ResolutionContext",
    "ResolvedAssignee",
    "RoleAssignment",
    "RoutingDecision",
    "WorkspaceInfo",
    "build_evaluation_context",
    "evaluate_condition",
    "evaluate_path",
    "has_tokens",
    "parse_tokens",
    "resolve",
    "select_branch_paths",
    "select_decision_outcome",
]
