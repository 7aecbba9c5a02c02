from .patch import OperationRejected, apply_operations
from .validation import (
    ValidationIssue,
    ValidationReport,
    ensure_unique_step_ids,
    validate_workflow,
)

__all__ = [
    "OperationRejected",
    "ValidationIssue",
    "ValidationReport",
    "apply_operations",
    "ensure_unique_step_ids",
    "validate_workflow",
]
