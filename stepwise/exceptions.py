"""Exceptions raised by stepwise.

Bad workflow definitions are reported as data (operation results, empty
resolutions, missing due dates). Only programming and storage invariant
violations surface as exceptions.
"""

from __future__ import annotations


class StepwiseError(Exception):
    """Base class for stepwise errors."""


class DuplicateStepIdError(StepwiseError):
    """Raised when a workflow handed to the engine already repeats a step id.

    This indicates corrupted storage rather than a bad edit, so it is never
    folded into an operation result.
    """

    def __init__(self, step_ids: list[str]):
        super().__init__(f"Duplicate step ids in workflow: {', '.join(step_ids)}")
        self.step_ids = step_ids


class InvalidStatusTransition(StepwiseError):
    """Raised when a step execution is moved between incompatible states."""

    def __init__(self, execution_id: str, current: str, requested: str):
        super().__init__(
            f"Step execution {execution_id} cannot move from {current} to {requested}"
        )
        self.execution_id = execution_id
        self.current = current
        self.requested = requested


class FlowRunNotFound(StepwiseError):
    """Raised when a flow run id does not exist in the repository."""


class StepExecutionNotFound(StepwiseError):
    """Raised when a step execution id does not belong to a flow run."""
