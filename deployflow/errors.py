"""Exception hierarchy for deployflow."""

from __future__ import annotations


class DeployflowError(Exception):
    """Base class for all deployflow errors."""


class WorkflowNotFoundError(DeployflowError, KeyError):
    """Raised when a workflow id is unknown or its record has expired."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(workflow_id)
        self.workflow_id = workflow_id

    def __str__(self) -> str:
        return f"Workflow {self.workflow_id} not found"


class InvalidIndexError(DeployflowError, IndexError):
    """Raised when a step index falls outside the usable range."""

    def __init__(self, step_index: int, total_steps: int, reason: str = "") -> None:
        self.step_index = step_index
        self.total_steps = total_steps
        message = f"Step index {step_index} is outside [0, {total_steps})"
        if reason:
            message = f"Step index {step_index} rejected: {reason}"
        super().__init__(message)


class AlreadyCompletedError(DeployflowError):
    """Raised when a start or dispatch is requested past the last step."""


class InvalidTransitionError(DeployflowError):
    """Raised when a status change is not allowed by the state machine."""


class DispatchError(DeployflowError):
    """Raised when a task could not be submitted to the dispatcher."""


class PersistenceError(DeployflowError):
    """Raised when the storage backend fails."""


class ConcurrentUpdateError(PersistenceError):
    """Raised when a write keeps losing the compare-and-swap race."""


class SerializationError(DeployflowError):
    """Raised when a workflow record cannot be encoded or decoded."""
