"""Core data contracts for the deployflow workflow system."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

from .catalog import StepCatalog
from .errors import InvalidIndexError, InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    # Reserved for a manual-pause feature; no operation enters this state.
    PAUSED = "paused"


class CallbackOutcome(str, enum.Enum):
    """What the orchestrator did with a completion or failure callback."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DEFERRED = "deferred"


_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
}


class StepResult(BaseModel):
    """Outcome of one catalog step within one workflow run."""

    step_index: int
    step_name: str
    status: StepStatus = StepStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    correlation_id: Optional[str] = None

    def transition(self, status: StepStatus) -> None:
        """Move to ``status`` if the step state machine allows it."""
        status = StepStatus(status)
        if status not in _STEP_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Step {self.step_index} ({self.step_name}) cannot move "
                f"from {self.status.value} to {status.value}"
            )
        self.status = status

    def reset(self) -> None:
        """Start a new attempt: back to pending with no history."""
        self.status = StepStatus.PENDING
        self.result = None
        self.error = None
        self.started_at = None
        self.completed_at = None
        self.correlation_id = None


class WorkflowRecord(BaseModel):
    """Persisted state of one pipeline run against one target resource."""

    workflow_id: str
    target_resource_id: str
    config: str
    current_step: int = 0
    total_steps: int
    status: WorkflowStatus = WorkflowStatus.PENDING
    last_error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    step_results: List[StepResult] = Field(default_factory=list)
    version: int = 0

    @classmethod
    def new(
        cls,
        target_resource_id: str,
        config: str,
        catalog: StepCatalog,
        workflow_id: Optional[str] = None,
    ) -> "WorkflowRecord":
        """Build a fresh record with every step pending."""
        now = utcnow()
        return cls(
            workflow_id=workflow_id or str(uuid.uuid4()),
            target_resource_id=target_resource_id,
            config=config,
            total_steps=len(catalog),
            created_at=now,
            updated_at=now,
            step_results=[
                StepResult(step_index=index, step_name=definition.name)
                for index, definition in enumerate(catalog)
            ],
        )

    # ------------------------------------------------------------------
    # Queries
    def step(self, index: int) -> StepResult:
        if not 0 <= index < self.total_steps:
            raise InvalidIndexError(index, self.total_steps)
        return self.step_results[index]

    def is_last_step(self, index: int) -> bool:
        return index == self.total_steps - 1

    def first_unfinished_step(self) -> int:
        """Index of the first step that is not completed, or ``total_steps``."""
        for step in self.step_results:
            if step.status is not StepStatus.COMPLETED:
                return step.step_index
        return self.total_steps

    def is_finished(self) -> bool:
        return self.status is WorkflowStatus.COMPLETED

    # ------------------------------------------------------------------
    # Mutations, applied inside a store transaction
    def mark_step_running(
        self, index: int, correlation_id: Optional[str], now: Optional[datetime] = None
    ) -> None:
        step = self.step(index)
        step.transition(StepStatus.RUNNING)
        step.correlation_id = correlation_id
        step.started_at = now or utcnow()
        self.status = WorkflowStatus.RUNNING
        self.current_step = index

    def mark_step_completed(
        self, index: int, result: Optional[str], now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        step = self.step(index)
        step.transition(StepStatus.COMPLETED)
        if result is not None:
            step.result = result
        step.completed_at = now
        if self.is_last_step(index):
            self.status = WorkflowStatus.COMPLETED
            self.completed_at = now

    def mark_step_failed(
        self, index: int, error: str, now: Optional[datetime] = None
    ) -> None:
        step = self.step(index)
        step.transition(StepStatus.FAILED)
        step.error = error
        step.completed_at = now or utcnow()
        self.status = WorkflowStatus.FAILED
        self.last_error = error

    def set_step_status(
        self,
        index: int,
        status: StepStatus,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Status-only update used by ``WorkflowStore.update_step_status``."""
        status = StepStatus(status)
        if status is StepStatus.RUNNING:
            self.mark_step_running(index, correlation_id, now)
            return
        if status is StepStatus.COMPLETED:
            self.mark_step_completed(index, None, now)
        elif status is StepStatus.FAILED:
            self.mark_step_failed(index, self.step(index).error or "", now)
        else:
            self.step(index).transition(status)
        if correlation_id is not None:
            self.step_results[index].correlation_id = correlation_id

    def reset_from(self, index: int) -> None:
        """Reset every step at ``index`` and later for a new attempt.

        Earlier steps keep their history, whatever their status.
        """
        if not 0 <= index < self.total_steps:
            raise InvalidIndexError(index, self.total_steps)
        for step in self.step_results[index:]:
            step.reset()
        self.current_step = index
        self.status = WorkflowStatus.RUNNING
        self.last_error = ""
        self.completed_at = None

    def touch(self, now: Optional[datetime] = None) -> None:
        """Stamp a new write: bump the version, keep ``updated_at`` monotone."""
        now = now or utcnow()
        self.updated_at = max(now, self.updated_at)
        self.version += 1


class Envelope(BaseModel):
    """Base class for messages exchanged over a transport."""

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes):
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class TaskMessage(Envelope):
    """Unit of work submitted to the task dispatcher.

    ``args`` carries ``[workflow_id, target_resource_id, config, step_index]``
    and ``task_id`` doubles as the correlation id of the dispatch attempt.
    """

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_name: str
    args: List[Any] = Field(default_factory=list)
    retry_budget: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    schema_version: str = "1.0"

    @property
    def workflow_id(self) -> str:
        return self.args[0]

    @property
    def step_index(self) -> int:
        return int(self.args[3])


class StepEvent(Envelope):
    """Outcome of a step attempt, published on the result channel."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    step_index: int
    correlation_id: Optional[str] = None
    outcome: Literal["completed", "failed"]
    result: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
