"""Workflow orchestrator: dispatch, advance, halt and retry pipeline runs."""

from __future__ import annotations

import logging
from typing import Optional

from .catalog import DEFAULT_STEP_CATALOG, StepCatalog, StepDefinition
from .contracts import (
    CallbackOutcome,
    StepEvent,
    StepStatus,
    WorkflowRecord,
    WorkflowStatus,
)
from .dispatch import TaskDispatcher
from .errors import AlreadyCompletedError, InvalidTransitionError
from .persistence import WorkflowStore

logger = logging.getLogger(__name__)


class StaleCallback(Exception):
    """Internal signal: the callback does not belong to the live attempt."""

    def __init__(self, outcome: CallbackOutcome, reason: str) -> None:
        super().__init__(reason)
        self.outcome = outcome
        self.reason = reason


def _check_live_attempt(
    record: WorkflowRecord, step_index: int, correlation_id: Optional[str]
) -> None:
    """Raise :class:`StaleCallback` unless the callback targets the live attempt.

    A callback is live when its step is running, is the current step and, if
    a correlation id is supplied, carries the id recorded at dispatch time.
    """
    step = record.step(step_index)
    if step.status is StepStatus.RUNNING and step_index == record.current_step:
        if correlation_id is None or correlation_id == step.correlation_id:
            return
        raise StaleCallback(
            CallbackOutcome.IGNORED,
            f"correlation id {correlation_id} does not match live attempt {step.correlation_id}",
        )
    if (
        correlation_id is not None
        and step.status is StepStatus.PENDING
        and step.correlation_id is None
        and step_index == record.current_step
        and record.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)
    ):
        # The worker finished before the dispatch write was persisted.
        raise StaleCallback(
            CallbackOutcome.DEFERRED, "step has not been recorded as running yet"
        )
    raise StaleCallback(
        CallbackOutcome.IGNORED,
        f"step is {step.status.value}, current step is {record.current_step}",
    )


class WorkflowOrchestrator:
    """Pipeline state machine.

    Stateless: every decision is made against the record loaded from
    ``store`` inside a store transaction, so any number of orchestrator
    instances may serve the same workflows. Satisfies the
    :class:`~deployflow.execute.StepEventSink` protocol so step workers can
    report to it directly.
    """

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: TaskDispatcher,
        catalog: StepCatalog = DEFAULT_STEP_CATALOG,
    ) -> None:
        if len(store.catalog) != len(catalog):
            raise ValueError("Store and orchestrator must share the same step catalog")
        self._store = store
        self._dispatcher = dispatcher
        self._catalog = catalog

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def dispatcher(self) -> TaskDispatcher:
        return self._dispatcher

    @property
    def catalog(self) -> StepCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Caller-facing operations
    async def create_workflow(self, target_resource_id: str, config: str) -> WorkflowRecord:
        """Create a pending run; nothing is dispatched yet."""
        return await self._store.create(target_resource_id, config)

    async def deploy(self, target_resource_id: str, config: str) -> WorkflowRecord:
        """Create a run and dispatch its first step."""
        record = await self.create_workflow(target_resource_id, config)
        return await self.start_workflow(record.workflow_id)

    async def get_status(self, workflow_id: str) -> WorkflowRecord:
        return await self._store.get(workflow_id)

    async def list_workflows(self) -> list[WorkflowRecord]:
        return await self._store.list_workflows()

    def list_step_catalog(self) -> list[StepDefinition]:
        return self._catalog.as_list()

    async def start_workflow(self, workflow_id: str) -> WorkflowRecord:
        """Dispatch the current step of a pending run.

        Raises:
            WorkflowNotFoundError: If the id is unknown or expired.
            AlreadyCompletedError: If the run has no step left to dispatch.
            InvalidTransitionError: If the run was already started.
        """
        record = await self._store.get(workflow_id)
        if record.is_finished() or record.current_step >= record.total_steps:
            raise AlreadyCompletedError(f"Workflow {workflow_id} has already completed")
        if record.status is not WorkflowStatus.PENDING:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} is {record.status.value}; use retry to restart it"
            )
        logger.info(f"Starting workflow {workflow_id} for {record.target_resource_id}")
        return await self._dispatch_current_step(record)

    async def retry_from_step(self, workflow_id: str, step_index: int) -> WorkflowRecord:
        """Reset ``step_index`` and every later step, then dispatch it again.

        Steps before ``step_index`` keep their results, even ones that never
        completed. An index outside the catalog raises
        :class:`~deployflow.errors.InvalidIndexError` before anything is
        written.
        """

        def reset(record: WorkflowRecord) -> None:
            record.reset_from(step_index)

        record = await self._store.update(workflow_id, reset)
        skipped = record.first_unfinished_step()
        if skipped < step_index:
            logger.warning(
                f"Workflow {workflow_id} retries step {step_index} while step "
                f"{skipped} is {record.step(skipped).status.value}"
            )
        logger.info(
            f"Retrying workflow {workflow_id} from step {step_index} "
            f"({self._catalog[step_index].task_name})"
        )
        return await self._dispatch_current_step(record)

    # ------------------------------------------------------------------
    # Step handler callbacks
    async def on_step_completed(
        self,
        workflow_id: str,
        step_index: int,
        result: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> CallbackOutcome:
        """Record a successful attempt and move the pipeline forward."""

        def complete(record: WorkflowRecord) -> None:
            _check_live_attempt(record, step_index, correlation_id)
            record.mark_step_completed(step_index, result)
            if not record.is_last_step(step_index):
                record.current_step = step_index + 1

        try:
            record = await self._store.update(workflow_id, complete)
        except StaleCallback as exc:
            return self._discard("completion", workflow_id, step_index, exc)

        logger.info(
            f"Workflow {workflow_id} step {step_index} "
            f"({self._catalog[step_index].task_name}) completed"
        )
        if record.is_finished():
            logger.info(f"Workflow {workflow_id} completed")
        else:
            await self._dispatch_current_step(record)
        return CallbackOutcome.APPLIED

    async def on_step_failed(
        self,
        workflow_id: str,
        step_index: int,
        error: str,
        correlation_id: Optional[str] = None,
    ) -> CallbackOutcome:
        """Record a failed attempt and halt the run until a retry request."""

        def fail(record: WorkflowRecord) -> None:
            _check_live_attempt(record, step_index, correlation_id)
            record.mark_step_failed(step_index, error)

        try:
            await self._store.update(workflow_id, fail)
        except StaleCallback as exc:
            return self._discard("failure", workflow_id, step_index, exc)

        logger.info(
            f"Workflow {workflow_id} step {step_index} "
            f"({self._catalog[step_index].task_name}) failed: {error}"
        )
        return CallbackOutcome.APPLIED

    async def apply_event(self, event: StepEvent) -> CallbackOutcome:
        """Apply an event received from the result channel."""
        if event.outcome == "completed":
            return await self.on_step_completed(
                event.workflow_id, event.step_index, event.result, event.correlation_id
            )
        return await self.on_step_failed(
            event.workflow_id,
            event.step_index,
            event.error or "unknown error",
            event.correlation_id,
        )

    # ------------------------------------------------------------------
    # Internals
    def _discard(
        self, kind: str, workflow_id: str, step_index: int, exc: StaleCallback
    ) -> CallbackOutcome:
        if exc.outcome is CallbackOutcome.DEFERRED:
            logger.info(
                f"Deferring {kind} for workflow {workflow_id} step {step_index}: {exc.reason}"
            )
        else:
            logger.warning(
                f"Ignoring {kind} for workflow {workflow_id} step {step_index}: {exc.reason}"
            )
        return exc.outcome

    async def _dispatch_current_step(self, record: WorkflowRecord) -> WorkflowRecord:
        """Submit the record's current step and mark it running.

        The record is only written after the dispatcher accepted the task, so
        a :class:`~deployflow.errors.DispatchError` leaves it untouched.
        """
        step_index = record.current_step
        if step_index >= record.total_steps:
            raise AlreadyCompletedError(
                f"Workflow {record.workflow_id} has no step left to dispatch"
            )
        definition = self._catalog[step_index]
        correlation_id = await self._dispatcher.submit(
            definition.task_name,
            args=[record.workflow_id, record.target_resource_id, record.config, step_index],
            retry_budget=definition.retry_budget,
        )
        updated = await self._store.update_step_status(
            record.workflow_id, step_index, StepStatus.RUNNING, correlation_id
        )
        logger.info(
            f"Dispatched workflow {record.workflow_id} step {step_index} "
            f"({definition.task_name}) correlation_id={correlation_id}"
        )
        return updated
