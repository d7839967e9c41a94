"""Step execution engine for deployflow workers."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Protocol

from .constants import RESULTS_TOPIC
from .contracts import CallbackOutcome, StepEvent, TaskMessage
from .transports import BaseTransport
from .utils.retry import schedule_retry

if TYPE_CHECKING:
    from .orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

StepHandler = Callable[..., Any]
Backoff = Callable[[int], Awaitable[Any]]

# Task ids remembered by a worker, most recent last.
PROCESSED_HISTORY = 1000


class StepEventSink(Protocol):
    """Where a worker reports the terminal outcome of a step attempt."""

    async def on_step_completed(
        self,
        workflow_id: str,
        step_index: int,
        result: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> Any: ...

    async def on_step_failed(
        self,
        workflow_id: str,
        step_index: int,
        error: str,
        correlation_id: Optional[str] = None,
    ) -> Any: ...


class ResultChannel:
    """Sink that publishes step outcomes as :class:`StepEvent` messages."""

    def __init__(self, transport: BaseTransport, topic: str = RESULTS_TOPIC) -> None:
        self._transport = transport
        self._topic = topic

    async def on_step_completed(
        self,
        workflow_id: str,
        step_index: int,
        result: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._transport.publish(
            self._topic,
            StepEvent(
                workflow_id=workflow_id,
                step_index=step_index,
                correlation_id=correlation_id,
                outcome="completed",
                result=result,
            ),
        )

    async def on_step_failed(
        self,
        workflow_id: str,
        step_index: int,
        error: str,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._transport.publish(
            self._topic,
            StepEvent(
                workflow_id=workflow_id,
                step_index=step_index,
                correlation_id=correlation_id,
                outcome="failed",
                error=error,
            ),
        )


class StepWorker:
    """Executes one task type by listening to transport messages.

    The task's retry budget is spent here: the handler is re-run with backoff
    until it succeeds or the budget is exhausted, and only then is a single
    terminal outcome reported to ``sink``.
    """

    def __init__(
        self,
        transport: BaseTransport,
        task_name: str,
        handler: StepHandler,
        sink: StepEventSink,
        backoff: Backoff = schedule_retry,
        max_report_attempts: int = 20,
    ) -> None:
        self._transport = transport
        self._task_name = task_name
        self._handler = handler
        self._sink = sink
        self._backoff = backoff
        self._max_report_attempts = max(1, max_report_attempts)
        self.processed: deque[str] = deque(maxlen=PROCESSED_HISTORY)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for tasks on the worker's topic."""
        logger.info(f"Worker for {self._task_name} started")
        async for raw_message, task in self._transport.subscribe(
            self._task_name, TaskMessage, lifespan=lifespan
        ):
            await self.handle_task(task)
            await self._transport.ack(raw_message)

    async def _run_handler(self, task: TaskMessage) -> str:
        outcome = self._handler(*task.args)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return "" if outcome is None else str(outcome)

    async def handle_task(self, task: TaskMessage) -> None:
        """Run one task to a terminal outcome and report it."""
        if task.task_name != self._task_name:
            logger.warning(
                f"Worker for {self._task_name} received {task.task_name} task_id={task.task_id}"
            )
        attempts = task.retry_budget + 1
        error = ""
        for attempt in range(attempts):
            try:
                result = await self._run_handler(task)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning(
                    f"{self._task_name} attempt {attempt + 1}/{attempts} failed "
                    f"for workflow {task.workflow_id}: {error}"
                )
                if attempt + 1 < attempts:
                    await self._backoff(attempt)
                continue
            logger.info(
                f"{self._task_name} succeeded for workflow {task.workflow_id} "
                f"task_id={task.task_id}"
            )
            self.processed.append(task.task_id)
            await self._report(task, self._sink.on_step_completed, result)
            return

        logger.error(
            f"{self._task_name} exhausted {attempts} attempts for workflow "
            f"{task.workflow_id}: {error}"
        )
        self.processed.append(task.task_id)
        await self._report(task, self._sink.on_step_failed, error)

    async def _report(
        self, task: TaskMessage, callback: Callable[..., Awaitable[Any]], detail: Any
    ) -> None:
        """Deliver an outcome, waiting while the sink defers it.

        A sink that applies events itself defers a result that beats the
        dispatch write; result channels never defer.
        """
        for attempt in range(self._max_report_attempts):
            outcome = await callback(
                task.workflow_id, task.step_index, detail, task.task_id
            )
            if outcome is not CallbackOutcome.DEFERRED:
                return
            logger.debug(
                f"Outcome of task_id={task.task_id} deferred "
                f"(attempt {attempt + 1}/{self._max_report_attempts})"
            )
            await self._backoff(attempt)
        logger.warning(
            f"Dropping outcome of task_id={task.task_id} for workflow {task.workflow_id} "
            f"after {self._max_report_attempts} deferrals"
        )


class ResultConsumer:
    """Applies result-channel events to the orchestrator.

    Events that arrive before their dispatch was recorded are requeued up to
    ``max_deferrals`` times, then dropped.
    """

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: "WorkflowOrchestrator",
        topic: str = RESULTS_TOPIC,
        max_deferrals: int = 100,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self._topic = topic
        self._max_deferrals = max_deferrals
        self._deferrals: Dict[str, int] = {}

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume events until ``lifespan`` elapses (forever if ``None``)."""
        async for raw_message, event in self._transport.subscribe(
            self._topic, StepEvent, lifespan=lifespan
        ):
            outcome = await self.handle_event(event)
            if outcome is CallbackOutcome.DEFERRED:
                await self._transport.nack(raw_message, requeue=True)
            else:
                await self._transport.ack(raw_message)

    async def handle_event(self, event: StepEvent) -> Optional[CallbackOutcome]:
        """Apply one event; errors are logged so the channel keeps flowing."""
        try:
            outcome = await self._orchestrator.apply_event(event)
        except Exception:
            logger.exception(
                f"Failed to apply {event.outcome} event for workflow "
                f"{event.workflow_id} step {event.step_index}"
            )
            self._deferrals.pop(event.event_id, None)
            return None

        if outcome is not CallbackOutcome.DEFERRED:
            self._deferrals.pop(event.event_id, None)
            return outcome

        count = self._deferrals.get(event.event_id, 0) + 1
        if count > self._max_deferrals:
            logger.warning(
                f"Dropping event {event.event_id} for workflow {event.workflow_id} "
                f"after {self._max_deferrals} deferrals"
            )
            self._deferrals.pop(event.event_id, None)
            return CallbackOutcome.IGNORED
        self._deferrals[event.event_id] = count
        return outcome
