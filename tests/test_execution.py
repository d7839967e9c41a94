"""Step worker and result channel tests."""

import asyncio

import pytest

from deployflow import DEFAULT_STEP_CATALOG, TaskDispatcher, WorkflowOrchestrator, WorkflowStore
from deployflow.contracts import CallbackOutcome, StepEvent, StepStatus, TaskMessage
from deployflow.execute import PROCESSED_HISTORY, ResultChannel, ResultConsumer, StepWorker
from deployflow.persistence import InMemoryBackend
from deployflow.transports.inmemory import InMemoryTransport
from deployflow.utils.retry import no_backoff


class RecordingSink:
    def __init__(self):
        self.completed = []
        self.failed = []

    async def on_step_completed(self, workflow_id, step_index, result, correlation_id=None):
        self.completed.append((workflow_id, step_index, result, correlation_id))

    async def on_step_failed(self, workflow_id, step_index, error, correlation_id=None):
        self.failed.append((workflow_id, step_index, error, correlation_id))


class FlakyHandler:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, workflow_id, target, config, step_index):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")
        return f"done on {target}"


def _task(retry_budget: int = 0, task_id: str = "task-1") -> TaskMessage:
    return TaskMessage(
        task_id=task_id,
        task_name="reinstall_os",
        args=["wf-1", "srv-001", "Ubuntu 20.04", 0],
        retry_budget=retry_budget,
    )


@pytest.mark.asyncio
async def test_worker_reports_success():
    sink = RecordingSink()
    handler = FlakyHandler(failures=0)
    worker = StepWorker(InMemoryTransport(), "reinstall_os", handler, sink, backoff=no_backoff)

    await worker.handle_task(_task())

    assert sink.completed == [("wf-1", 0, "done on srv-001", "task-1")]
    assert sink.failed == []
    assert list(worker.processed) == ["task-1"]


@pytest.mark.asyncio
async def test_worker_retries_within_budget():
    sink = RecordingSink()
    handler = FlakyHandler(failures=2)
    delays = []

    async def backoff(attempt):
        delays.append(attempt)

    worker = StepWorker(InMemoryTransport(), "reinstall_os", handler, sink, backoff=backoff)
    await worker.handle_task(_task(retry_budget=3))

    assert handler.calls == 3
    assert delays == [0, 1]
    assert len(sink.completed) == 1
    assert sink.failed == []


@pytest.mark.asyncio
async def test_worker_reports_single_failure_when_budget_exhausted():
    sink = RecordingSink()
    handler = FlakyHandler(failures=10)
    worker = StepWorker(InMemoryTransport(), "reinstall_os", handler, sink, backoff=no_backoff)

    await worker.handle_task(_task(retry_budget=2))

    assert handler.calls == 3
    assert sink.completed == []
    assert sink.failed == [("wf-1", 0, "attempt 3 failed", "task-1")]


@pytest.mark.asyncio
async def test_worker_awaits_async_handler():
    sink = RecordingSink()

    async def handler(workflow_id, target, config, step_index):
        await asyncio.sleep(0)
        return None

    worker = StepWorker(InMemoryTransport(), "reinstall_os", handler, sink, backoff=no_backoff)
    await worker.handle_task(_task())

    assert sink.completed == [("wf-1", 0, "", "task-1")]


@pytest.mark.asyncio
async def test_worker_consumes_from_transport():
    transport = InMemoryTransport()
    sink = RecordingSink()
    worker = StepWorker(transport, "reinstall_os", FlakyHandler(0), sink, backoff=no_backoff)

    await transport.publish("reinstall_os", _task(task_id="a"))
    await transport.publish("reinstall_os", _task(task_id="b"))
    await worker.start(lifespan=0.1)

    assert list(worker.processed) == ["a", "b"]
    assert [c[3] for c in sink.completed] == ["a", "b"]
    assert transport.pending("reinstall_os") == 0


@pytest.mark.asyncio
async def test_result_channel_publishes_events():
    transport = InMemoryTransport()
    channel = ResultChannel(transport, "results")

    await channel.on_step_completed("wf-1", 0, "ok", "task-1")
    await channel.on_step_failed("wf-1", 1, "boom", "task-2")

    events = [raw[2] for raw in transport._queues["results"]]
    assert all(isinstance(e, StepEvent) for e in events)
    assert [(e.outcome, e.step_index, e.correlation_id) for e in events] == [
        ("completed", 0, "task-1"),
        ("failed", 1, "task-2"),
    ]
    assert events[0].result == "ok"
    assert events[1].error == "boom"


def _orchestrator(transport):
    dispatcher = TaskDispatcher(transport, known_tasks=DEFAULT_STEP_CATALOG.task_names)
    return WorkflowOrchestrator(WorkflowStore(InMemoryBackend()), dispatcher)


@pytest.mark.asyncio
async def test_result_consumer_applies_events():
    transport = InMemoryTransport()
    orchestrator = _orchestrator(transport)
    record = await orchestrator.deploy("srv-001", "Ubuntu 20.04")
    channel = ResultChannel(transport)
    await channel.on_step_completed(
        record.workflow_id, 0, "ok", record.step_results[0].correlation_id
    )

    consumer = ResultConsumer(transport, orchestrator)
    await consumer.start(lifespan=0.1)

    record = await orchestrator.get_status(record.workflow_id)
    assert record.current_step == 1
    assert record.step_results[0].result == "ok"


@pytest.mark.asyncio
async def test_result_consumer_drops_event_after_deferral_limit():
    transport = InMemoryTransport()
    orchestrator = _orchestrator(transport)
    record = await orchestrator.create_workflow("srv-001", "Ubuntu 20.04")
    consumer = ResultConsumer(transport, orchestrator, max_deferrals=2)
    event = StepEvent(
        workflow_id=record.workflow_id,
        step_index=0,
        correlation_id="early",
        outcome="completed",
        result="ok",
    )

    assert await consumer.handle_event(event) is CallbackOutcome.DEFERRED
    assert await consumer.handle_event(event) is CallbackOutcome.DEFERRED
    assert await consumer.handle_event(event) is CallbackOutcome.IGNORED


@pytest.mark.asyncio
async def test_result_consumer_survives_unknown_workflow():
    transport = InMemoryTransport()
    consumer = ResultConsumer(transport, _orchestrator(transport))
    event = StepEvent(workflow_id="missing", step_index=0, outcome="completed")

    assert await consumer.handle_event(event) is None


class DeferringSink(RecordingSink):
    def __init__(self, deferrals: int):
        super().__init__()
        self.deferrals = deferrals
        self.calls = 0

    async def on_step_completed(self, workflow_id, step_index, result, correlation_id=None):
        self.calls += 1
        if self.calls <= self.deferrals:
            return CallbackOutcome.DEFERRED
        await super().on_step_completed(workflow_id, step_index, result, correlation_id)
        return CallbackOutcome.APPLIED


@pytest.mark.asyncio
async def test_worker_repeats_deferred_report():
    sink = DeferringSink(deferrals=2)
    waits = []

    async def backoff(attempt):
        waits.append(attempt)

    worker = StepWorker(InMemoryTransport(), "reinstall_os", FlakyHandler(0), sink, backoff=backoff)
    await worker.handle_task(_task())

    assert sink.calls == 3
    assert waits == [0, 1]
    assert sink.completed == [("wf-1", 0, "done on srv-001", "task-1")]


@pytest.mark.asyncio
async def test_worker_stops_reporting_after_limit():
    sink = DeferringSink(deferrals=100)
    worker = StepWorker(
        InMemoryTransport(),
        "reinstall_os",
        FlakyHandler(0),
        sink,
        backoff=no_backoff,
        max_report_attempts=3,
    )
    await worker.handle_task(_task())

    assert sink.calls == 3
    assert sink.completed == []


class SlowWriteBackend(InMemoryBackend):
    """Delays updates of existing keys so a worker can finish first."""

    async def compare_and_swap(self, key, expected, value, ttl):
        if expected is not None:
            await asyncio.sleep(0.05)
        return await super().compare_and_swap(key, expected, value, ttl)


@pytest.mark.asyncio
async def test_worker_reporting_directly_survives_slow_dispatch_write():
    transport = InMemoryTransport()
    dispatcher = TaskDispatcher(transport, known_tasks=DEFAULT_STEP_CATALOG.task_names)
    orchestrator = WorkflowOrchestrator(WorkflowStore(SlowWriteBackend()), dispatcher)

    async def short_backoff(attempt):
        await asyncio.sleep(0.01)

    worker = StepWorker(
        transport, "reinstall_os", FlakyHandler(0), orchestrator, backoff=short_backoff
    )

    _, record = await asyncio.gather(
        worker.start(lifespan=0.5), orchestrator.deploy("srv-001", "Ubuntu 20.04")
    )

    record = await orchestrator.get_status(record.workflow_id)
    assert len(worker.processed) == 1
    assert record.step_results[0].status is StepStatus.COMPLETED
    assert record.step_results[0].result == "done on srv-001"
    assert record.current_step == 1
    assert record.step_results[1].status is StepStatus.RUNNING


class ScriptedOrchestrator:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)

    async def apply_event(self, event):
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_result_consumer_forgets_deferrals_after_error():
    orchestrator = ScriptedOrchestrator(
        [CallbackOutcome.DEFERRED, RuntimeError("store down"), CallbackOutcome.DEFERRED]
    )
    consumer = ResultConsumer(InMemoryTransport(), orchestrator, max_deferrals=1)
    event = StepEvent(workflow_id="wf-1", step_index=0, outcome="completed")

    assert await consumer.handle_event(event) is CallbackOutcome.DEFERRED
    assert await consumer.handle_event(event) is None
    assert consumer._deferrals == {}
    # The count starts over instead of dropping the event.
    assert await consumer.handle_event(event) is CallbackOutcome.DEFERRED


def test_worker_history_is_bounded():
    worker = StepWorker(InMemoryTransport(), "reinstall_os", FlakyHandler(0), RecordingSink())
    for i in range(PROCESSED_HISTORY + 5):
        worker.processed.append(f"task-{i}")
    assert len(worker.processed) == PROCESSED_HISTORY
    assert worker.processed[-1] == f"task-{PROCESSED_HISTORY + 4}"
