import asyncio

from typer.testing import CliRunner

import deployflow.runtime as runtime
from deployflow import DEFAULT_STEP_CATALOG, TaskDispatcher, WorkflowOrchestrator, WorkflowStore
from deployflow.cli import app
from deployflow.persistence import InMemoryBackend
from deployflow.transports.inmemory import InMemoryTransport


def _setup_orchestrator() -> WorkflowOrchestrator:
    transport = InMemoryTransport()
    dispatcher = TaskDispatcher(transport, known_tasks=DEFAULT_STEP_CATALOG.task_names)
    orchestrator = WorkflowOrchestrator(WorkflowStore(InMemoryBackend()), dispatcher)
    runtime._orchestrator_instance = orchestrator
    runtime._transport_instance = transport
    return orchestrator


def test_catalog_command_lists_steps_in_order():
    _setup_orchestrator()
    runner = CliRunner()
    result = runner.invoke(app, ["catalog"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    lines = result.stdout.strip().splitlines()
    assert [line.split("\t")[1] for line in lines] == DEFAULT_STEP_CATALOG.task_names


def test_workflow_create_dispatches_first_step():
    orchestrator = _setup_orchestrator()
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "create", "srv-001", "Ubuntu 20.04"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Workflow created:" in result.stdout
    assert "Status: running" in result.stdout
    assert orchestrator.dispatcher.transport.pending("reinstall_os") == 1


def test_workflow_create_without_start_then_start():
    orchestrator = _setup_orchestrator()
    runner = CliRunner()
    result = runner.invoke(
        app, ["workflow", "create", "srv-001", "Ubuntu 20.04", "--no-start"]
    )
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Status: pending" in result.stdout
    workflow_id = result.stdout.split("Workflow created: ")[1].split()[0]

    result = runner.invoke(app, ["workflow", "start", workflow_id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "running" in result.stdout

    result = runner.invoke(app, ["workflow", "start", workflow_id])
    assert result.exit_code == 1
    record = asyncio.run(orchestrator.get_status(workflow_id))
    assert record.step_results[0].status.value == "running"


def test_workflow_list_command():
    orchestrator = _setup_orchestrator()
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout

    first = asyncio.run(orchestrator.create_workflow("srv-001", "Ubuntu 20.04"))
    second = asyncio.run(orchestrator.deploy("srv-002", "Debian 12"))
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert first.workflow_id in result.stdout
    assert second.workflow_id in result.stdout
    assert "srv-002\trunning\t0/5" in result.stdout


def test_workflow_show_details_and_missing():
    orchestrator = _setup_orchestrator()
    record = asyncio.run(orchestrator.deploy("srv-001", "Ubuntu 20.04"))
    asyncio.run(orchestrator.on_step_completed(record.workflow_id, 0, "os reinstalled"))
    asyncio.run(orchestrator.on_step_failed(record.workflow_id, 1, "hardware fault"))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", record.workflow_id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    output = result.stdout
    assert f"Workflow {record.workflow_id}: failed" in output
    assert "Reinstall OS: completed" in output
    assert "error=hardware fault" in output
    assert "Last error: hardware fault" in output

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Workflow not found" in result_missing.stdout


def test_workflow_retry_command():
    orchestrator = _setup_orchestrator()
    record = asyncio.run(orchestrator.deploy("srv-001", "Ubuntu 20.04"))
    asyncio.run(orchestrator.on_step_failed(record.workflow_id, 0, "pxe timeout"))

    runner = CliRunner()
    rejected = runner.invoke(app, ["workflow", "retry", record.workflow_id, "9"])
    assert rejected.exit_code == 1
    assert "Retry rejected" in rejected.stdout

    result = runner.invoke(app, ["workflow", "retry", record.workflow_id, "0"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "retrying from step 0: running" in result.stdout
    assert orchestrator.dispatcher.transport.pending("reinstall_os") == 2


def test_worker_run_rejects_unknown_task():
    _setup_orchestrator()
    runner = CliRunner()
    result = runner.invoke(app, ["worker", "run", "format_disk", "--lifespan", "0.1"])
    assert result.exit_code == 1
    assert "format_disk" in result.stdout
