"""Command line interface for deployflow."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from deployflow import runtime
from deployflow.config import load_config
from deployflow.contracts import WorkflowRecord
from deployflow.errors import DeployflowError
from deployflow.execute import ResultChannel, ResultConsumer, StepWorker
from deployflow.handlers import get_handler

app = typer.Typer(help="CLI for deployflow provisioning workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow runs")
worker_app = typer.Typer(help="Commands for running step workers")
results_app = typer.Typer(help="Commands for the result channel")

app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")
app.add_typer(results_app, name="results")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for deployflow"),
) -> None:
    """deployflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _echo_record(record: WorkflowRecord) -> None:
    typer.echo(f"Workflow {record.workflow_id}: {record.status.value}")
    typer.echo(f"Target: {record.target_resource_id} ({record.config})")
    typer.echo(f"Step: {record.current_step}/{record.total_steps}")
    if record.last_error:
        typer.echo(f"Last error: {record.last_error}")
    for step in record.step_results:
        line = f"- [{step.step_index}] {step.step_name}: {step.status.value}"
        if step.started_at or step.completed_at:
            line += f" ({step.started_at} -> {step.completed_at})"
        if step.result:
            line += f" result={step.result}"
        if step.error:
            line += f" error={step.error}"
        typer.echo(line)


@app.command("catalog")
def catalog() -> None:
    """List the ordered pipeline steps."""
    orchestrator = runtime.get_orchestrator()
    for index, step in enumerate(orchestrator.list_step_catalog()):
        typer.echo(
            f"{index}\t{step.task_name}\tretries={step.retry_budget}\t{step.description}"
        )


@workflow_app.command("create")
def workflow_create(
    target: str,
    config: str,
    start: bool = typer.Option(True, help="Dispatch the first step right away"),
) -> None:
    """
    Create a provisioning run for a target server.

    Example:
        deployflow workflow create srv-001 "Ubuntu 20.04"
        # Output: Workflow created: 1b9d6bcd-bbfd-4b2d-9b5d-ab8dfbbd4bed
    """
    orchestrator = runtime.get_orchestrator()
    try:
        if start:
            record = asyncio.run(orchestrator.deploy(target, config))
        else:
            record = asyncio.run(orchestrator.create_workflow(target, config))
    except DeployflowError as exc:
        _fail(f"Cannot create workflow: {exc}")
        return
    typer.echo(f"Workflow created: {record.workflow_id}")
    typer.echo(f"Status: {record.status.value}")


@workflow_app.command("start")
def workflow_start(workflow_id: str) -> None:
    """Dispatch the first step of a pending run."""
    orchestrator = runtime.get_orchestrator()
    try:
        record = asyncio.run(orchestrator.start_workflow(workflow_id))
    except DeployflowError as exc:
        _fail(str(exc))
        return
    typer.echo(f"Workflow {record.workflow_id}: {record.status.value}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List live workflows with their status and current step."""
    orchestrator = runtime.get_orchestrator()
    workflows = asyncio.run(orchestrator.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.workflow_id}\t{wf.target_resource_id}\t{wf.status.value}\t"
            f"{wf.current_step}/{wf.total_steps}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show detailed information for a specific workflow.

    Example:
        deployflow workflow show 1b9d6bcd-bbfd-4b2d-9b5d-ab8dfbbd4bed
        # Output: Workflow 1b9d6bcd-...: failed
        #         - [0] Reinstall OS: completed
        #         - [1] Install base environment: failed error=hardware fault
    """
    orchestrator = runtime.get_orchestrator()
    try:
        record = asyncio.run(orchestrator.get_status(workflow_id))
    except DeployflowError:
        _fail("Workflow not found")
        return
    _echo_record(record)


@workflow_app.command("retry")
def workflow_retry(workflow_id: str, step_index: int) -> None:
    """Reset a run from STEP_INDEX onwards and dispatch that step again."""
    orchestrator = runtime.get_orchestrator()
    try:
        record = asyncio.run(orchestrator.retry_from_step(workflow_id, step_index))
    except DeployflowError as exc:
        _fail(f"Retry rejected: {exc}")
        return
    typer.echo(
        f"Workflow {record.workflow_id} retrying from step {step_index}: {record.status.value}"
    )


@worker_app.command("run")
def worker_run(
    task_name: str,
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """
    Run a worker process for one task of the pipeline.

    Outcomes are published on the result channel; run
    `deployflow results consume` to apply them.

    Example:
        deployflow worker run reinstall_os --lifespan 300
    """
    try:
        handler = get_handler(task_name)
    except KeyError as exc:
        _fail(str(exc.args[0]))
        return
    config = load_config()
    transport = runtime.get_runtime_transport()
    worker = StepWorker(
        transport, task_name, handler, ResultChannel(transport, config.results_topic)
    )
    typer.echo(f"Starting worker: {task_name}")
    asyncio.run(worker.start(lifespan=lifespan))


@results_app.command("consume")
def results_consume(
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """Apply step outcomes from the result channel to their workflows."""
    config = load_config()
    orchestrator = runtime.get_orchestrator()
    consumer = ResultConsumer(
        orchestrator.dispatcher.transport, orchestrator, topic=config.results_topic
    )
    typer.echo(f"Consuming results from {config.results_topic}")
    asyncio.run(consumer.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
