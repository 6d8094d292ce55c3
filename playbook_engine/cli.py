"""Command line interface for the playbook engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer

from .actions import ActionRegistry, load_actions
from .config import EngineConfig, load_config
from .definitions import load_definitions_file
from .engine import ExecutionEngine
from .errors import PlaybookEngineError
from .models import ExecutionStatus, TaskQuery, TaskState, WorkflowQuery
from .persistence import get_repository
from .scheduler import Scheduler

T = TypeVar("T")

app = typer.Typer(help="CLI for playbook executions")

# Command groups
definition_app = typer.Typer(help="Commands for managing playbook definitions")
workflow_app = typer.Typer(help="Commands for managing executions")
task_app = typer.Typer(help="Commands for managing tasks")
scheduler_app = typer.Typer(help="Commands for running the timer scheduler")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")
app.add_typer(task_app, name="task")
app.add_typer(scheduler_app, name="scheduler")

_state: Dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
) -> None:
    """Playbook engine CLI entry point."""
    _state["config_path"] = str(config) if config else None
    logging.basicConfig(
        level=_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> EngineConfig:
    return load_config(_state["config_path"])


def _run(work: Callable[[ExecutionEngine], Awaitable[T]]) -> T:
    """Run ``work`` against a freshly built engine, reporting engine errors."""
    config = _config()
    repository = get_repository(config=config) if _state["config_path"] else get_repository()
    actions = load_actions(config.actions) if config.actions else ActionRegistry()
    engine = ExecutionEngine(repository, actions=actions, config=config)

    async def runner() -> T:
        try:
            return await work(engine)
        finally:
            await repository.close()

    try:
        return asyncio.run(runner())
    except PlaybookEngineError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        typer.secho(f"{option} is not valid JSON: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


@definition_app.command("publish")
def definition_publish(
    path: Path,
    organization_id: Optional[str] = typer.Option(
        None, "--org", help="Organization for definitions that do not name one"
    ),
    published_by: Optional[str] = typer.Option(None, "--by"),
) -> None:
    """
    Publish the playbook definitions in a YAML file.

    Example:
        playbook-engine definition publish ./playbooks/onboarding.yaml --org acme
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def work(engine: ExecutionEngine) -> list:
        definitions = load_definitions_file(path, organization_id)
        return [await engine.definitions.publish(d, published_by) for d in definitions]

    for definition in _run(work):
        typer.echo(
            f"Published {definition.id} v{definition.version} "
            f"({len(definition.steps)} steps) for {definition.organization_id}"
        )


@definition_app.command("list")
def definition_list(organization_id: str) -> None:
    """List playbook definitions of an organization."""
    definitions = _run(lambda engine: engine.definitions.list_definitions(organization_id))
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.id}\tv{d.version}\t{d.status.value}\t{d.name or ''}")


@workflow_app.command("start")
def workflow_start(
    organization_id: str,
    playbook_id: str,
    initiated_by: str = typer.Option(..., "--by", help="User starting the execution"),
    input_data: Optional[str] = typer.Option(
        None, "--input", help="Input data as a JSON object"
    ),
    version: Optional[int] = typer.Option(None, help="Exact definition version"),
    skip_validation: bool = typer.Option(False, help="Skip the input contract check"),
) -> None:
    """
    Start an execution of a playbook.

    Example:
        playbook-engine workflow start acme onboarding --by alice --input '{"employee": "bob"}'
    """
    data = _parse_json(input_data, "--input")
    result = _run(
        lambda engine: engine.start(
            organization_id,
            playbook_id,
            data,
            initiated_by,
            version=version,
            skip_validation=skip_validation,
        )
    )
    typer.echo(f"Execution ID: {result.execution_id}")
    typer.echo(f"Status: {result.status.value} (step {result.current_step_id})")


@workflow_app.command("list")
def workflow_list(
    organization_id: str,
    state: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    playbook_id: Optional[str] = typer.Option(None, "--playbook"),
    overdue: Optional[bool] = typer.Option(None, help="Only overdue executions"),
    limit: int = typer.Option(50, min=1, max=500),
) -> None:
    """
    List executions with their current status.

    Example:
        playbook-engine workflow list acme --state in_progress
        # Output: 3f2a...    onboarding    in_progress    collect_documents
    """
    query = WorkflowQuery(
        current_state=state, definition_code=playbook_id, overdue=overdue, limit=limit
    )
    executions = _run(lambda engine: engine.list_executions(organization_id, query))
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(
            f"{e.execution_id}\t{e.playbook_id}\t{e.status.value}\t{e.current_step_id or '-'}"
        )


@workflow_app.command("show")
def workflow_show(
    organization_id: str,
    execution_id: str,
    timers: bool = typer.Option(False, "--timers", help="Include timers"),
) -> None:
    """
    Show one execution with its steps, tasks and history.

    Example:
        playbook-engine workflow show acme 3f2a...
        # Output: Execution 3f2a... (onboarding v1): in_progress
        #         - collect_documents [task]: active (due 2024-01-01 18:00)
    """
    detail = _run(
        lambda engine: engine.get_execution(
            organization_id, execution_id, include_timers=timers
        )
    )
    instance = detail.instance
    typer.echo(
        f"Execution {instance.execution_id} "
        f"({instance.playbook_id} v{instance.playbook_version}): {instance.status.value}"
    )
    if instance.owner:
        typer.echo(f"Owner: {instance.owner}")
    if instance.error:
        typer.echo(f"Error: {instance.error}")
    if instance.context:
        typer.echo(f"Context: {json.dumps(instance.context, default=str)}")
    for step in detail.steps:
        typer.echo(
            f"- {step.step_id} [{step.step_type.value}]: {step.status.value}"
            + (f" (due {step.due_at})" if step.due_at else "")
        )
    for task in detail.tasks:
        typer.echo(f"  task {task.task_id}: {task.state.value} -> {task.assignee}")
    for timer in detail.timers:
        typer.echo(
            f"  timer {timer.purpose.value} at {timer.fire_at}"
            + (" (fired)" if timer.fired else "")
        )
    if detail.sla_status:
        typer.echo(f"SLA: {detail.sla_status.message} [{detail.sla_status.severity}]")


@workflow_app.command("pause")
def workflow_pause(
    organization_id: str,
    execution_id: str,
    reason: str = typer.Option(..., help="Why the execution is paused"),
    paused_by: str = typer.Option(..., "--by"),
) -> None:
    """Pause an in-progress execution."""
    instance = _run(
        lambda engine: engine.pause(organization_id, execution_id, reason, paused_by)
    )
    typer.echo(f"Execution {instance.execution_id}: {instance.status.value}")


@workflow_app.command("resume")
def workflow_resume(
    organization_id: str,
    execution_id: str,
    resumed_by: str = typer.Option(..., "--by"),
    notes: Optional[str] = typer.Option(None),
) -> None:
    """Resume a paused execution from the step it was paused at."""
    instance = _run(
        lambda engine: engine.resume(organization_id, execution_id, resumed_by, notes)
    )
    typer.echo(f"Execution {instance.execution_id}: {instance.status.value}")


@workflow_app.command("cancel")
def workflow_cancel(
    organization_id: str,
    execution_id: str,
    reason: str = typer.Option(..., help="Why the execution is cancelled"),
    cancelled_by: str = typer.Option(..., "--by"),
) -> None:
    """Cancel an execution that has not finished yet."""
    instance = _run(
        lambda engine: engine.cancel(organization_id, execution_id, reason, cancelled_by)
    )
    if instance.status is ExecutionStatus.CANCELLED:
        typer.echo(f"Execution {instance.execution_id}: cancelled")
    else:
        typer.echo(
            f"Cancellation of {instance.execution_id} requested; "
            "it completes when the running action settles"
        )


@task_app.command("list")
def task_list(
    organization_id: str,
    state: Optional[TaskState] = typer.Option(None, help="Filter by task state"),
    role: Optional[str] = typer.Option(None, help="Filter by assignee role"),
    user: Optional[str] = typer.Option(None, help="Filter by assignee user"),
    overdue: Optional[bool] = typer.Option(None, help="Only overdue tasks"),
    limit: int = typer.Option(50, min=1, max=500),
) -> None:
    """List tasks of an organization."""
    query = TaskQuery(
        task_state=state,
        assignee_role=role,
        assignee_user_id=user,
        overdue=overdue,
        limit=limit,
    )
    tasks = _run(lambda engine: engine.list_tasks(organization_id, query))
    if not tasks:
        typer.echo("No tasks found")
        return
    for t in tasks:
        typer.echo(
            f"{t.task_id}\t{t.step_id}\t{t.state.value}\t{t.assignee}\t{t.due_at or '-'}"
        )


@task_app.command("complete")
def task_complete(
    organization_id: str,
    task_id: str,
    completed_by: str = typer.Option(..., "--by"),
    output: Optional[str] = typer.Option(None, help="Task output as a JSON object"),
) -> None:
    """Complete a task and let its execution continue."""
    data = _parse_json(output, "--output")
    task = _run(
        lambda engine: engine.complete_task(organization_id, task_id, completed_by, data)
    )
    typer.echo(f"Task {task.task_id}: {task.state.value}")


@scheduler_app.command("sweep")
def scheduler_sweep(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without changing anything"),
    max_instances: Optional[int] = typer.Option(None, "--max-instances", min=1),
    organization_id: Optional[str] = typer.Option(None, "--org"),
) -> None:
    """
    Run one scheduler sweep: fire due timers and heal stalled executions.

    Example:
        playbook-engine scheduler sweep --dry-run
        # Output: fire_timer    3f2a...    sla
    """
    report = _run(
        lambda engine: Scheduler(engine, organization_id=organization_id).run_sweep(
            dry_run=dry_run, max_instances_per_run=max_instances
        )
    )
    for action in report.actions:
        typer.echo(
            f"{action.kind}\t{action.execution_id}\t"
            f"{action.purpose.value if action.purpose else action.detail or ''}"
        )
    typer.echo(
        f"Timers processed: {report.timers_processed}, "
        f"executions advanced: {report.instances_advanced}, errors: {len(report.errors)}"
    )
    for error in report.errors:
        typer.secho(error, fg=typer.colors.RED)


@scheduler_app.command("run")
def scheduler_run(
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps"),
    lifespan: Optional[float] = typer.Option(
        None, help="Scheduler timeout in seconds (default: run indefinitely)"
    ),
    organization_id: Optional[str] = typer.Option(None, "--org"),
) -> None:
    """
    Run the scheduler until stopped or its lifespan expires.

    Example:
        playbook-engine scheduler run --interval 10 --lifespan 300
    """
    typer.echo("Starting scheduler")
    _run(
        lambda engine: Scheduler(engine, organization_id=organization_id).run_forever(
            interval=interval, lifespan=lifespan
        )
    )


if __name__ == "__main__":
    app()
