"""Command line interface for baton workflow executions."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import typer

from baton import WorkflowEngine, get_store, load_config, load_definitions, seed_definitions
from baton.errors import BatonError, PreconditionFailedError

T = TypeVar("T")

app = typer.Typer(help="CLI for baton workflow executions")

# Command groups
execution_app = typer.Typer(help="Commands for managing executions")
step_app = typer.Typer(help="Commands for driving steps")
role_app = typer.Typer(help="Commands for inspecting roles")
batch_app = typer.Typer(help="Commands for subtask batches")

app.add_typer(execution_app, name="execution")
app.add_typer(step_app, name="step")
app.add_typer(role_app, name="role")
app.add_typer(batch_app, name="batch")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity")) -> None:
    """Baton CLI entry point."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


def _engine() -> WorkflowEngine:
    return WorkflowEngine(get_store(), load_config())


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except PreconditionFailedError as exc:
        typer.secho(f"{exc.code}: {exc.message}", fg=typer.colors.RED)
        for error in exc.errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)
    except BatonError as exc:
        typer.secho(f"{exc.code}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _phase(execution: dict[str, Any]) -> str:
    return execution["execution_state"]["phase"]


@app.command("seed")
def seed(
    file: Optional[Path] = typer.Option(None, help="YAML definitions (default: built-in pipeline)"),
) -> None:
    """
    Load role and step definitions into the configured store.

    Re-running is safe: roles and steps are matched by name and updated.

    Example:
        baton seed
        baton seed --file workflows.yaml
    """
    if file is not None and not file.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    definitions = _run(_load_and_seed(file))
    typer.echo(f"Seeded {definitions['roles']} roles and {definitions['steps']} steps")


async def _load_and_seed(file: Optional[Path]) -> dict[str, int]:
    return await seed_definitions(get_store(), load_definitions(file))


@execution_app.command("start")
def execution_start(
    role: str = typer.Option("boomerang", help="Role to start in"),
    task_id: Optional[str] = typer.Option(None, help="Existing task to run"),
    mode: Optional[str] = typer.Option(None, help="GUIDED, AUTOMATED or HYBRID"),
) -> None:
    """
    Start an execution.

    Without ``--task-id`` the workflow is bootstrapped and the first step is
    expected to create the task.

    Example:
        baton execution start
        baton execution start --role architect --task-id TSK-1
    """
    engine = _engine()
    if task_id is None:
        result = _run(engine.bootstrap_workflow(role, execution_mode=mode))
        execution = result["execution"]
        typer.echo(f"Execution {execution['id']} bootstrapped at {result['first_step']['name']}")
        return
    execution = _run(engine.create_execution(role, task_id=task_id, execution_mode=mode))
    typer.echo(f"Execution {execution['id']} created for task {task_id}")


@execution_app.command("list")
def execution_list() -> None:
    """
    List active executions, most recent first.

    Example:
        baton execution list
        # Output: 1f0c...    architect    in-progress    40%
    """
    executions, roles = _run(_active_with_roles(_engine()))
    if not executions:
        typer.echo("No active executions")
        return
    for execution in executions:
        role = roles.get(execution["current_role_id"], execution["current_role_id"])
        typer.echo(
            f"{execution['id']}\t{role}\t{_phase(execution)}\t{execution['progress_percentage']:g}%"
        )


async def _active_with_roles(engine: WorkflowEngine) -> tuple[list[dict[str, Any]], dict[str, str]]:
    executions = await engine.get_active_executions()
    roles = {role.id: role.name for role in await engine.store.list_roles()}
    return executions, roles


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its progress metrics."""
    execution, metrics = _run(_execution_with_metrics(_engine(), execution_id))
    typer.echo(f"Execution {execution['id']}: {_phase(execution)}")
    typer.echo(f"Task: {execution['task_id'] or '-'}")
    typer.echo(f"Mode: {execution['execution_mode']}")
    typer.echo(
        f"Progress: {metrics['percentage']}% "
        f"({metrics['steps_completed']}/{metrics['total_steps']}, {metrics['estimated_completion']})"
    )
    typer.echo(f"Recovery attempts: {execution['recovery_attempts']}/{execution['max_recovery_attempts']}")
    if execution["last_error"]:
        typer.echo(f"Last error: {execution['last_error']['message']}")


async def _execution_with_metrics(
    engine: WorkflowEngine, execution_id: str
) -> tuple[dict[str, Any], dict[str, Any]]:
    execution = await engine.get_execution(execution_id=execution_id)
    return execution, await engine.calculate_progress(execution_id)


@execution_app.command("complete")
def execution_complete(execution_id: str) -> None:
    """Mark an execution completed and print its summary."""
    result = _run(_engine().complete_execution(execution_id))
    summary = result["summary"]
    typer.echo(f"Execution {execution_id} completed in {summary['total_duration']}")
    typer.echo(f"Steps completed: {summary['steps_completed']} (final role: {summary['final_role']})")


@step_app.command("next")
def step_next(execution_id: str) -> None:
    """
    Gate and start the next step of an execution.

    Exits with code 1 and lists failed conditions when a required
    precondition does not hold.
    """
    result = _run(_engine().execute_next_step(execution_id))
    if result["status"] == "role_complete":
        typer.echo("Role complete: no remaining steps")
        return
    step = result["step"]
    typer.echo(f"Started step {step['sequence_number']}: {step['name']}")


@role_app.command("progress")
def role_progress(role_name: str) -> None:
    """Summarize step attempts recorded for a role."""
    summary = _run(_engine().get_role_progress_summary(role_name))
    typer.echo(f"Role {summary['role_name']}")
    typer.echo(
        f"Attempts: {summary['total_steps']} "
        f"(completed {summary['completed_steps']}, failed {summary['failed_steps']}, "
        f"in progress {summary['in_progress_steps']})"
    )
    typer.echo(f"Success rate: {summary['success_rate']}%")
    typer.echo(f"Average execution time: {summary['average_execution_time']} ms")


@batch_app.command("status")
def batch_status(task_id: str, batch_id: str) -> None:
    """Show completion of one subtask batch."""
    status = _run(_engine().check_batch_status(task_id, batch_id))
    state = "complete" if status["is_complete"] else "incomplete"
    typer.echo(
        f"Batch {status['batch_id']}: {state} "
        f"({status['completed_subtasks_in_batch']}/{status['total_subtasks_in_batch']})"
    )
    for pending in status["pending_subtasks"]:
        typer.echo(f"- {pending['name']}: {pending['status']}")
