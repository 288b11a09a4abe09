"""Command line interface for starting runs and serving steps to agents."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from antfarm import AntfarmError, RunManager, StepClaimEngine, get_repository
from antfarm.config import load_config
from antfarm.templates import template_keys
from antfarm.workflows import list_workflows, load_workflow

app = typer.Typer(help="CLI for antfarm workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for starting and managing workflow runs")
step_app = typer.Typer(help="Commands used by agents to claim and report steps")

app.add_typer(workflow_app, name="workflow")
app.add_typer(step_app, name="step")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Antfarm CLI entry point."""
    level = "DEBUG" if verbose else load_config().log_level.upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _run_manager() -> RunManager:
    return RunManager(get_repository(), config=load_config())


def _claim_engine() -> StepClaimEngine:
    return StepClaimEngine(get_repository())


def _fail(message: str) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list() -> None:
    """List installed workflows."""
    config = load_config()
    workflow_ids = list_workflows(config.workflows_path)
    if not workflow_ids:
        typer.echo(f"No workflows installed in {config.workflows_path}")
        return
    for workflow_id in workflow_ids:
        typer.echo(workflow_id)


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show the steps of an installed workflow and the variables they use.

    Example:
        antfarm workflow show feature-dev
        # Output: feature-dev - Feature development
        #         0. plan (planner) uses: task, dry_run
        #         1. implement (developer) uses: task, plan
    """
    try:
        spec = load_workflow(workflow_id, load_config().workflows_path)
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"{spec.id} - {spec.title or 'Untitled workflow'}")
    for index, step in enumerate(spec.steps):
        keys = template_keys(step.input)
        uses = f" uses: {', '.join(keys)}" if keys else ""
        typer.echo(f"  {index}. {step.id} ({spec.agent_id(step.agent)}){uses}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    task: str,
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Expose dry_run=true to step templates"
    ),
) -> None:
    """
    Start a new run of a workflow.

    Creates the run and its steps; the first step becomes available to its
    agent immediately.

    Example:
        antfarm workflow run feature-dev "Add login page"
        # Output: Started run: Add login page (0b6c...-...)
    """
    try:
        run = asyncio.run(_run_manager().run_workflow(workflow_id, task, dry_run=dry_run))
    except (AntfarmError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"Started run: {task} ({run.id})")
    typer.echo(f"Workflow: {run.workflow_id}  dry_run: {run.context['dry_run']}")


@workflow_app.command("status")
def workflow_status(run_id: str) -> None:
    """Show a run's status, context and step progress."""
    manager = _run_manager()
    try:
        run = asyncio.run(manager.get_run(run_id))
        steps = asyncio.run(manager.get_steps(run_id))
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"Run {run.id}: {run.status}")
    typer.echo(f"Workflow: {run.workflow_id}")
    typer.echo(f"Task: {run.task}")
    for key, value in run.context.items():
        typer.echo(f"  {key} = {value}")
    for step in steps:
        typer.echo(f"- [{step.step_index}] {step.step_name} ({step.agent}): {step.status}")


@workflow_app.command("runs")
def workflow_runs(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow"),
) -> None:
    """List runs, newest first."""
    runs = asyncio.run(_run_manager().list_runs(workflow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status}\t{run.task}")


@workflow_app.command("stop")
def workflow_stop(run_id: Optional[str] = typer.Argument(None)) -> None:
    """Cancel a running run."""
    if not run_id:
        _fail("run id is required (usage: antfarm workflow stop <run-id>)")
    try:
        run = asyncio.run(_run_manager().stop_run(run_id))
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"Stopped run {run.id} ({run.status})")


@workflow_app.command("resume")
def workflow_resume(run_id: Optional[str] = typer.Argument(None)) -> None:
    """Resume a failed or cancelled run from its first unfinished step."""
    if not run_id:
        _fail("run id is required (usage: antfarm workflow resume <run-id>)")
    try:
        run = asyncio.run(_run_manager().resume_run(run_id))
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"Resumed run {run.id} ({run.status})")


@step_app.command("claim")
def step_claim(agent_id: str) -> None:
    """
    Claim the next pending step for an agent.

    Prints the claim as JSON, or NO_WORK when nothing is available.

    Example:
        antfarm step claim feature-dev_developer
    """
    result = asyncio.run(_claim_engine().claim_step(agent_id))
    if not result.found:
        typer.echo("NO_WORK")
        return
    typer.echo(result.model_dump_json(exclude_none=True))


@step_app.command("complete")
def step_complete(
    step_id: str,
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Step output; read from stdin when omitted"
    ),
) -> None:
    """Mark a claimed step completed and unblock the next one."""
    if output is None:
        output = typer.get_text_stream("stdin").read()
    try:
        step = asyncio.run(_claim_engine().complete_step(step_id, output))
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"Completed step {step.step_name} of run {step.run_id}")


@step_app.command("fail")
def step_fail(step_id: str, error: str) -> None:
    """Mark a claimed step, and its run, failed."""
    try:
        step = asyncio.run(_claim_engine().fail_step(step_id, error))
    except AntfarmError as exc:
        _fail(str(exc))
    typer.echo(f"Failed step {step.step_name} of run {step.run_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
