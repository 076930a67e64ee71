"""Main Typer app definition and commands.

This is the canonical entry point for the CLI. Commands are thin wrappers
over the Orchestrator; all behavior lives in the core package.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import typer

from sprint_swarm import __version__
from sprint_swarm.cli.common import get_console, get_orchestrator, set_config_path, set_project_dir
from sprint_swarm.cli.display import (
    build_agents_table,
    build_cost_table,
    build_epics_table,
    build_execution_panel,
    build_sprint_panel,
    build_statistics_table,
    build_tasks_table,
    build_worktrees_table,
    format_progress,
)
from sprint_swarm.errors import SwarmError

# Create Typer app
app = typer.Typer(
    name="sprint-swarm",
    help="Multi-agent sprint orchestration over a shared git repository",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"sprint-swarm version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to swarm.yaml (default: ./swarm.yaml)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Sprint Swarm - run a sprint with a team of coding agents.

    Tasks are assigned to agents, implemented in per-agent git worktrees and
    merged to trunk behind a test gate.
    """
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))
    set_config_path(config)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


# =========================================================================
# Status
# =========================================================================


@app.command()
def status(
    team: Optional[int] = typer.Option(None, "--team", "-t", help="Show a single team."),
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON."),
) -> None:
    """Show task progress, agent load, epics and spend."""
    orchestrator = get_orchestrator()

    if team is not None:
        team_status = orchestrator.get_team_status(team)
        if as_json:
            console.print_json(json.dumps(team_status.to_dict(), default=str))
            return
        console.print(f"[bold]Team {team}:[/bold] {format_progress(team_status.counts)}")
        console.print(build_agents_table(team_status.agents))
        console.print(build_tasks_table(team_status.tasks, title=f"Team {team} Tasks"))
        return

    overall = orchestrator.get_overall_status()
    if as_json:
        console.print_json(json.dumps(overall.to_dict(), default=str))
        return

    console.print(build_statistics_table(overall.statistics))
    console.print(build_agents_table(overall.agents))
    if overall.epics:
        console.print(build_epics_table(overall.epics))
    console.print(f"\n[dim]Total cost:[/dim] [yellow]${overall.total_cost:.2f}[/yellow]")
    if overall.merges_halted:
        console.print(f"[red bold]Merges halted:[/red bold] {overall.halt_reason}")


# =========================================================================
# Tasks
# =========================================================================


@app.command()
def tasks(
    status_filter: Optional[str] = typer.Option(
        None, "--status", "-s", help="pending, in_progress, completed or blocked.",
    ),
    team: Optional[int] = typer.Option(None, "--team", "-t"),
    sprint: Optional[int] = typer.Option(None, "--sprint"),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Only tasks assigned to this agent."),
) -> None:
    """List tasks."""
    from sprint_swarm.models import TaskStatus

    parsed_status = None
    if status_filter:
        try:
            parsed_status = TaskStatus[status_filter.upper()]
        except KeyError:
            valid = ", ".join(s.name.lower() for s in TaskStatus)
            _fail(f"Unknown status '{status_filter}'. Valid values: {valid}")

    orchestrator = get_orchestrator()
    found = orchestrator.ledger.list_tasks(
        status=parsed_status, team=team, sprint=sprint, assigned_to=agent,
    )
    if not found:
        console.print("[dim]No tasks found.[/dim]")
        return
    console.print(build_tasks_table(found))


@app.command("task-create")
def task_create(
    title: str = typer.Argument(..., help="Task title."),
    description: str = typer.Option("", "--description", "-d"),
    points: int = typer.Option(1, "--points", "-p", help="Story points (positive)."),
    depends: Optional[list[str]] = typer.Option(
        None, "--depends", help="Task id this task depends on (repeatable)."
    ),
    team: int = typer.Option(1, "--team", "-t"),
    sprint: int = typer.Option(1, "--sprint"),
    epic: Optional[str] = typer.Option(None, "--epic", "-e", help="Epic to add the task to."),
) -> None:
    """Create a pending task."""
    orchestrator = get_orchestrator()
    try:
        task = orchestrator.create_task(
            title,
            description=description,
            story_points=points,
            dependencies=depends or [],
            team=team,
            sprint=sprint,
            epic_id=epic,
        )
    except (SwarmError, ValueError) as e:
        _fail(str(e))
        return

    console.print(f"[green]Created[/green] {task.id}: {task.title}")


@app.command()
def block(
    task_id: str = typer.Argument(...),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the task is blocked."),
) -> None:
    """Mark a task as blocked."""
    orchestrator = get_orchestrator()
    try:
        orchestrator.block_task(task_id, reason)
    except (SwarmError, ValueError) as e:
        _fail(str(e))
    console.print(f"[yellow]Blocked[/yellow] {task_id}: {reason}")


@app.command()
def unblock(task_id: str = typer.Argument(...)) -> None:
    """Return a blocked task to pending."""
    orchestrator = get_orchestrator()
    try:
        orchestrator.unblock_task(task_id)
    except SwarmError as e:
        _fail(str(e))
    console.print(f"[green]Unblocked[/green] {task_id}")


# =========================================================================
# Assignment / Execution
# =========================================================================


@app.command()
def assign(task_id: str = typer.Argument(..., help="Task to assign.")) -> None:
    """Assign a pending task to the best available agent."""
    orchestrator = get_orchestrator()
    try:
        agent_id = orchestrator.assign_task(task_id)
    except SwarmError as e:
        _fail(str(e))
        return

    if agent_id is None:
        console.print(f"[yellow]No agent has capacity for {task_id} right now.[/yellow]")
        raise typer.Exit(2)
    console.print(f"[green]Assigned[/green] {task_id} -> [magenta]{agent_id}[/magenta]")


@app.command("auto-assign")
def auto_assign(
    sprint: Optional[int] = typer.Option(None, "--sprint", help="Only tasks of this sprint."),
) -> None:
    """Assign every ready task without executing anything."""
    orchestrator = get_orchestrator()
    summary = orchestrator.auto_assign_tasks(sprint=sprint)

    for task_id, agent_id in summary.assignments.items():
        console.print(f"  {task_id} -> [magenta]{agent_id}[/magenta]")
    console.print(
        f"[green]{len(summary.assigned)} assigned[/green], "
        f"[yellow]{len(summary.unassigned)} waiting for capacity[/yellow]"
    )


@app.command()
def execute(task_id: str = typer.Argument(..., help="Task to execute.")) -> None:
    """Execute one task now: assign if needed, run the agent, commit and merge."""
    orchestrator = get_orchestrator()
    try:
        execution = orchestrator.execute_task(task_id)
    except SwarmError as e:
        _fail(str(e))
        return

    console.print(build_execution_panel(execution))
    if not execution.success:
        raise typer.Exit(1)


@app.command()
def sprint(
    number: Optional[int] = typer.Option(None, "--sprint", "-s", help="Sprint number (default: all)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without changing anything."),
) -> None:
    """Run one sprint pass: resolve, assign and execute ready tasks."""
    orchestrator = get_orchestrator()
    report = orchestrator.simulate(number) if dry_run else orchestrator.run_sprint(number)
    console.print(build_sprint_panel(report))
    if report.failed or report.spending_limit_hit:
        raise typer.Exit(1)


# =========================================================================
# Costs
# =========================================================================


@app.command()
def costs(
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only the last N days."),
) -> None:
    """Show spend, token usage and spending limits."""
    orchestrator = get_orchestrator()
    since = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    summary = orchestrator.get_summary(since)
    console.print(build_cost_table(summary, orchestrator.costs.limit_statuses()))


# =========================================================================
# Worktrees / Merge
# =========================================================================


@app.command()
def worktrees(
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove every agent worktree."),
) -> None:
    """List agent worktrees, or remove them all with --cleanup."""
    orchestrator = get_orchestrator()
    try:
        orchestrator.prepare_workspaces()
    except SwarmError as e:
        _fail(str(e))

    if cleanup:
        removed = orchestrator.workspaces.cleanup_all()
        if removed:
            console.print(f"[green]Removed {len(removed)} worktree(s):[/green] {', '.join(removed)}")
        else:
            console.print("[dim]No worktrees to remove.[/dim]")
        return

    known = orchestrator.workspaces.workspaces()
    if not known:
        console.print("[dim]No agent worktrees.[/dim]")
        return
    console.print(build_worktrees_table(
        orchestrator.workspaces.status(ws.agent_id) for ws in known
    ))


@app.command("merge-check")
def merge_check(agent_id: str = typer.Argument(..., help="Agent whose branch to check.")) -> None:
    """Check whether an agent's branch can be merged to trunk."""
    orchestrator = get_orchestrator()
    try:
        orchestrator.prepare_workspaces()
        readiness = orchestrator.merger.is_ready_to_merge(agent_id)
    except SwarmError as e:
        _fail(str(e))
        return

    if readiness.ready:
        console.print(f"[green]{agent_id}: {readiness.reason}[/green]")
    else:
        console.print(f"[yellow]{agent_id}: {readiness.reason}[/yellow]")
        raise typer.Exit(1)


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
