"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for task statuses, costs, agents and
sprint reports. This module should NOT import from app.py to avoid circular
imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sprint_swarm.merge import MergeOutcome
from sprint_swarm.models import EpicStatus, TaskStatus

if TYPE_CHECKING:
    from sprint_swarm.agents import AgentStatus
    from sprint_swarm.costs import CostSummary, LimitStatus
    from sprint_swarm.models import Epic, LedgerStatistics, StatusCounts, Task
    from sprint_swarm.orchestrator import SprintReport, TaskExecution
    from sprint_swarm.workspace import WorkspaceStatus

# Task status display names and colors
STATUS_DISPLAY: dict[TaskStatus, tuple[str, str]] = {
    TaskStatus.PENDING: ("Pending", "dim"),
    TaskStatus.IN_PROGRESS: ("In Progress", "cyan bold"),
    TaskStatus.COMPLETED: ("Completed", "green"),
    TaskStatus.BLOCKED: ("Blocked", "red"),
}

EPIC_STATUS_DISPLAY: dict[EpicStatus, tuple[str, str]] = {
    EpicStatus.PENDING: ("Pending", "dim"),
    EpicStatus.IN_PROGRESS: ("In Progress", "cyan"),
    EpicStatus.COMPLETED: ("Completed", "green bold"),
}

MERGE_OUTCOME_DISPLAY: dict[MergeOutcome, tuple[str, str]] = {
    MergeOutcome.MERGED: ("Merged", "green"),
    MergeOutcome.TEST_FAILURE: ("Tests Failed", "yellow"),
    MergeOutcome.REVIEW_REJECTED: ("Review Rejected", "yellow"),
    MergeOutcome.MERGE_FAILED: ("Merge Failed", "red"),
    MergeOutcome.ROLLBACK_FAILED: ("Rollback Failed", "red bold"),
    MergeOutcome.HALTED: ("Halted", "red bold"),
}


def format_status(status: TaskStatus) -> Text:
    """Format a task status enum as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_epic_status(status: EpicStatus) -> Text:
    display_name, style = EPIC_STATUS_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_merge_outcome(outcome: MergeOutcome) -> Text:
    display_name, style = MERGE_OUTCOME_DISPLAY.get(outcome, (outcome.name, "white"))
    return Text(display_name, style=style)


def format_cost(cost_usd: float) -> str:
    """Format cost as a string with dollar sign."""
    if cost_usd == 0:
        return "-"
    if cost_usd < 0.01:
        return f"${cost_usd:.4f}"
    return f"${cost_usd:.2f}"


def format_progress(counts: "StatusCounts") -> str:
    """e.g. '3/5 done (60.0% of points)'."""
    if counts.total == 0:
        return "-"
    return f"{counts.completed}/{counts.total} done ({counts.percent_complete:.1f}% of points)"


def build_tasks_table(tasks: Iterable["Task"], title: str = "Tasks") -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", no_wrap=False)
    table.add_column("Status", no_wrap=True)
    table.add_column("Points", justify="center")
    table.add_column("Team", justify="center")
    table.add_column("Sprint", justify="center")
    table.add_column("Agent", style="magenta")
    table.add_column("Deps", style="dim")

    for task in tasks:
        table.add_row(
            task.id,
            task.title,
            format_status(task.status),
            str(task.story_points),
            str(task.team),
            str(task.sprint),
            task.assigned_to or "-",
            ",".join(task.dependencies) or "-",
        )
    return table


def build_statistics_table(stats: "LedgerStatistics") -> Table:
    table = Table(title="Progress", show_header=True, header_style="bold")
    table.add_column("Scope")
    table.add_column("Pending", justify="right", style="dim")
    table.add_column("In Progress", justify="right", style="cyan")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Blocked", justify="right", style="red")
    table.add_column("Points", justify="right")
    table.add_column("Done %", justify="right")

    def add(scope: str, counts: "StatusCounts") -> None:
        table.add_row(
            scope,
            str(counts.pending),
            str(counts.in_progress),
            str(counts.completed),
            str(counts.blocked),
            f"{counts.completed_story_points}/{counts.story_points}",
            f"{counts.percent_complete:.1f}",
        )

    add("[bold]Overall[/bold]", stats.overall)
    for team, counts in sorted(stats.by_team.items()):
        add(f"Team {team}", counts)
    for sprint, counts in sorted(stats.by_sprint.items()):
        add(f"Sprint {sprint}", counts)
    return table


def build_agents_table(agents: Iterable["AgentStatus"]) -> Table:
    table = Table(title="Agents", show_header=True, header_style="bold")
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Role")
    table.add_column("Team", justify="center")
    table.add_column("Current", style="magenta")
    table.add_column("Load", justify="right")
    table.add_column("Done Pts", justify="right", style="green")
    table.add_column("Capacity", justify="right")

    for agent in agents:
        remaining = agent.remaining_sprint_capacity
        table.add_row(
            agent.name,
            agent.role,
            "all" if agent.team is None else str(agent.team),
            ", ".join(agent.current_tasks) or "-",
            f"{len(agent.current_tasks)}/{agent.max_concurrent_tasks}",
            str(agent.completed_story_points),
            "-" if remaining is None else str(remaining),
        )
    return table


def build_epics_table(epics: Iterable["Epic"]) -> Table:
    table = Table(title="Epics", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status", no_wrap=True)
    table.add_column("Tasks", justify="right")
    table.add_column("Est. Points", justify="right")

    for epic in epics:
        table.add_row(
            epic.id,
            epic.title,
            format_epic_status(epic.status),
            str(len(epic.task_ids)),
            str(epic.estimated_story_points),
        )
    return table


def build_cost_table(summary: "CostSummary", limits: Iterable["LimitStatus"]) -> Table:
    table = Table(title="Costs", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    table.add_row("Total cost", format_cost(summary.total_cost))
    table.add_row("Requests", str(summary.request_count))
    table.add_row("Average per request", format_cost(summary.average_cost_per_request))
    table.add_row("Input tokens", f"{summary.tokens.input:,}")
    table.add_row("Output tokens", f"{summary.tokens.output:,}")
    table.add_row("Cached tokens", f"{summary.tokens.cached:,}")
    table.add_row("Cache efficiency", f"{summary.cache_efficiency:.1f}%")
    table.add_row("Cache savings", format_cost(summary.cache_savings))

    for agent_id, cost in sorted(summary.cost_by_agent.items()):
        table.add_row(f"[magenta]{agent_id}[/magenta]", format_cost(cost))
    for model, cost in sorted(summary.cost_by_model.items()):
        table.add_row(f"[dim]{model}[/dim]", format_cost(cost))

    for status in limits:
        style = "red" if status.exceeded else "green"
        table.add_row(
            f"Limit: {status.name}",
            f"[{style}]${status.current:.2f} / ${status.threshold:.2f}[/{style}]",
        )
    return table


def build_worktrees_table(statuses: Iterable["WorkspaceStatus"]) -> Table:
    table = Table(title="Agent Worktrees", show_header=True, header_style="bold")
    table.add_column("Agent", style="cyan")
    table.add_column("Branch")
    table.add_column("Path", style="dim")
    table.add_column("Ahead", justify="right")
    table.add_column("Behind", justify="right")
    table.add_column("Dirty", justify="center")

    for status in statuses:
        table.add_row(
            status.agent_id,
            status.branch or "-",
            status.path or "-",
            str(status.commits_ahead),
            str(status.commits_behind),
            "[yellow]yes[/yellow]" if status.has_uncommitted_changes else "no",
        )
    return table


def build_execution_panel(execution: "TaskExecution") -> Panel:
    lines = [
        f"[bold]Task:[/bold] {execution.task_id}",
        f"[bold]Agent:[/bold] {execution.agent_id or '-'}",
        f"[bold]Result:[/bold] {execution.status.name}",
        f"[bold]Cost:[/bold] {format_cost(execution.cost)}",
    ]
    if execution.commit:
        lines.append(f"[bold]Commit:[/bold] {execution.commit[:10]}")
    if execution.merge is not None:
        outcome = format_merge_outcome(execution.merge.outcome)
        lines.append(f"[bold]Merge:[/bold] {outcome.markup} {execution.merge.message}")
    if execution.rolled_back:
        lines.append("[yellow]Workspace rolled back to the pre-task checkpoint[/yellow]")
    if execution.error:
        lines.append(f"[red]Error:[/red] {execution.error}")

    border = "green" if execution.success else "red"
    return Panel("\n".join(lines), title="Execution", border_style=border)


def build_sprint_panel(report: "SprintReport") -> Panel:
    title = "Sprint Plan (dry run)" if report.dry_run else "Sprint Report"
    if report.sprint is not None:
        title += f" - sprint {report.sprint}"

    def ids(values: Iterable[str]) -> str:
        values = list(values)
        return ", ".join(values) if values else "-"

    lines = [
        f"[bold]Ready:[/bold] {ids(report.ready)}",
        f"[bold]Blocked:[/bold] {ids(report.blocked)}",
    ]
    for cycle in report.cycles:
        lines.append(f"[red]Cycle:[/red] {' -> '.join(cycle + cycle[:1])}")

    if report.assigned:
        lines.append("[bold]Assignments:[/bold]")
        for task_id, agent_id in report.assigned.items():
            lines.append(f"  {task_id} -> [magenta]{agent_id}[/magenta]")
    lines.append(f"[bold]Unassigned:[/bold] {ids(report.unassigned)}")

    if not report.dry_run:
        lines.append(f"[green]Completed:[/green] {ids(report.completed)}")
        lines.append(f"[red]Failed:[/red] {ids(report.failed)}")
        for merge in report.merges:
            outcome = format_merge_outcome(merge.outcome)
            lines.append(f"  merge {merge.agent_id} ({merge.task_id}): {outcome.markup}")
    if report.spending_limit_hit:
        lines.append("[red bold]Spending limit reached; dispatch stopped[/red bold]")

    return Panel("\n".join(lines), title=title, border_style="cyan")
