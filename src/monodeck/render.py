"""Rich renderables for engine views.

``render(view)`` dispatches on the view type: discovery results, script
runs, batches, git state, environment sets and the remote project list.
"""

from __future__ import annotations

from functools import singledispatch

from rich.console import Group, RenderableType
from rich.table import Table
from rich.text import Text

from .git.models import GitState, GitStateKind
from .remote.session import RemoteSession
from .runner.models import (
    BatchRunSnapshot,
    BatchStatus,
    ConstituentStatus,
    RunStatus,
    ScriptRunSnapshot,
)
from .workspace.discovery import DiscoveryResult
from .workspace.environment import EnvironmentSet

RUN_STYLES = {
    RunStatus.RUNNING: "blue",
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "yellow",
}

CONSTITUENT_ICONS = {
    ConstituentStatus.PENDING: ("⏳", "dim"),
    ConstituentStatus.RUNNING: ("🔵", "blue"),
    ConstituentStatus.SUCCEEDED: ("✓", "green"),
    ConstituentStatus.FAILED: ("✗", "red"),
    ConstituentStatus.CANCELLED: ("⊘", "yellow"),
    ConstituentStatus.ERROR: ("!", "red bold"),
}

BATCH_STYLES = {
    BatchStatus.RUNNING: "blue",
    BatchStatus.SUCCEEDED: "green",
    BatchStatus.COMPLETED_WITH_FAILURES: "red",
    BatchStatus.CANCELLED: "yellow",
}


def status_label(status: RunStatus, exit_code: int | None = None) -> str:
    """``Failed(1)``-style label for a run status."""
    label = status.value.title()
    if status is RunStatus.FAILED and exit_code is not None:
        label = f"{label}({exit_code})"
    return label


@singledispatch
def render(view: object) -> RenderableType:
    """Render an engine view for the console."""
    raise TypeError(f"No renderer for {type(view).__name__}")


@render.register
def _(view: DiscoveryResult) -> RenderableType:
    if not view.projects:
        body: RenderableType = Text(f"No projects found under {view.root}", style="yellow")
    else:
        table = Table(title=f"Projects in {view.root}", title_justify="left")
        table.add_column("Name", style="bold")
        table.add_column("Path", style="dim")
        table.add_column("Manager")
        table.add_column("Scripts")
        for project in view.projects:
            table.add_row(
                project.name,
                project.relative_path,
                project.package_manager or "-",
                ", ".join(project.script_names) or "[dim]none[/dim]",
            )
        body = table

    if not view.warnings:
        return body
    warnings = Text()
    for warning in view.warnings:
        warnings.append(f"⚠ {warning}\n", style="yellow")
    return Group(body, warnings)


@render.register
def _(view: ScriptRunSnapshot) -> RenderableType:
    style = RUN_STYLES[view.status]
    text = Text()
    text.append(f"{view.project}:{view.script} ", style="bold")
    text.append(status_label(view.status, view.exit_code), style=style)
    text.append(f"  run {view.run_id}", style="dim")
    if view.duration_seconds is not None:
        text.append(f"  {view.duration_seconds:.1f}s", style="dim")
    return text


@render.register
def _(view: BatchRunSnapshot) -> RenderableType:
    table = Table(
        title=f"{view.script} ({view.mode.value}) - batch {view.batch_id}",
        title_justify="left",
    )
    table.add_column("", width=2)
    table.add_column("Project", style="bold")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    for constituent in view.constituents:
        icon, style = CONSTITUENT_ICONS[constituent.status]
        label = constituent.status.value.title()
        if constituent.status is ConstituentStatus.FAILED and constituent.exit_code is not None:
            label = f"{label}({constituent.exit_code})"
        detail = constituent.error or (f"run {constituent.run_id}" if constituent.run_id else "")
        table.add_row(
            Text(icon, style=style),
            constituent.project,
            Text(label, style=style),
            detail,
        )

    summary = Text()
    summary.append("Overall: ", style="bold")
    summary.append(
        view.status.value.replace("_", " ").title(),
        style=BATCH_STYLES[view.status],
    )
    return Group(table, summary)


@render.register
def _(view: GitState) -> RenderableType:
    text = Text()
    if view.kind is GitStateKind.NOT_A_REPOSITORY:
        text.append("Not a git repository", style="yellow")
        if view.error:
            text.append(f"\n{view.error}", style="dim")
        return text

    text.append("Branch: ", style="bold")
    text.append(view.branch or "(detached HEAD)", style="cyan")
    if view.ahead or view.behind:
        text.append(f"  ↑{view.ahead} ↓{view.behind}", style="dim")
    text.append("\n")

    if view.kind is GitStateKind.OPERATION_IN_PROGRESS:
        text.append(f"{view.operation} in progress…\n", style="blue")
    elif view.kind is GitStateKind.ERROR:
        text.append(f"Error: {view.error}\n", style="red")

    if not view.files:
        text.append("Working tree clean", style="green")
        return text

    untracked = set(view.untracked)
    text.append(f"{len(view.files)} changed file(s):", style="yellow")
    for path in view.files:
        marker = "?" if path in untracked else "M"
        text.append(f"\n  {marker} {path}")
    return text


@render.register
def _(view: EnvironmentSet) -> RenderableType:
    if not view.variables:
        return Text(f"Environment '{view.label}' is empty", style="dim")
    table = Table(title=f"Environment: {view.label}", title_justify="left")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in view.variables.items():
        table.add_row(key, value)
    return table


@render.register
def _(view: RemoteSession) -> RenderableType:
    if not view.projects:
        return Text("No remote projects", style="dim")
    table = Table(title=f"Projects on {view.base_url}", title_justify="left")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Project", style="bold")
    table.add_column("Default branch")
    for namespace, projects in view.grouped_projects().items():
        if namespace:
            table.add_row("", Text(namespace, style="cyan"), "")
        for project in projects:
            table.add_row(str(project.id), f"  {project.slug}", project.default_branch or "-")
    return table
