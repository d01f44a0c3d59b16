"""monodeck CLI.

Main entry point for the monodeck command.
"""

from __future__ import annotations

import functools
import json
import logging
import time
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config import (
    MonodeckConfig,
    format_config_for_display,
    get_config,
    get_config_path,
    list_config_keys,
    update_config,
)
from .exceptions import MonodeckError
from .render import render, status_label
from .runner.models import BatchStatus, RunMode, RunStatus
from .utils.errors import error_project_not_found, format_error, handle_exception, set_debug_mode
from .workspace.discovery import all_script_names, common_script_names
from .workspace.session import WorkspaceSession

console = Console()
err_console = Console(stderr=True)

POLL_INTERVAL = 0.1


def setup_logging(level: str = "warning") -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def handles_errors(context: str):
    """Turn engine errors into a formatted message and exit code 1."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (MonodeckError, ValueError) as e:
                handle_exception(console, e, context)

        return wrapper

    return decorator


def get_session(ctx: click.Context) -> WorkspaceSession:
    """Build the workspace session once per invocation."""
    state = ctx.find_root().obj
    session = state.get("session")
    if session is None:
        session = WorkspaceSession(state.get("root"), config=get_config())
        if state.get("env"):
            session.set_active_environment(state["env"])
        ctx.find_root().call_on_close(session.shutdown)
        state["session"] = session
    return session


def _scanned_session(ctx: click.Context) -> WorkspaceSession:
    session = get_session(ctx)
    session.rescan()
    return session


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.option(
    "--root",
    "-r",
    type=click.Path(file_okay=False, path_type=Path),
    help="Monorepo root (default: workspace.root or current directory)",
)
@click.option("--env", "-e", "env_label", help="Environment label to overlay on runs")
@click.pass_context
def main(
    ctx: click.Context,
    version: bool,
    debug: bool,
    root: Path | None,
    env_label: str | None,
) -> None:
    """monodeck - run and manage the sub-projects of a monorepo.

    Discovers every package.json below the workspace root, runs their
    scripts one at a time or across all projects, and wraps the everyday
    git and GitLab operations.

    Use --debug for verbose error output with stack traces.
    """
    config = get_config()
    if debug:
        set_debug_mode(True)
    setup_logging("debug" if debug else config.ui.log_level)

    if version:
        console.print(f"monodeck version {__version__}")
        return

    ctx.obj = {"root": root, "env": env_label}

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Projects and scripts
# =============================================================================


@main.command()
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@handles_errors("project discovery")
def projects(ctx: click.Context, as_json: bool) -> None:
    """List the projects found under the workspace root."""
    session = get_session(ctx)
    result = session.rescan()

    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return

    console.print(render(result))


@main.command()
@click.argument("project", required=False)
@click.pass_context
@handles_errors("listing scripts")
def scripts(ctx: click.Context, project: str | None) -> None:
    """List scripts of one project, or the scripts shared by all projects.

    \b
    Examples:
        monodeck scripts            # Scripts every project declares
        monodeck scripts web        # Scripts of the 'web' project
    """
    session = _scanned_session(ctx)

    if project:
        target = session.project(project)
        if target is None:
            format_error(error_project_not_found(project), console)
            raise SystemExit(1)
        if not target.scripts:
            console.print(f"[dim]{target.name} declares no scripts[/dim]")
            return
        console.print(f"[bold cyan]{target.name}[/bold cyan]")
        for name, command in target.scripts.items():
            console.print(f"  [bold]{name}[/bold]  [dim]{command}[/dim]")
        return

    common = common_script_names(session.projects)
    everything = all_script_names(session.projects)
    console.print("[bold]Shared by all projects:[/bold]")
    if common:
        for name in common:
            console.print(f"  {name}")
    else:
        console.print("  [dim](none)[/dim]")
    others = [name for name in everything if name not in common]
    if others:
        console.print()
        console.print("[bold]Declared by some projects:[/bold]")
        for name in others:
            console.print(f"  {name}")


def _stream_run(run) -> None:
    """Print a run's output until it finishes. Ctrl+C cancels it."""
    try:
        while True:
            poll = run.poll()
            for line in poll.lines:
                click.echo(line.text)
            if poll.status.is_terminal:
                # Lines may arrive between the last read and the exit
                for line in run.poll().lines:
                    click.echo(line.text)
                return
            run.wait(POLL_INTERVAL)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling...[/yellow]")
        run.cancel()
        run.wait(run.grace_period + 1)


@main.command()
@click.argument("project")
@click.argument("script")
@click.pass_context
@handles_errors("running script")
def run(ctx: click.Context, project: str, script: str) -> None:
    """Run SCRIPT in PROJECT and stream its output.

    The active environment's variables are added to the process environment.
    Exits with the script's exit code.

    \b
    Examples:
        monodeck run web dev
        monodeck --env staging run api build
    """
    session = _scanned_session(ctx)
    script_run = session.run_script(project, script)

    console.print(f"[dim]$ {' '.join(script_run.command)}  ({session.active_environment})[/dim]")
    _stream_run(script_run)

    snapshot = script_run.snapshot()
    console.print(render(snapshot))
    if snapshot.status is RunStatus.SUCCEEDED:
        return
    raise SystemExit(snapshot.exit_code if snapshot.status is RunStatus.FAILED else 130)


def _stream_batch(batch, quiet: bool) -> None:
    cursors: dict[str, int] = {}
    try:
        while True:
            terminal = batch.is_terminal
            if not quiet:
                for script_run in batch.runs():
                    seen = cursors.get(script_run.run_id, 0)
                    lines = script_run.lines(seen)
                    for line in lines:
                        click.echo(f"[{script_run.project}] {line.text}")
                    cursors[script_run.run_id] = seen + len(lines)
            if terminal:
                return
            batch.wait(POLL_INTERVAL)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling batch...[/yellow]")
        batch.cancel()
        batch.wait()


@main.command("run-all")
@click.argument("script", required=False)
@click.option("--parallel/--sequential", "parallel", default=None, help="Run mode")
@click.option("--project", "-p", "selected", multiple=True, help="Limit to these projects")
@click.option("--quiet", "-q", is_flag=True, help="Only show the final summary")
@click.pass_context
@handles_errors("running batch")
def run_all(
    ctx: click.Context,
    script: str | None,
    parallel: bool | None,
    selected: tuple[str, ...],
    quiet: bool,
) -> None:
    """Run SCRIPT across all projects.

    Projects that do not declare the script are reported as errors and the
    others still run. SCRIPT defaults to the last one used.

    \b
    Examples:
        monodeck run-all build
        monodeck run-all test --sequential
        monodeck run-all lint -p web -p api
    """
    session = _scanned_session(ctx)
    config = session.config

    script = script or config.runner.last_script
    if not script:
        raise click.UsageError("No SCRIPT given and no previous script to repeat")

    targets = session.projects
    if selected:
        targets = []
        for name in selected:
            project = session.project(name)
            if project is None:
                format_error(error_project_not_found(name), console)
                raise SystemExit(1)
            targets.append(project)

    if parallel is None:
        mode = RunMode(config.runner.default_mode)
    else:
        mode = RunMode.PARALLEL if parallel else RunMode.SEQUENTIAL

    if config.runner.last_script != script:
        update_config({"runner.last_script": script})

    console.print(
        f"[bold cyan]{script}[/bold cyan] across {len(targets)} projects "
        f"[dim]({mode.value}, env {session.active_environment})[/dim]"
    )
    batch = session.run_all(script, mode, targets)
    _stream_batch(batch, quiet)

    snapshot = batch.snapshot()
    console.print()
    console.print(render(snapshot))
    if snapshot.status is not BatchStatus.SUCCEEDED:
        raise SystemExit(1)


# =============================================================================
# Environments
# =============================================================================


@main.group()
def env() -> None:
    """View and edit environment files (.env.<label>) at the workspace root.

    The active environment (--env, MONODECK_ENV or workspace.active_environment)
    is overlaid on every script run.
    """
    pass


def _label(ctx: click.Context, label: str | None) -> str:
    return label or get_session(ctx).active_environment


@env.command("show")
@click.argument("label", required=False)
@click.pass_context
@handles_errors("reading environment")
def env_show(ctx: click.Context, label: str | None) -> None:
    """Show the variables of LABEL (default: the active environment)."""
    session = get_session(ctx)
    env_set = session.environments.load(_label(ctx, label))
    console.print(render(env_set))


@env.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--label", "-l", help="Environment label (default: active)")
@click.pass_context
@handles_errors("saving environment")
def env_set(ctx: click.Context, key: str, value: str, label: str | None) -> None:
    """Set KEY=VALUE and save the environment file."""
    session = get_session(ctx)
    target = _label(ctx, label)
    session.environments.set(target, key, value)
    path = session.environments.save(target)
    console.print(f"[green]✓ Set {key} in {path.name}[/green]")


@env.command("unset")
@click.argument("key")
@click.option("--label", "-l", help="Environment label (default: active)")
@click.pass_context
@handles_errors("saving environment")
def env_unset(ctx: click.Context, key: str, label: str | None) -> None:
    """Remove KEY and save the environment file."""
    session = get_session(ctx)
    target = _label(ctx, label)
    if not session.environments.unset(target, key):
        console.print(f"[yellow]{key} is not set in '{target}'[/yellow]")
        return
    path = session.environments.save(target)
    console.print(f"[green]✓ Removed {key} from {path.name}[/green]")


@env.command("labels")
@click.pass_context
@handles_errors("listing environments")
def env_labels(ctx: click.Context) -> None:
    """List environment labels with a file at the workspace root."""
    session = get_session(ctx)
    labels = session.environments.labels()
    if not labels:
        console.print("[dim]No environment files found.[/dim]")
        console.print("[dim]Run 'monodeck env set KEY VALUE' to create one.[/dim]")
        return
    for label in labels:
        marker = " [bold yellow](active)[/bold yellow]" if label == session.active_environment else ""
        console.print(f"  {label}{marker}")


# =============================================================================
# Git
# =============================================================================


@main.group()
def git() -> None:
    """Inspect and update the git working tree of the workspace root."""
    pass


@git.command("status")
@click.pass_context
@handles_errors("git status")
def git_status(ctx: click.Context) -> None:
    """Show branch and changed files."""
    state = get_session(ctx).git.refresh()
    console.print(render(state))


@git.command("branches")
@click.option("--remote", "remote_only", is_flag=True, help="List remote branches instead")
@click.pass_context
@handles_errors("listing branches")
def git_branches(ctx: click.Context, remote_only: bool) -> None:
    """List local (or remote) branches."""
    tracker = get_session(ctx).git
    current = tracker.refresh().branch
    names = tracker.remote_branches() if remote_only else tracker.branches()
    if not names:
        console.print("[dim]No branches[/dim]")
        return
    for name in names:
        if not remote_only and name == current:
            console.print(f"[green]* {name}[/green]")
        else:
            console.print(f"  {name}")


@git.command("switch")
@click.argument("branch")
@click.option("--remote", "from_remote", is_flag=True, help="Create a tracking branch from the remote")
@click.pass_context
@handles_errors("switch")
def git_switch(ctx: click.Context, branch: str, from_remote: bool) -> None:
    """Check out BRANCH. Local changes are never stashed automatically."""
    tracker = get_session(ctx).git
    state = tracker.checkout_remote_branch(branch) if from_remote else tracker.switch_branch(branch)
    console.print(f"[green]✓ Switched to {state.branch}[/green]")


@git.command("commit")
@click.option("--message", "-m", default="", help="Commit message")
@click.argument("paths", nargs=-1)
@click.pass_context
@handles_errors("commit")
def git_commit(ctx: click.Context, message: str, paths: tuple[str, ...]) -> None:
    """Stage and commit changes (all changes unless PATHS are given)."""
    state = get_session(ctx).git.commit(message, list(paths) or None)
    console.print(f"[green]✓ Committed on {state.branch or 'detached HEAD'}[/green]")


@git.command("pull")
@click.pass_context
@handles_errors("pull")
def git_pull(ctx: click.Context) -> None:
    """Pull the current branch using the configured strategy."""
    tracker = get_session(ctx).git
    console.print(f"[dim]Pulling ({tracker.pull_strategy})...[/dim]")
    console.print(render(tracker.pull()))


@git.command("push")
@click.pass_context
@handles_errors("push")
def git_push(ctx: click.Context) -> None:
    """Push the current branch."""
    state = get_session(ctx).git.push()
    console.print(f"[green]✓ Pushed {state.branch}[/green]")


@git.command("fetch")
@click.pass_context
@handles_errors("fetch")
def git_fetch(ctx: click.Context) -> None:
    """Update remote-tracking branches."""
    console.print(render(get_session(ctx).git.fetch()))


@git.command("stash")
@click.pass_context
@handles_errors("stash")
def git_stash(ctx: click.Context) -> None:
    """Stash local changes, including untracked files."""
    get_session(ctx).git.stash()
    console.print("[green]✓ Changes stashed[/green]")


@git.command("stash-pop")
@click.pass_context
@handles_errors("stash pop")
def git_stash_pop(ctx: click.Context) -> None:
    """Apply and drop the most recent stash."""
    console.print(render(get_session(ctx).git.stash_pop()))


@git.command("log")
@click.option("--count", "-n", type=int, help="Number of commits (default: git.log_limit)")
@click.option("--files", "sha", help="Show the files changed by this commit instead")
@click.pass_context
@handles_errors("log")
def git_log(ctx: click.Context, count: int | None, sha: str | None) -> None:
    """Show recent commits on the current branch."""
    session = get_session(ctx)
    tracker = session.git

    if sha:
        for change in tracker.commit_files(sha):
            console.print(f"  [dim]{change.status:<9}[/dim] {change.path}")
        return

    commits = tracker.log(count or session.config.git.log_limit)
    if not commits:
        console.print("[dim]No commits yet[/dim]")
        return
    for commit in commits:
        console.print(
            f"[yellow]{commit.short_sha}[/yellow] {commit.message} "
            f"[dim]({commit.author}, {commit.date})[/dim]"
        )


# =============================================================================
# Remote
# =============================================================================


@main.group()
def remote() -> None:
    """List and clone projects from a GitLab server."""
    pass


@remote.command("login")
@click.option("--url", "base_url", prompt="GitLab URL", help="Server URL")
@click.option("--token", prompt=True, hide_input=True, help="Personal access token")
@click.option("--verify/--no-verify", default=True, help="Check the credentials by listing projects")
@click.pass_context
@handles_errors("remote login")
def remote_login(ctx: click.Context, base_url: str, token: str, verify: bool) -> None:
    """Save remote credentials to the config file."""
    session = get_session(ctx)
    session.remote.update_credentials(base_url, token)

    if verify:
        found = session.remote.refresh_projects()
        console.print(f"[green]✓ Authenticated, {len(found)} projects accessible[/green]")

    if update_config({"remote.base_url": base_url, "remote.token": token}):
        console.print(f"[dim]Saved to {get_config_path()}[/dim]")
    else:
        console.print("[red]Failed to save config[/red]")


@remote.command("projects")
@click.option("--search", "-s", help="Filter by name")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@handles_errors("listing remote projects")
def remote_projects(ctx: click.Context, search: str | None, as_json: bool) -> None:
    """List projects you are a member of."""
    session = get_session(ctx)
    found = session.remote.refresh_projects(search or session.config.remote.search or None)
    if as_json:
        click.echo(json.dumps([p.to_dict() for p in found], indent=2))
        return
    console.print(render(session.remote))


@remote.command("branches")
@click.argument("project_id", type=int)
@click.pass_context
@handles_errors("listing remote branches")
def remote_branches(ctx: click.Context, project_id: int) -> None:
    """List branches of remote project PROJECT_ID."""
    for name in get_session(ctx).remote.select_project(project_id):
        console.print(f"  {name}")


@remote.command("clone")
@click.argument("project_id", type=int)
@click.argument("destination", required=False, type=click.Path(path_type=Path))
@click.option("--branch", "-b", help="Branch to check out")
@click.option("--activate", is_flag=True, help="Track the new clone in 'monodeck git'")
@click.pass_context
@handles_errors("clone")
def remote_clone(
    ctx: click.Context,
    project_id: int,
    destination: Path | None,
    branch: str | None,
    activate: bool,
) -> None:
    """Clone PROJECT_ID into DESTINATION (default: <root>/<project>)."""
    session = get_session(ctx)
    with console.status("[cyan]Cloning...[/cyan]"):
        path = session.clone(project_id, destination, branch, activate=activate)
    console.print(f"[green]✓ Cloned into {path}[/green]")
    console.print(f"[dim]{len(session.projects)} projects in workspace[/dim]")


# =============================================================================
# Configuration
# =============================================================================


@main.group()
def config() -> None:
    """View and manage monodeck configuration.

    monodeck uses a single configuration file at ~/.monodeck/config.toml
    (override with MONODECK_CONFIG).

    Configuration priority:
    1. Environment variables (highest)
    2. Config file
    3. Defaults (lowest)
    """
    pass


@config.command("show")
@click.option("--secrets", "-s", is_flag=True, help="Show the access token unmasked")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
def config_show(secrets: bool, as_json: bool) -> None:
    """Show current configuration."""
    current = get_config()
    if as_json:
        click.echo(json.dumps(current.to_dict(include_secrets=secrets), indent=2, default=str))
        return
    console.print(format_config_for_display(current, show_secrets=secrets), markup=False)


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a configuration value.

    \b
    Examples:
        monodeck config set runner.grace_period 5
        monodeck config set git.pull_strategy rebase
        monodeck config set workspace.ignore_dirs node_modules,dist
    """
    if MonodeckConfig().set(key, value):
        if update_config({key: value}):
            console.print(f"[green]✓ Set {key} = {get_config().get(key)}[/green]")
        else:
            console.print("[red]Failed to save config[/red]")
            raise SystemExit(1)
    else:
        console.print(f"[red]Failed to set {key}[/red]")
        console.print("[dim]Use 'monodeck config keys' to list available keys[/dim]")
        raise SystemExit(1)


@config.command("keys")
def config_keys() -> None:
    """List all available configuration keys."""
    current_section = None
    for key in list_config_keys():
        section = key.split(".")[0]
        if section != current_section:
            current_section = section
            console.print(f"[cyan]\\[{section}][/cyan]")
        console.print(f"  {key}")


@config.command("path")
def config_path() -> None:
    """Print the configuration file path."""
    click.echo(str(get_config_path()))


if __name__ == "__main__":
    main()
