"""Build the command that runs a named script for a project."""

from __future__ import annotations

from collections.abc import Callable

from ..workspace.discovery import Project

# (command, args)
LaunchCommand = tuple[str, list[str]]
Launcher = Callable[[Project, str], LaunchCommand]

SUPPORTED_MANAGERS = ("npm", "yarn", "pnpm")


def script_command(manager: str, script: str) -> LaunchCommand:
    """Argv for running ``script`` with the given package manager."""
    if manager == "npm":
        return "npm", ["run", script]
    if manager in ("yarn", "pnpm"):
        return manager, [script]
    raise ValueError(f"Unsupported package manager: {manager}")


class PackageManagerLauncher:
    """Default launcher: runs scripts through npm, yarn or pnpm.

    Attributes:
        package_manager: ``auto`` picks the manager detected from lock files
            (falling back to npm); any other value forces that manager.
        attach_console: Mirror output to the parent's stdout. Presentation
            only; runs are captured either way.
    """

    def __init__(self, package_manager: str = "auto", attach_console: bool = False):
        if package_manager != "auto" and package_manager not in SUPPORTED_MANAGERS:
            raise ValueError(f"Unsupported package manager: {package_manager}")
        self.package_manager = package_manager
        self.attach_console = attach_console

    def manager_for(self, project: Project) -> str:
        if self.package_manager != "auto":
            return self.package_manager
        return project.package_manager or "npm"

    def __call__(self, project: Project, script: str) -> LaunchCommand:
        return script_command(self.manager_for(project), script)
