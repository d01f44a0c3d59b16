"""The workspace session: one object that owns all engine state.

Holds the discovered projects, the run registry, the environment store, the
git tracker and the remote session for one workspace root, and is passed
explicitly to whoever needs them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from ..config import MonodeckConfig, get_config
from ..exceptions import DiscoveryError, ScriptNotFound
from ..git.tracker import GitStateTracker
from ..remote.session import RemoteSession
from ..runner.batch import BatchOrchestrator, BatchRun
from ..runner.launcher import Launcher, PackageManagerLauncher
from ..runner.manager import RunManager
from ..runner.models import RunMode
from ..runner.process import ProcessRunner, ScriptRun
from .discovery import DiscoveryResult, Project, discover_projects, find_project
from .environment import EnvironmentStore

logger = logging.getLogger(__name__)


class WorkspaceSession:
    """Engine state for one monorepo root."""

    def __init__(
        self,
        root: Path | str | None = None,
        *,
        config: MonodeckConfig | None = None,
        launcher: Launcher | None = None,
        remote: RemoteSession | None = None,
    ):
        self.config = config or get_config()
        self.root = Path(root).expanduser().resolve() if root else self.config.workspace.root_path
        self.active_environment = self.config.workspace.active_environment

        self.projects: list[Project] = []
        self.warnings: list[str] = []

        runner = ProcessRunner(grace_period=self.config.runner.grace_period)
        self.launcher = launcher or PackageManagerLauncher(self.config.runner.package_manager)
        self.runs = RunManager(BatchOrchestrator(runner, self.launcher))
        self.environments = EnvironmentStore(self.root)
        self.git = self._make_tracker(self.root)
        self.remote = remote or RemoteSession(
            self.config.remote.base_url,
            self.config.remote.token,
            timeout=self.config.remote.timeout,
            clone_timeout=self.config.git.timeout,
        )

    def _make_tracker(self, path: Path) -> GitStateTracker:
        return GitStateTracker(
            path,
            remote=self.config.git.remote,
            pull_strategy=self.config.git.pull_strategy,
            timeout=self.config.git.timeout,
        )

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def rescan(self) -> DiscoveryResult:
        """Re-discover projects under the root.

        On failure the previous project list is kept and the error propagates.

        Raises:
            DiscoveryError: The root cannot be scanned.
        """
        settings = self.config.workspace
        try:
            result = discover_projects(
                self.root,
                manifest_name=settings.manifest_name,
                max_depth=settings.max_depth,
                ignore_dirs=settings.ignore_dirs,
                include_root=settings.include_root,
            )
        except DiscoveryError:
            logger.warning(f"Rescan of {self.root} failed, keeping {len(self.projects)} projects")
            raise

        self.projects = result.projects
        self.warnings = result.warnings
        return result

    def set_root(self, root: Path | str) -> DiscoveryResult:
        """Switch to a different workspace root and scan it.

        Runs from the old root are cancelled. If the new root cannot be
        scanned nothing changes.
        """
        new_root = Path(root).expanduser().resolve()
        settings = self.config.workspace
        result = discover_projects(
            new_root,
            manifest_name=settings.manifest_name,
            max_depth=settings.max_depth,
            ignore_dirs=settings.ignore_dirs,
            include_root=settings.include_root,
        )

        self.runs.cancel_all()
        self.root = new_root
        self.projects = result.projects
        self.warnings = result.warnings
        self.environments = EnvironmentStore(new_root)
        self.git = self._make_tracker(new_root)
        logger.info(f"Workspace root is now {new_root}")
        return result

    def project(self, name_or_path: str) -> Project | None:
        return find_project(self.projects, name_or_path)

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    def set_active_environment(self, label: str) -> None:
        self.environments.path_for(label)
        self.active_environment = label

    def active_env(self) -> dict[str, str]:
        """Variables of the active environment, overlaid on every run."""
        return self.environments.get(self.active_environment).as_dict()

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def run_script(self, project: Project | str, script: str) -> ScriptRun:
        """Start one script with the active environment.

        Raises:
            ScriptNotFound: Unknown project or undeclared script.
            SpawnError: The process could not be started.
        """
        target = self.project(project) if isinstance(project, str) else project
        if target is None:
            raise ScriptNotFound(str(project), script)
        return self.runs.start(target, script, self.active_env())

    def run_all(
        self,
        script: str,
        mode: RunMode | str | None = None,
        projects: Sequence[Project] | None = None,
    ) -> BatchRun:
        """Run ``script`` across ``projects`` (default: every discovered project)."""
        selected = list(self.projects if projects is None else projects)
        return self.runs.run_all(
            selected,
            script,
            mode or self.config.runner.default_mode,
            self.active_env(),
        )

    # -------------------------------------------------------------------------
    # Remote
    # -------------------------------------------------------------------------

    def clone(
        self,
        project_id: int,
        destination: Path | str | None = None,
        branch: str | None = None,
        *,
        activate: bool = False,
    ) -> Path:
        """Clone a remote project and re-discover projects.

        Args:
            project_id: Remote project id.
            destination: Target directory. Defaults to ``<root>/<project slug>``.
            branch: Branch to check out instead of the default.
            activate: Point the git tracker at the new clone.
        """
        if destination is None:
            remote_project = next(
                (p for p in self.remote.projects if p.id == project_id), None
            )
            if remote_project is None:
                remote_project = self.remote.get_project(project_id)
            destination = self.root / remote_project.slug

        path = self.remote.clone(project_id, destination, branch)

        try:
            self.rescan()
        except DiscoveryError as e:
            logger.warning(f"Rescan after clone failed: {e}")

        if activate:
            self.git = self._make_tracker(path)
            self.git.refresh()
        return path

    def shutdown(self) -> None:
        """Cancel everything still running."""
        self.runs.cancel_all()
