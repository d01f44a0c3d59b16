"""Git working-tree state machine.

:class:`GitStateTracker` observes one working tree and performs the user
actions (switch branch, commit, pull, push and a few extras). Every mutating
action moves the state to ``OPERATION_IN_PROGRESS`` and ends with a refresh;
a failure leaves ``ERROR`` with the refreshed branch and file list.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TypeVar

from ..exceptions import (
    EmptyMessage,
    GitOperationError,
    GitTimeout,
    NotARepositoryError,
    NothingToCommit,
    OperationInProgress,
    RemoteError,
    UncommittedChangesConflict,
)
from . import commands
from .models import CommitFileChange, CommitInfo, GitState, GitStateKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

PULL_FLAGS = {
    "ff-only": "--ff-only",
    "merge": "--no-rebase",
    "rebase": "--rebase",
}

_CHECKOUT_CONFLICT_MARKERS = (
    "would be overwritten by checkout",
    "Please commit your changes or stash them",
)


def _validate_ref(name: str) -> str:
    name = name.strip()
    if not name or name.startswith("-"):
        raise ValueError(f"Invalid branch name: {name!r}")
    return name


class GitStateTracker:
    """Track and act on the git working tree at ``repo_path``."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        remote: str = "origin",
        pull_strategy: str = "ff-only",
        timeout: float | None = 300,
    ):
        if pull_strategy not in PULL_FLAGS:
            raise ValueError(f"Unknown pull strategy: {pull_strategy}")
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.pull_strategy = pull_strategy
        self.timeout = timeout
        self.pending_message = ""

        self._state = GitState(kind=GitStateKind.NOT_A_REPOSITORY)
        self._state_lock = threading.Lock()
        self._op_lock = threading.Lock()

    @property
    def state(self) -> GitState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: GitState) -> GitState:
        with self._state_lock:
            self._state = state
        return state

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def _observe(self) -> GitState:
        if not commands.is_work_tree(self.repo_path):
            return GitState(kind=GitStateKind.NOT_A_REPOSITORY)

        branch = commands.current_branch(self.repo_path)
        (ahead, behind), entries = commands.status(self.repo_path)
        files = [entry.path for entry in entries]
        untracked = [entry.path for entry in entries if entry.is_untracked]

        return GitState(
            kind=GitStateKind.DIRTY if files else GitStateKind.CLEAN,
            branch=branch,
            files=files,
            untracked=untracked,
            ahead=ahead,
            behind=behind,
        )

    def refresh(self) -> GitState:
        """Re-read branch and modified files.

        While a mutating action runs, the in-progress state is kept and
        returned unchanged.
        """
        if self._op_lock.locked():
            return self.state
        try:
            state = self._observe()
        except GitOperationError as e:
            logger.warning(f"Git refresh failed for {self.repo_path}: {e}")
            state = GitState(kind=GitStateKind.ERROR, error=str(e))
        return self._set_state(state)

    def _require_repository(self) -> GitState:
        state = self._observe()
        if state.kind is GitStateKind.NOT_A_REPOSITORY:
            raise NotARepositoryError(self.repo_path)
        return state

    # -------------------------------------------------------------------------
    # Mutating actions
    # -------------------------------------------------------------------------

    def _mutate(self, operation: str, action: Callable[[], T]) -> T:
        """Run ``action`` under the operation lock with state bookkeeping."""
        if not self._op_lock.acquire(blocking=False):
            raise OperationInProgress(f"git {self.state.operation or 'operation'}")

        try:
            previous = self.state
            self._set_state(
                previous.model_copy(
                    update={
                        "kind": GitStateKind.OPERATION_IN_PROGRESS,
                        "operation": operation,
                        "error": None,
                    }
                )
            )
            logger.info(f"git {operation} in {self.repo_path}")

            try:
                result = action()
            except GitOperationError as e:
                self._set_state(self._failed_state(e))
                raise

            try:
                self._set_state(self._observe())
            except GitOperationError as e:
                self._set_state(self._failed_state(e))
                raise
            return result
        finally:
            self._op_lock.release()

    def _failed_state(self, error: GitOperationError) -> GitState:
        try:
            observed = self._observe()
        except GitOperationError as e:
            logger.debug(f"Refresh after failed git action also failed: {e}")
            observed = GitState(kind=GitStateKind.ERROR)

        if observed.kind is GitStateKind.NOT_A_REPOSITORY:
            return observed.model_copy(update={"error": str(error)})
        return observed.model_copy(update={"kind": GitStateKind.ERROR, "error": str(error)})

    def switch_branch(self, name: str) -> GitState:
        """Check out an existing branch.

        Local changes are never stashed automatically.

        Raises:
            UncommittedChangesConflict: Local changes would be overwritten.
            GitOperationError: Unknown branch or other checkout failure.
        """
        name = _validate_ref(name)

        def action() -> None:
            self._require_repository()
            cp = commands.run_git(["checkout", name, "--"], cwd=self.repo_path, check=False)
            if cp.returncode != 0:
                stderr = cp.stderr.strip()
                if any(marker in stderr for marker in _CHECKOUT_CONFLICT_MARKERS):
                    raise UncommittedChangesConflict(name, commands.parse_conflicting_files(cp.stderr))
                raise GitOperationError("switch", stderr or f"exit code {cp.returncode}")

        self._mutate("switch", action)
        return self.state

    def checkout_remote_branch(self, name: str) -> GitState:
        """Check out ``name``, creating a local tracking branch from the remote if needed."""
        name = _validate_ref(name)

        def action() -> None:
            self._require_repository()
            if name in commands.local_branches(self.repo_path):
                args = ["checkout", name, "--"]
            else:
                args = ["checkout", "--track", "-b", name, f"{self.remote}/{name}", "--"]
            cp = commands.run_git(args, cwd=self.repo_path, check=False)
            if cp.returncode != 0:
                stderr = cp.stderr.strip()
                if any(marker in stderr for marker in _CHECKOUT_CONFLICT_MARKERS):
                    raise UncommittedChangesConflict(name, commands.parse_conflicting_files(cp.stderr))
                raise GitOperationError("switch", stderr or f"exit code {cp.returncode}")

        self._mutate("switch", action)
        return self.state

    def commit(self, message: str | None = None, paths: Sequence[str] | None = None) -> GitState:
        """Stage and commit changes.

        Args:
            message: Commit message. Defaults to ``pending_message``.
            paths: Files to stage. Stages everything (``git add -A``) when omitted.

        Raises:
            NothingToCommit: The working tree has no modified files.
            EmptyMessage: The message is empty or whitespace.
        """
        text = self.pending_message if message is None else message

        def action() -> None:
            state = self._require_repository()
            if not state.files:
                raise NothingToCommit()
            if not text.strip():
                raise EmptyMessage()

            if paths:
                commands.run_git(["add", "--", *paths], cwd=self.repo_path)
            else:
                commands.run_git(["add", "-A"], cwd=self.repo_path)

            cp = commands.run_git(["commit", "-m", text], cwd=self.repo_path, check=False)
            if cp.returncode != 0:
                output = f"{cp.stdout}\n{cp.stderr}"
                if "nothing to commit" in output or "no changes added to commit" in output:
                    raise NothingToCommit()
                raise GitOperationError("commit", cp.stderr.strip() or cp.stdout.strip())

        self._mutate("commit", action)
        self.pending_message = ""
        return self.state

    def _remote_action(self, operation: str, args: list[str]) -> None:
        state = self._require_repository()
        if state.branch is None:
            raise GitOperationError(operation, "HEAD is detached")
        cp = self._run_network(operation, args + [self.remote, state.branch])
        if cp.returncode != 0:
            detail = cp.stderr.strip() or cp.stdout.strip() or f"exit code {cp.returncode}"
            raise RemoteError(operation, detail)

    def _run_network(self, operation: str, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return commands.run_git(args, cwd=self.repo_path, check=False, timeout=self.timeout)
        except GitTimeout as e:
            raise RemoteError(operation, e.detail) from e

    def pull(self) -> GitState:
        """Pull the current branch from the remote using the configured strategy.

        Conflicts are not resolved automatically.

        Raises:
            RemoteError: Network failure, non-fast-forward, or merge conflict.
        """
        flag = PULL_FLAGS[self.pull_strategy]
        self._mutate("pull", lambda: self._remote_action("pull", ["pull", flag]))
        return self.state

    def push(self) -> GitState:
        """Push the current branch to the remote.

        Raises:
            RemoteError: Network failure or rejected push.
        """
        self._mutate("push", lambda: self._remote_action("push", ["push"]))
        return self.state

    def fetch(self) -> GitState:
        """Update remote-tracking refs."""

        def action() -> None:
            self._require_repository()
            cp = self._run_network("fetch", ["fetch", "--prune", self.remote])
            if cp.returncode != 0:
                raise RemoteError("fetch", cp.stderr.strip() or f"exit code {cp.returncode}")

        self._mutate("fetch", action)
        return self.state

    def stash(self) -> GitState:
        """Stash local changes, including untracked files."""

        def action() -> None:
            state = self._require_repository()
            if not state.files:
                raise NothingToCommit()
            commands.run_git(["stash", "push", "--include-untracked"], cwd=self.repo_path)

        self._mutate("stash", action)
        return self.state

    def stash_pop(self) -> GitState:
        """Apply and drop the most recent stash."""

        def action() -> None:
            self._require_repository()
            commands.run_git(["stash", "pop"], cwd=self.repo_path)

        self._mutate("stash", action)
        return self.state

    # -------------------------------------------------------------------------
    # Read-only queries
    # -------------------------------------------------------------------------

    def branches(self) -> list[str]:
        self._require_repository()
        return commands.local_branches(self.repo_path)

    def remote_branches(self) -> list[str]:
        self._require_repository()
        return commands.remote_branches(self.repo_path, self.remote)

    def log(self, max_count: int = 20) -> list[CommitInfo]:
        self._require_repository()
        return commands.log(self.repo_path, max_count)

    def commit_files(self, sha: str) -> list[CommitFileChange]:
        self._require_repository()
        return commands.commit_files(self.repo_path, _validate_ref(sha))
