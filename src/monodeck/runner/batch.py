"""Run one script across many projects, in parallel or in sequence.

A :class:`BatchRun` owns one constituent per project. Per-project failures
(non-zero exit, missing script, spawn failure) are recorded on that
constituent and never stop the others.
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from ..exceptions import ScriptNotFound, SpawnError
from ..workspace.discovery import Project
from .launcher import Launcher, PackageManagerLauncher
from .models import (
    BatchRunSnapshot,
    BatchStatus,
    ConstituentSnapshot,
    ConstituentStatus,
    OutputLine,
    RunMode,
    RunStatus,
)
from .process import ProcessRunner, ScriptRun, generate_run_id

logger = logging.getLogger(__name__)

StartFn = Callable[[Project], ScriptRun]
CompleteCallback = Callable[["BatchRun"], None]

_RUN_TO_CONSTITUENT = {
    RunStatus.SUCCEEDED: ConstituentStatus.SUCCEEDED,
    RunStatus.FAILED: ConstituentStatus.FAILED,
    RunStatus.CANCELLED: ConstituentStatus.CANCELLED,
}


@dataclass
class Constituent:
    """Mutable per-project state, guarded by the owning batch's lock."""

    project: Project
    status: ConstituentStatus = ConstituentStatus.PENDING
    run: ScriptRun | None = None
    exit_code: int | None = None
    error: Exception | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def snapshot(self) -> ConstituentSnapshot:
        return ConstituentSnapshot(
            project=self.project.name,
            project_path=str(self.project.path),
            status=self.status,
            run_id=self.run.run_id if self.run else None,
            exit_code=self.exit_code,
            error=str(self.error) if self.error else None,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


class BatchRun:
    """A script run across a set of projects."""

    def __init__(
        self,
        batch_id: str,
        script: str,
        mode: RunMode,
        projects: Sequence[Project],
        start_fn: StartFn,
    ):
        self.batch_id = batch_id
        self.script = script
        self.mode = mode
        self.started_at = datetime.now()

        self._start_fn = start_fn
        self._constituents = [Constituent(project=p) for p in projects]
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._cancelled = False
        self._status = BatchStatus.RUNNING
        self._ended_at: datetime | None = None
        self._complete_callbacks: list[CompleteCallback] = []

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def status(self) -> BatchStatus:
        with self._lock:
            return self._status

    @property
    def is_terminal(self) -> bool:
        return self._done.is_set()

    def runs(self) -> list[ScriptRun]:
        """ScriptRuns started so far, in project order."""
        with self._lock:
            return [c.run for c in self._constituents if c.run is not None]

    def snapshot(self) -> BatchRunSnapshot:
        with self._lock:
            return BatchRunSnapshot(
                batch_id=self.batch_id,
                script=self.script,
                mode=self.mode,
                status=self._status,
                constituents=[c.snapshot() for c in self._constituents],
                started_at=self.started_at,
                ended_at=self._ended_at,
            )

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every constituent is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    def on_complete(self, callback: CompleteCallback) -> None:
        """Call ``callback(batch)`` once the batch is terminal (immediately if it is)."""
        with self._lock:
            if not self._done.is_set():
                self._complete_callbacks.append(callback)
                return
        self._invoke(callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def begin(self) -> None:
        """Start the batch. Called once by the orchestrator."""
        logger.info(
            f"Batch {self.batch_id}: '{self.script}' across "
            f"{len(self._constituents)} projects ({self.mode.value})"
        )
        if self.mode is RunMode.PARALLEL:
            for constituent in self._constituents:
                with self._lock:
                    if self._cancelled:
                        break
                    self._claim(constituent)
                self._launch(constituent)
        else:
            self._advance()
        self._check_complete()

    def cancel(self) -> None:
        """Cancel running constituents and skip pending ones. Idempotent."""
        with self._lock:
            if self._done.is_set() or self._cancelled:
                return
            self._cancelled = True
            now = datetime.now()
            running = []
            for constituent in self._constituents:
                if constituent.status is ConstituentStatus.PENDING:
                    constituent.status = ConstituentStatus.CANCELLED
                    constituent.ended_at = now
                elif constituent.status is ConstituentStatus.RUNNING and constituent.run:
                    running.append(constituent.run)
            callbacks = self._settle()

        logger.info(f"Batch {self.batch_id}: cancelling {len(running)} running")
        for run in running:
            run.cancel()
        self._notify(callbacks)

    def _claim(self, constituent: Constituent) -> None:
        # Caller holds the lock
        constituent.status = ConstituentStatus.RUNNING
        constituent.started_at = datetime.now()

    def _advance(self) -> None:
        """Start the next pending constituent in sequential mode."""
        while True:
            with self._lock:
                if self._cancelled:
                    return
                if any(c.status is ConstituentStatus.RUNNING for c in self._constituents):
                    return
                constituent = next(
                    (c for c in self._constituents if c.status is ConstituentStatus.PENDING),
                    None,
                )
                if constituent is None:
                    return
                self._claim(constituent)

            if self._launch(constituent):
                return

    def _launch(self, constituent: Constituent) -> bool:
        """Spawn the constituent's run. Returns False if it could not start."""
        try:
            run = self._start_fn(constituent.project)
        except (ScriptNotFound, SpawnError) as e:
            logger.warning(f"Batch {self.batch_id}: {constituent.project.name}: {e}")
            with self._lock:
                constituent.status = ConstituentStatus.ERROR
                constituent.error = e
                constituent.ended_at = datetime.now()
                callbacks = self._settle()
            self._notify(callbacks)
            return False

        with self._lock:
            constituent.run = run
            cancelled = self._cancelled

        if cancelled:
            run.cancel()
        run.on_exit(partial(self._on_run_exit, constituent))
        return True

    def _on_run_exit(self, constituent: Constituent, run: ScriptRun) -> None:
        with self._lock:
            constituent.status = _RUN_TO_CONSTITUENT[run.status]
            constituent.exit_code = run.exit_code
            constituent.ended_at = run.ended_at or datetime.now()
            callbacks = self._settle()
        self._notify(callbacks)

        if self.mode is RunMode.SEQUENTIAL:
            self._advance()

    def _check_complete(self) -> None:
        with self._lock:
            callbacks = self._settle()
        self._notify(callbacks)

    def _settle(self) -> list[CompleteCallback] | None:
        """Fix the batch status once every constituent is terminal.

        Caller holds the lock. Returns the callbacks to notify, or None if the
        batch is still running or was already settled.
        """
        if self._done.is_set():
            return None
        if not all(c.status.is_terminal for c in self._constituents):
            return None
        if self._cancelled:
            self._status = BatchStatus.CANCELLED
        elif all(c.status is ConstituentStatus.SUCCEEDED for c in self._constituents):
            self._status = BatchStatus.SUCCEEDED
        else:
            self._status = BatchStatus.COMPLETED_WITH_FAILURES
        self._ended_at = datetime.now()
        callbacks = list(self._complete_callbacks)
        self._complete_callbacks.clear()
        self._done.set()
        return callbacks

    def _notify(self, callbacks: list[CompleteCallback] | None) -> None:
        if callbacks is None:
            return
        logger.info(f"Batch {self.batch_id} finished: {self._status.value}")
        for callback in callbacks:
            self._invoke(callback)

    def _invoke(self, callback: CompleteCallback) -> None:
        try:
            callback(self)
        except Exception:
            logger.exception(f"Completion callback failed for batch {self.batch_id}")


def _echo_line(prefix: str, run: ScriptRun, line: OutputLine) -> None:
    sys.stdout.write(f"[{prefix}] {line.text}\n")
    sys.stdout.flush()


class BatchOrchestrator:
    """Starts ScriptRuns for single projects and for batches."""

    def __init__(self, runner: ProcessRunner | None = None, launcher: Launcher | None = None):
        self.runner = runner or ProcessRunner()
        self.launcher = launcher or PackageManagerLauncher()

    def start_script(
        self,
        project: Project,
        script: str,
        env: Mapping[str, str] | None = None,
    ) -> ScriptRun:
        """Start one script in one project.

        Raises:
            ScriptNotFound: The project does not declare ``script``.
            SpawnError: The process could not be started.
        """
        if not project.has_script(script):
            raise ScriptNotFound(project.name, script)

        command, args = self.launcher(project, script)
        run = self.runner.start(
            project.path,
            command,
            args,
            env,
            project=project.name,
            script=script,
        )
        if getattr(self.launcher, "attach_console", False):
            run.on_line(partial(_echo_line, project.name))
        return run

    def run_all(
        self,
        projects: Sequence[Project],
        script_name: str,
        mode: RunMode | str = RunMode.PARALLEL,
        env: Mapping[str, str] | None = None,
        *,
        batch_id: str | None = None,
    ) -> BatchRun:
        """Run ``script_name`` across ``projects`` and return immediately.

        An empty selection yields a batch that is already terminal.
        """
        batch = BatchRun(
            batch_id or generate_run_id(),
            script_name,
            RunMode(mode),
            list(projects),
            lambda project: self.start_script(project, script_name, env),
        )
        batch.begin()
        return batch
