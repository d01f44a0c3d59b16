"""Registry of live script runs and batches."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from ..workspace.discovery import Project
from .batch import BatchOrchestrator, BatchRun
from .models import RunMode
from .process import ScriptRun

logger = logging.getLogger(__name__)

RunKey = tuple[Path, str]


class RunManager:
    """Track ScriptRuns by (project path, script) and BatchRuns by id.

    Starting a script for a pair that already has a run supersedes it: a
    still-running predecessor is cancelled first. Subscribers receive
    ``(event, id, data)`` for ``started``, ``finished``, ``cancelled``,
    ``dismissed``, ``batch_started`` and ``batch_finished``.
    """

    def __init__(self, orchestrator: BatchOrchestrator | None = None):
        self.orchestrator = orchestrator or BatchOrchestrator()
        self._runs: dict[RunKey, ScriptRun] = {}
        self._batches: dict[str, BatchRun] = {}
        self._callbacks: list[Callable] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> None:
        """Subscribe to run events."""
        self._callbacks.append(callback)

    def notify(self, event: str, run_id: str, **data) -> None:
        """Notify subscribers of event."""
        for cb in self._callbacks:
            try:
                cb(event, run_id, data)
            except Exception:
                logger.exception(f"Subscriber failed on '{event}'")

    # -------------------------------------------------------------------------
    # Single runs
    # -------------------------------------------------------------------------

    def start(
        self,
        project: Project,
        script: str,
        env: Mapping[str, str] | None = None,
    ) -> ScriptRun:
        """Start ``script`` in ``project``, superseding any previous run of the pair.

        Raises:
            ScriptNotFound: The project does not declare the script.
            SpawnError: The process could not be started.
        """
        key = (project.path, script)
        with self._lock:
            previous = self._runs.pop(key, None)
        if previous is not None and not previous.is_terminal:
            logger.info(f"Superseding run {previous.run_id} of {project.name}:{script}")
            previous.cancel()
            self.notify("cancelled", previous.run_id, project=project.name, script=script)

        run = self.orchestrator.start_script(project, script, env)
        with self._lock:
            self._runs[key] = run

        self.notify("started", run.run_id, project=project.name, script=script, pid=run.pid)
        run.on_exit(self._on_run_exit)
        return run

    def _on_run_exit(self, run: ScriptRun) -> None:
        self.notify(
            "finished",
            run.run_id,
            project=run.project,
            script=run.script,
            status=run.status.value,
            exit_code=run.exit_code,
        )

    def get(self, project: Project, script: str) -> ScriptRun | None:
        with self._lock:
            return self._runs.get((project.path, script))

    def find(self, run_id: str) -> ScriptRun | None:
        """Look a run up by id, including runs owned by batches."""
        with self._lock:
            for run in self._runs.values():
                if run.run_id == run_id:
                    return run
            batches = list(self._batches.values())
        for batch in batches:
            for run in batch.runs():
                if run.run_id == run_id:
                    return run
        return None

    def cancel(self, project: Project, script: str) -> bool:
        run = self.get(project, script)
        if run is None or run.is_terminal:
            return False
        run.cancel()
        self.notify("cancelled", run.run_id, project=project.name, script=script)
        return True

    def dismiss(self, project: Project, script: str) -> bool:
        """Forget a run. A running one is cancelled first."""
        with self._lock:
            run = self._runs.pop((project.path, script), None)
        if run is None:
            return False
        if not run.is_terminal:
            run.cancel()
        self.notify("dismissed", run.run_id, project=project.name, script=script)
        return True

    @property
    def runs(self) -> list[ScriptRun]:
        with self._lock:
            return list(self._runs.values())

    @property
    def running(self) -> list[ScriptRun]:
        return [run for run in self.runs if not run.is_terminal]

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def run_all(
        self,
        projects: Sequence[Project],
        script: str,
        mode: RunMode | str = RunMode.PARALLEL,
        env: Mapping[str, str] | None = None,
    ) -> BatchRun:
        batch = self.orchestrator.run_all(projects, script, mode, env)
        with self._lock:
            self._batches[batch.batch_id] = batch
        self.notify(
            "batch_started",
            batch.batch_id,
            script=script,
            mode=batch.mode.value,
            projects=len(projects),
        )
        batch.on_complete(self._on_batch_complete)
        return batch

    def _on_batch_complete(self, batch: BatchRun) -> None:
        self.notify("batch_finished", batch.batch_id, status=batch.status.value)

    def get_batch(self, batch_id: str) -> BatchRun | None:
        with self._lock:
            return self._batches.get(batch_id)

    def cancel_batch(self, batch_id: str) -> bool:
        batch = self.get_batch(batch_id)
        if batch is None or batch.is_terminal:
            return False
        batch.cancel()
        return True

    def dismiss_batch(self, batch_id: str) -> bool:
        with self._lock:
            batch = self._batches.pop(batch_id, None)
        if batch is None:
            return False
        if not batch.is_terminal:
            batch.cancel()
        self.notify("dismissed", batch_id)
        return True

    @property
    def batches(self) -> list[BatchRun]:
        with self._lock:
            return list(self._batches.values())

    def cancel_all(self) -> None:
        """Cancel every live run and batch."""
        for batch in self.batches:
            batch.cancel()
        for run in self.running:
            run.cancel()

    @property
    def count(self) -> int:
        """Count of running single runs."""
        return len(self.running)
