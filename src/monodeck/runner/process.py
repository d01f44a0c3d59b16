"""Process lifecycle for a single script run.

Each :class:`ScriptRun` owns one child process, started in its own process
group, plus one daemon thread that reads combined stdout/stderr line by line
into an append-only buffer.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path

from ..exceptions import SpawnError
from .models import OutputLine, RunPoll, RunStatus, ScriptRunSnapshot

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 2.0

IS_POSIX = os.name == "posix"

LineCallback = Callable[["ScriptRun", OutputLine], None]
ExitCallback = Callable[["ScriptRun"], None]


def generate_run_id() -> str:
    """Generate a short unique run id."""
    return uuid.uuid4().hex[:8]


class ScriptRun:
    """One invocation of one script in one project directory.

    Transitions from RUNNING to a terminal status exactly once. All public
    methods are safe to call from any thread and return promptly.
    """

    def __init__(
        self,
        run_id: str,
        process: subprocess.Popen,
        command: Sequence[str],
        *,
        project: str = "",
        script: str = "",
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ):
        self.run_id = run_id
        self.project = project
        self.script = script
        self.command = list(command)
        self.grace_period = grace_period
        self.started_at = datetime.now()

        self._process = process
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._lines: list[OutputLine] = []
        self._cursor = 0
        self._status = RunStatus.RUNNING
        self._exit_code: int | None = None
        self._ended_at: datetime | None = None
        self._cancel_requested = False
        self._kill_timer: threading.Timer | None = None
        self._line_callbacks: list[LineCallback] = []
        self._exit_callbacks: list[ExitCallback] = []

        self._reader = threading.Thread(
            target=self._read_output,
            name=f"monodeck-run-{run_id}",
            daemon=True,
        )
        self._reader.start()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    @property
    def exit_code(self) -> int | None:
        with self._lock:
            return self._exit_code

    @property
    def ended_at(self) -> datetime | None:
        with self._lock:
            return self._ended_at

    @property
    def is_terminal(self) -> bool:
        return self._done.is_set()

    def snapshot(self) -> ScriptRunSnapshot:
        with self._lock:
            return ScriptRunSnapshot(
                run_id=self.run_id,
                project=self.project,
                script=self.script,
                command=self.command,
                status=self._status,
                exit_code=self._exit_code,
                started_at=self.started_at,
                ended_at=self._ended_at,
                line_count=len(self._lines),
            )

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def poll(self) -> RunPoll:
        """Status plus the lines that arrived since the previous poll."""
        with self._lock:
            new_lines = self._lines[self._cursor:]
            self._cursor = len(self._lines)
            return RunPoll(status=self._status, exit_code=self._exit_code, lines=new_lines)

    def lines(self, since: int = 0) -> list[OutputLine]:
        """Buffered lines with a sequence number greater than ``since``."""
        with self._lock:
            # seq starts at 1 and has no gaps
            return self._lines[max(since, 0):]

    def output(self) -> str:
        with self._lock:
            return "\n".join(line.text for line in self._lines)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def on_line(self, callback: LineCallback) -> None:
        """Call ``callback(run, line)`` for every line appended from now on."""
        with self._lock:
            self._line_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        """Call ``callback(run)`` once the run is terminal.

        Called immediately if the run has already finished.
        """
        with self._lock:
            if not self._done.is_set():
                self._exit_callbacks.append(callback)
                return
        self._invoke(callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """Request termination. Idempotent; a no-op on a terminal run.

        Sends SIGTERM to the process group and SIGKILL after the grace period.
        """
        with self._lock:
            if self._done.is_set() or self._cancel_requested:
                return
            self._cancel_requested = True

        logger.debug(f"Cancelling run {self.run_id} (pid {self.pid})")
        self._signal(signal.SIGTERM)

        timer = threading.Timer(self.grace_period, self._force_kill)
        timer.daemon = True
        with self._lock:
            if self._done.is_set():
                return
            self._kill_timer = timer
        timer.start()

    def _force_kill(self) -> None:
        if self._done.is_set():
            return
        logger.debug(f"Run {self.run_id} ignored SIGTERM, killing")
        self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal(self, sig: int) -> None:
        try:
            if IS_POSIX:
                os.killpg(self._process.pid, sig)
            elif sig == signal.SIGTERM:
                self._process.terminate()
            else:
                self._process.kill()
        except (ProcessLookupError, PermissionError):
            # Already gone
            pass

    # -------------------------------------------------------------------------
    # Reader thread
    # -------------------------------------------------------------------------

    def _read_output(self) -> None:
        stream = self._process.stdout
        try:
            if stream is not None:
                for raw in stream:
                    self._append(raw.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.debug(f"Output stream of run {self.run_id} closed: {e}")
        finally:
            if stream is not None:
                stream.close()
            code = self._process.wait()
            self._finish(code)

    def _append(self, text: str) -> None:
        with self._lock:
            line = OutputLine(seq=len(self._lines) + 1, text=text)
            self._lines.append(line)
            callbacks = list(self._line_callbacks)
        for callback in callbacks:
            try:
                callback(self, line)
            except Exception:
                logger.exception(f"Line callback failed for run {self.run_id}")

    def _finish(self, code: int) -> None:
        with self._lock:
            if self._done.is_set():
                return
            if self._cancel_requested:
                self._status = RunStatus.CANCELLED
            elif code == 0:
                self._status = RunStatus.SUCCEEDED
            else:
                self._status = RunStatus.FAILED
            self._exit_code = code
            self._ended_at = datetime.now()
            timer = self._kill_timer
            self._kill_timer = None
            callbacks = list(self._exit_callbacks)
            self._exit_callbacks.clear()
            self._done.set()

        if timer is not None:
            timer.cancel()

        logger.debug(f"Run {self.run_id} finished: {self._status.value} (exit {code})")
        for callback in callbacks:
            self._invoke(callback)

    def _invoke(self, callback: ExitCallback) -> None:
        try:
            callback(self)
        except Exception:
            logger.exception(f"Exit callback failed for run {self.run_id}")


class ProcessRunner:
    """Spawns external processes as :class:`ScriptRun` objects."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        self.grace_period = grace_period

    def start(
        self,
        working_dir: Path | str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        inherit_env: bool = True,
        project: str = "",
        script: str = "",
    ) -> ScriptRun:
        """Spawn ``command args...`` in ``working_dir`` and return immediately.

        Args:
            working_dir: Directory the process runs in.
            command: Executable name or path, resolved against PATH.
            args: Arguments passed to the executable.
            env: Variables overlaid on the environment.
            inherit_env: Start from the parent's environment when True.
            project: Project label recorded on the run.
            script: Script name recorded on the run.

        Raises:
            SpawnError: The executable cannot be resolved, the working
                directory is missing, or the OS refuses to start the process.
        """
        cwd = Path(working_dir)
        if not cwd.is_dir():
            raise SpawnError(command, f"working directory does not exist: {cwd}")

        child_env = dict(os.environ) if inherit_env else {}
        if env:
            child_env.update(env)

        executable = shutil.which(command, path=child_env.get("PATH", os.defpath))
        if executable is None:
            raise SpawnError(command, "executable not found or not executable")

        argv = [executable, *args]
        popen_kwargs: dict = {}
        if IS_POSIX:
            popen_kwargs["start_new_session"] = True
        else:
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)

        try:
            process = subprocess.Popen(
                argv,
                cwd=cwd,
                env=child_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **popen_kwargs,
            )
        except OSError as e:
            raise SpawnError(command, e.strerror or str(e)) from e

        run = ScriptRun(
            generate_run_id(),
            process,
            [command, *args],
            project=project,
            script=script,
            grace_period=self.grace_period,
        )
        logger.info(f"Started run {run.run_id}: {' '.join(run.command)} in {cwd} (pid {run.pid})")
        return run
