"""Data models for script runs and batches."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from rich.text import Text


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ConstituentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self not in (ConstituentStatus.PENDING, ConstituentStatus.RUNNING)


class BatchStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    CANCELLED = "cancelled"


class OutputLine(BaseModel):
    """One captured line of process output."""

    model_config = ConfigDict(frozen=True)

    seq: int
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def plain(self) -> str:
        """The line with ANSI escape sequences removed."""
        return Text.from_ansi(self.text).plain


class RunPoll(BaseModel):
    """Result of a non-blocking poll of a ScriptRun."""

    model_config = ConfigDict(frozen=True)

    status: RunStatus
    exit_code: int | None = None
    lines: list[OutputLine] = Field(default_factory=list)


class ScriptRunSnapshot(BaseModel):
    """Read-only view of a ScriptRun."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    project: str
    script: str
    command: list[str]
    status: RunStatus
    exit_code: int | None = None
    started_at: datetime
    ended_at: datetime | None = None
    line_count: int = 0

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class ConstituentSnapshot(BaseModel):
    """Read-only view of one project's entry in a batch."""

    model_config = ConfigDict(frozen=True)

    project: str
    project_path: str
    status: ConstituentStatus
    run_id: str | None = None
    exit_code: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class BatchRunSnapshot(BaseModel):
    """Read-only view of a batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    script: str
    mode: RunMode
    status: BatchStatus
    constituents: list[ConstituentSnapshot] = Field(default_factory=list)
    started_at: datetime
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not BatchStatus.RUNNING

    def counts(self) -> dict[ConstituentStatus, int]:
        result = {status: 0 for status in ConstituentStatus}
        for constituent in self.constituents:
            result[constituent.status] += 1
        return result
