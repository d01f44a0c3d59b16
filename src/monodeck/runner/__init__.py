"""Script execution: single runs, batches and the run registry."""

from .batch import BatchOrchestrator, BatchRun
from .launcher import PackageManagerLauncher, script_command
from .manager import RunManager
from .models import (
    BatchRunSnapshot,
    BatchStatus,
    ConstituentSnapshot,
    ConstituentStatus,
    OutputLine,
    RunMode,
    RunPoll,
    RunStatus,
    ScriptRunSnapshot,
)
from .process import ProcessRunner, ScriptRun

__all__ = [
    "BatchOrchestrator",
    "BatchRun",
    "BatchRunSnapshot",
    "BatchStatus",
    "ConstituentSnapshot",
    "ConstituentStatus",
    "OutputLine",
    "PackageManagerLauncher",
    "ProcessRunner",
    "RunManager",
    "RunMode",
    "RunPoll",
    "RunStatus",
    "ScriptRun",
    "ScriptRunSnapshot",
    "script_command",
]
