"""Exception hierarchy for monodeck.

Every failure the engine can report is one of these types, so callers can
render a typed result instead of parsing messages. None of them is fatal:
all are recoverable at the call site.
"""

from __future__ import annotations

from pathlib import Path


class MonodeckError(Exception):
    """Base class for all monodeck errors."""


# =============================================================================
# Discovery
# =============================================================================


class DiscoveryError(MonodeckError):
    """The workspace root cannot be scanned (missing, not a directory, unreadable)."""

    def __init__(self, root: Path, reason: str) -> None:
        self.root = root
        self.reason = reason
        super().__init__(f"Cannot scan {root}: {reason}")


class ManifestParseError(MonodeckError):
    """A single manifest could not be parsed.

    Never raised out of a scan: discovery records it as a warning and skips
    the project.
    """

    def __init__(self, manifest: Path, reason: str) -> None:
        self.manifest = manifest
        self.reason = reason
        super().__init__(f"Invalid manifest {manifest}: {reason}")


# =============================================================================
# Environment files
# =============================================================================


class EnvFileError(MonodeckError):
    """An environment file could not be read or written."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Environment file {path}: {reason}")


class OperationInProgress(MonodeckError):
    """A second mutating operation was requested while one is still running."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Another {operation} is already in progress")


# =============================================================================
# Script execution
# =============================================================================


class SpawnError(MonodeckError):
    """The process could not be launched at all.

    Distinct from a script that runs and exits non-zero, which is a normal
    ``Failed`` status.
    """

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Cannot start '{command}': {reason}")


class ScriptNotFound(MonodeckError):
    """The project's manifest does not declare the requested script."""

    def __init__(self, project: str, script: str) -> None:
        self.project = project
        self.script = script
        super().__init__(f"Project '{project}' has no script named '{script}'")


# =============================================================================
# Git
# =============================================================================


class GitOperationError(MonodeckError):
    """A git operation failed."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"git {operation} failed: {detail}")


class NotARepositoryError(GitOperationError):
    """The tracked path is not inside a git working tree."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__("status", f"{path} is not a git repository")


class UncommittedChangesConflict(GitOperationError):
    """A branch switch is blocked by local modifications."""

    def __init__(self, branch: str, files: list[str] | None = None) -> None:
        self.branch = branch
        self.files = files or []
        detail = f"local changes would be overwritten by switching to '{branch}'"
        if self.files:
            detail += ": " + ", ".join(self.files)
        super().__init__("switch", detail)


class NothingToCommit(GitOperationError):
    """Commit requested with an empty modified-file list."""

    def __init__(self) -> None:
        super().__init__("commit", "nothing to commit, working tree clean")


class EmptyMessage(GitOperationError):
    """Commit requested without a message."""

    def __init__(self) -> None:
        super().__init__("commit", "commit message is empty")


class GitTimeout(GitOperationError):
    """A git command did not finish within its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(operation, f"timed out after {timeout:g}s")


class RemoteError(GitOperationError):
    """Pull or push failed because of the network or a merge conflict."""


# =============================================================================
# Remote hosting API
# =============================================================================


class RemoteClientError(MonodeckError):
    """The remote hosting API returned an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class AuthError(RemoteClientError):
    """Invalid or expired credentials (HTTP 401/403)."""


class NotFoundError(RemoteClientError):
    """Unknown project id (HTTP 404)."""


class NetworkError(RemoteClientError):
    """Transport failure: DNS, connection refused, timeout."""


class DestinationNotEmpty(RemoteClientError):
    """Clone target already contains files."""

    def __init__(self, destination: Path) -> None:
        self.destination = destination
        super().__init__(f"Destination is not empty: {destination}")
