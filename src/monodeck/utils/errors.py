"""Error presentation for the monodeck CLI.

Provides consistent error formatting with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..exceptions import (
    AuthError,
    DestinationNotEmpty,
    DiscoveryError,
    EmptyMessage,
    EnvFileError,
    GitOperationError,
    NetworkError,
    NotARepositoryError,
    NotFoundError,
    NothingToCommit,
    OperationInProgress,
    RemoteClientError,
    RemoteError,
    ScriptNotFound,
    SpawnError,
    UncommittedChangesConflict,
)

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by MONODECK_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("MONODECK_DEBUG", "0") == "1"


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    FILE = "file"  # File not found, permission errors
    NETWORK = "network"  # Network/API errors
    DEPENDENCY = "dependency"  # Missing executables
    WORKSPACE = "workspace"  # Discovery and environment files
    RUN = "run"  # Script execution errors
    GIT = "git"  # Git operation errors
    REMOTE = "remote"  # Remote hosting API errors
    INTERNAL = "internal"  # Internal/unexpected errors


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    # Long details only in debug mode
    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error and error.category == ErrorCategory.INTERNAL:
        console.print()
        console.print("[dim]Set MONODECK_DEBUG=1 or use --debug for more details[/dim]")


def error_file_not_found(
    path: str,
    context: str = "file",
    suggestion: str | None = None,
    original: Exception | None = None,
) -> ErrorInfo:
    """Create error info for file not found errors.

    Args:
        path: Path that was not found
        context: What kind of file (e.g., "environment file", "config file")
        suggestion: Custom suggestion, or auto-generate one
        original: Original exception if available
    """
    if suggestion is None:
        if "config" in path.lower():
            suggestion = "Run 'monodeck config path' to see where configuration is read from"
        else:
            suggestion = "Check the path and ensure the file exists"

    return ErrorInfo(
        message=f"{context.capitalize()} not found: {path}",
        category=ErrorCategory.FILE,
        suggestion=suggestion,
        original_error=original,
    )


def error_dependency_missing(dependency: str, install_cmd: str | None = None) -> ErrorInfo:
    """Create error info for a missing executable.

    Args:
        dependency: Name of the missing executable
        install_cmd: Command to install it
    """
    suggestion = f"Install {dependency} and make sure it is on PATH"
    if install_cmd:
        suggestion = f"Run: {install_cmd}"
    elif dependency == "git":
        suggestion = "Install git from https://git-scm.com/"
    elif dependency in ("yarn", "pnpm"):
        suggestion = f"Run: npm install -g {dependency}"
    elif dependency == "npm":
        suggestion = "Install Node.js from https://nodejs.org/"

    return ErrorInfo(
        message=f"Required executable not found: {dependency}",
        category=ErrorCategory.DEPENDENCY,
        suggestion=suggestion,
    )


def error_config_invalid(
    key: str, value: str | None = None, expected: str | None = None
) -> ErrorInfo:
    """Create error info for invalid configuration errors.

    Args:
        key: Configuration key that is invalid
        value: The invalid value (if known)
        expected: What was expected
    """
    details = None
    if value is not None and expected is not None:
        details = f"Got '{value}', expected {expected}"

    return ErrorInfo(
        message=f"Invalid configuration: {key}",
        category=ErrorCategory.CONFIG,
        suggestion="Run 'monodeck config show' to view current configuration",
        details=details,
    )


def error_project_not_found(name: str) -> ErrorInfo:
    """Create error info for an unknown project name."""
    return ErrorInfo(
        message=f"Project not found: {name}",
        category=ErrorCategory.WORKSPACE,
        suggestion="Run 'monodeck projects' to see discovered projects",
    )


def error_git_operation(
    operation: str, message: str, original: Exception | None = None
) -> ErrorInfo:
    """Create error info for git operation errors.

    Args:
        operation: The git operation that failed
        message: Error message from git
        original: Original exception if available
    """
    suggestion = "Run 'monodeck git status' to inspect the working tree"
    if "commit" in operation.lower():
        suggestion = "Ensure there are changes to commit and no conflicts"
    elif "switch" in operation.lower() or "branch" in operation.lower():
        suggestion = "Check if the branch exists: monodeck git branches"
    elif operation.lower() in ("pull", "push", "fetch"):
        suggestion = "Check the network connection and resolve conflicts with git directly"

    return ErrorInfo(
        message=f"Git {operation} failed: {message}",
        category=ErrorCategory.GIT,
        suggestion=suggestion,
        original_error=original,
    )


def error_network(service: str, message: str, original: Exception | None = None) -> ErrorInfo:
    """Create error info for network/API errors.

    Args:
        service: The service that failed (e.g., "GitLab API")
        message: Error message
        original: Original exception if available
    """
    return ErrorInfo(
        message=f"{service} error: {message}",
        category=ErrorCategory.NETWORK,
        suggestion="Check your internet connection and the remote base URL",
        original_error=original,
    )


def error_internal(message: str, original: Exception | None = None) -> ErrorInfo:
    """Create error info for internal/unexpected errors."""
    return ErrorInfo(
        message=f"Internal error: {message}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug. Re-run with --debug and report the stack trace",
        original_error=original,
    )


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Handle an exception and display a formatted error.

    Args:
        console: Rich console for output
        exception: The exception to handle
        context: Description of what was being done
        exit_code: Exit code to use if exit_on_error is True
        exit_on_error: Whether to exit after displaying the error

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error


def _classify_git(exception: GitOperationError) -> ErrorInfo:
    if isinstance(exception, NotARepositoryError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.GIT,
            suggestion="Run the command inside a git working tree or pass --root",
            original_error=exception,
        )
    if isinstance(exception, UncommittedChangesConflict):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.GIT,
            suggestion="Commit or stash your changes first: monodeck git stash",
            original_error=exception,
        )
    if isinstance(exception, NothingToCommit):
        return ErrorInfo(
            message="Nothing to commit",
            category=ErrorCategory.GIT,
            suggestion="Modify some files before committing",
            original_error=exception,
        )
    if isinstance(exception, EmptyMessage):
        return ErrorInfo(
            message="Commit message is empty",
            category=ErrorCategory.GIT,
            suggestion="Pass a message with -m",
            original_error=exception,
        )
    if isinstance(exception, RemoteError):
        return ErrorInfo(
            message=f"Git {exception.operation} failed",
            category=ErrorCategory.GIT,
            suggestion="Check the network connection and resolve conflicts with git directly",
            details=exception.detail,
            original_error=exception,
        )
    return error_git_operation(exception.operation, exception.detail, exception)


def _classify_remote(exception: RemoteClientError) -> ErrorInfo:
    if isinstance(exception, AuthError):
        return ErrorInfo(
            message=f"Authentication failed: {exception}",
            category=ErrorCategory.REMOTE,
            suggestion="Run 'monodeck remote login' with a valid access token",
            original_error=exception,
        )
    if isinstance(exception, NotFoundError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.REMOTE,
            suggestion="Run 'monodeck remote projects' to list accessible project ids",
            original_error=exception,
        )
    if isinstance(exception, NetworkError):
        return error_network("Remote API", str(exception), exception)
    if isinstance(exception, DestinationNotEmpty):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.FILE,
            suggestion="Choose an empty or non-existent destination directory",
            original_error=exception,
        )
    return ErrorInfo(
        message=f"Remote API error: {exception}",
        category=ErrorCategory.REMOTE,
        original_error=exception,
    )


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Typed monodeck errors are mapped first; anything else falls back to
    matching on the exception type and message.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, GitOperationError):
        return _classify_git(exception)

    if isinstance(exception, RemoteClientError):
        return _classify_remote(exception)

    if isinstance(exception, DiscoveryError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKSPACE,
            suggestion="Pass an existing directory with --root or set workspace.root",
            original_error=exception,
        )

    if isinstance(exception, EnvFileError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKSPACE,
            suggestion="Check permissions on the workspace root",
            original_error=exception,
        )

    if isinstance(exception, ScriptNotFound):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.RUN,
            suggestion=f"Run 'monodeck scripts {exception.project}' to list its scripts",
            original_error=exception,
        )

    if isinstance(exception, SpawnError):
        if "not found" in exception.reason:
            return error_dependency_missing(exception.command)
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.RUN,
            original_error=exception,
        )

    if isinstance(exception, OperationInProgress):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKSPACE,
            suggestion="Wait for it to finish and try again",
            original_error=exception,
        )

    error_str = str(exception).lower()

    if isinstance(exception, FileNotFoundError):
        path = exception.filename or str(exception)
        return error_file_not_found(str(path), context, original=exception)

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return error_network(context, str(exception), exception)

    if any(word in error_str for word in ["config", "toml"]):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            category=ErrorCategory.CONFIG,
            suggestion="Run 'monodeck config show' to view current configuration",
            original_error=exception,
        )

    if isinstance(exception, ValueError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.CONFIG,
            original_error=exception,
        )

    return error_internal(f"{context}: {exception}", exception)
