"""monodeck utility modules."""

from .errors import (
    ErrorCategory,
    ErrorInfo,
    classify_exception,
    error_config_invalid,
    error_dependency_missing,
    error_file_not_found,
    error_git_operation,
    error_internal,
    error_network,
    error_project_not_found,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)

__all__ = [
    "ErrorCategory",
    "ErrorInfo",
    "format_error",
    "handle_exception",
    "classify_exception",
    "error_file_not_found",
    "error_dependency_missing",
    "error_config_invalid",
    "error_project_not_found",
    "error_git_operation",
    "error_network",
    "error_internal",
    "set_debug_mode",
    "is_debug_mode",
]
