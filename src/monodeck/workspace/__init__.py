"""Workspace: project discovery, environment files and the session object."""

from .discovery import (
    DiscoveryResult,
    PackageManifest,
    Project,
    common_script_names,
    discover_projects,
    find_project,
)
from .environment import EnvironmentSet, EnvironmentStore

__all__ = [
    "DiscoveryResult",
    "EnvironmentSet",
    "EnvironmentStore",
    "PackageManifest",
    "Project",
    "common_script_names",
    "discover_projects",
    "find_project",
]
