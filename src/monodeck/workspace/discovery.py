"""Project discovery.

Walks a monorepo root looking for directories that contain a manifest
(``package.json`` by default) and turns each one into a :class:`Project`.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import DEFAULT_IGNORE_DIRS
from ..exceptions import DiscoveryError, ManifestParseError

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST = "package.json"
DEFAULT_MAX_DEPTH = 4

LOCKFILES = {
    "pnpm-lock.yaml": "pnpm",
    "yarn.lock": "yarn",
    "package-lock.json": "npm",
    "npm-shrinkwrap.json": "npm",
}


class PackageManifest(BaseModel):
    """The subset of a manifest the engine reads."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    scripts: dict[str, str] = Field(default_factory=dict)


class Project(BaseModel):
    """A discovered sub-project. Identity is its absolute path."""

    model_config = ConfigDict(frozen=True)

    path: Path
    name: str
    relative_path: str
    scripts: dict[str, str] = Field(default_factory=dict)
    parsed_at: datetime = Field(default_factory=datetime.now)
    package_manager: str | None = None

    @property
    def script_names(self) -> list[str]:
        return list(self.scripts)

    def has_script(self, script: str) -> bool:
        return script in self.scripts


class DiscoveryResult(BaseModel):
    """Projects found under a root plus the manifests that were skipped."""

    root: Path
    projects: list[Project] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def find(self, name_or_path: str) -> Project | None:
        return find_project(self.projects, name_or_path)


def detect_package_manager(directory: Path, root: Path | None = None) -> str | None:
    """Detect the package manager from lock files.

    Looks in ``directory`` first, then walks up to ``root`` so workspace
    lock files at the monorepo root apply to every package below it.
    """
    current = directory
    while True:
        for lockfile, manager in LOCKFILES.items():
            if (current / lockfile).is_file():
                return manager
        if root is None or current == root or current.parent == current:
            return None
        if root not in current.parents:
            return None
        current = current.parent


def parse_manifest(manifest_path: Path) -> PackageManifest:
    """Parse one manifest file.

    Raises:
        ManifestParseError: The file is unreadable, not JSON, or has wrong types.
    """
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestParseError(manifest_path, str(e)) from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ManifestParseError(manifest_path, f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ManifestParseError(manifest_path, "top-level value is not an object")

    try:
        return PackageManifest.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ManifestParseError(manifest_path, errors) from e


def _walk(root: Path, manifest_name: str, max_depth: int, ignore: set[str]) -> Iterable[Path]:
    """Yield directories under root that contain the manifest."""

    def on_error(err: OSError) -> None:
        logger.debug(f"Skipping unreadable directory: {err}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error, followlinks=False):
        current = Path(dirpath)
        depth = len(current.relative_to(root).parts)

        if depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                d for d in dirnames if not d.startswith(".") and d not in ignore
            )

        if manifest_name in filenames:
            yield current


def discover_projects(
    root: Path | str,
    *,
    manifest_name: str = DEFAULT_MANIFEST,
    max_depth: int = DEFAULT_MAX_DEPTH,
    ignore_dirs: Sequence[str] = tuple(DEFAULT_IGNORE_DIRS),
    include_root: bool = False,
) -> DiscoveryResult:
    """Scan ``root`` for sub-projects.

    Args:
        root: Monorepo root directory.
        manifest_name: File that marks a directory as a project.
        max_depth: How many directory levels below the root are searched.
        ignore_dirs: Directory names never descended into. Dot-directories
            are always skipped.
        include_root: Also treat a manifest at the root itself as a project.

    Returns:
        DiscoveryResult with projects ordered by relative path. Malformed
        manifests are reported in ``warnings`` and skipped.

    Raises:
        DiscoveryError: The root is missing, not a directory, or unreadable.
    """
    root = Path(root).expanduser()

    if not root.exists():
        raise DiscoveryError(root, "directory does not exist")
    if not root.is_dir():
        raise DiscoveryError(root, "not a directory")
    try:
        root = root.resolve()
        with os.scandir(root) as entries:
            next(entries, None)
    except OSError as e:
        raise DiscoveryError(root, e.strerror or str(e)) from e

    projects: list[Project] = []
    warnings: list[str] = []
    ignore = set(ignore_dirs)

    for directory in _walk(root, manifest_name, max_depth, ignore):
        if directory == root and not include_root:
            continue

        manifest_path = directory / manifest_name
        try:
            manifest = parse_manifest(manifest_path)
        except ManifestParseError as e:
            logger.warning(str(e))
            warnings.append(str(e))
            continue

        relative = directory.relative_to(root).as_posix() or "."
        projects.append(
            Project(
                path=directory,
                name=manifest.name or directory.name,
                relative_path=relative,
                scripts=manifest.scripts,
                package_manager=detect_package_manager(directory, root),
            )
        )

    projects.sort(key=lambda p: p.relative_path)
    logger.debug(f"Discovered {len(projects)} projects under {root} ({len(warnings)} skipped)")

    return DiscoveryResult(root=root, projects=projects, warnings=warnings)


def common_script_names(projects: Sequence[Project]) -> list[str]:
    """Script names declared by every project, sorted."""
    if not projects:
        return []
    common = set(projects[0].scripts)
    for project in projects[1:]:
        common &= set(project.scripts)
    return sorted(common)


def all_script_names(projects: Sequence[Project]) -> list[str]:
    """Script names declared by at least one project, sorted."""
    names: set[str] = set()
    for project in projects:
        names.update(project.scripts)
    return sorted(names)


def find_project(projects: Sequence[Project], name_or_path: str) -> Project | None:
    """Look a project up by display name, relative path, or absolute path."""
    for project in projects:
        if name_or_path in (project.name, project.relative_path, str(project.path)):
            return project
    return None
