"""Data models for git working-tree state."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GitStateKind(str, Enum):
    NOT_A_REPOSITORY = "not_a_repository"
    CLEAN = "clean"
    DIRTY = "dirty"
    OPERATION_IN_PROGRESS = "operation_in_progress"
    ERROR = "error"


class GitState(BaseModel):
    """Snapshot of a working tree as last observed."""

    model_config = ConfigDict(frozen=True)

    kind: GitStateKind
    branch: str | None = None
    files: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)
    operation: str | None = None
    error: str | None = None
    ahead: int = 0
    behind: int = 0

    @property
    def is_repository(self) -> bool:
        return self.kind is not GitStateKind.NOT_A_REPOSITORY

    @property
    def is_clean(self) -> bool:
        return self.kind is GitStateKind.CLEAN

    @property
    def is_detached(self) -> bool:
        return self.is_repository and self.branch is None


class StatusEntry(BaseModel):
    """One line of ``git status --porcelain``."""

    model_config = ConfigDict(frozen=True)

    code: str
    path: str
    original_path: str | None = None

    @property
    def is_untracked(self) -> bool:
        return self.code == "??"


class CommitInfo(BaseModel):
    """One commit in the log of the current branch."""

    model_config = ConfigDict(frozen=True)

    sha: str
    short_sha: str
    message: str
    author: str
    date: str


class CommitFileChange(BaseModel):
    """A file touched by a commit."""

    model_config = ConfigDict(frozen=True)

    path: str
    status: str
