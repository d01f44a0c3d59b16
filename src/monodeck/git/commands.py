"""Thin wrappers around the ``git`` CLI and parsers for its output."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from ..exceptions import GitOperationError, GitTimeout
from .models import CommitFileChange, CommitInfo, StatusEntry

logger = logging.getLogger(__name__)

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
LOG_FORMAT = _FIELD_SEP.join(["%H", "%h", "%s", "%an", "%ad"]) + _RECORD_SEP

_AHEAD_BEHIND = re.compile(r"\[(?:ahead (\d+))?(?:, )?(?:behind (\d+))?\]")

NAME_STATUS = {
    "A": "added",
    "M": "modified",
    "D": "deleted",
    "R": "renamed",
    "C": "copied",
    "T": "type_changed",
}


def git_available() -> bool:
    """Check if git is on PATH."""
    return shutil.which("git") is not None


def run_git(
    args: Sequence[str],
    cwd: Path | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command with safe argument passing.

    Credential prompts are disabled so network commands fail instead of
    blocking on a terminal. Messages are forced to the C locale because
    callers match on git's English output.

    Args:
        args: Arguments after ``git``.
        cwd: Working directory.
        check: Raise when git exits non-zero.
        timeout: Seconds before git is killed. None waits indefinitely.

    Raises:
        GitTimeout: ``timeout`` elapsed. The child has been killed.
        GitOperationError: git is missing, or ``check`` is set and the
            command exited non-zero. The detail is git's stderr.
    """
    cmd = ["git", "-c", "core.quotePath=false", *args]
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["LC_ALL"] = "C"
    env.pop("LANGUAGE", None)

    logger.debug(f"Running: {' '.join(cmd)} (cwd={cwd})")
    try:
        cp = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning(f"git {args[0]} timed out after {timeout}s (cwd={cwd})")
        raise GitTimeout(args[0], e.timeout) from None
    except FileNotFoundError as e:
        raise GitOperationError(args[0], "git not found on PATH") from e
    except NotADirectoryError as e:
        raise GitOperationError(args[0], f"not a directory: {cwd}") from e

    if check and cp.returncode != 0:
        detail = (cp.stderr or cp.stdout).strip() or f"exit code {cp.returncode}"
        raise GitOperationError(args[0], detail)
    return cp


def is_work_tree(path: Path) -> bool:
    """True if ``path`` is inside a git working tree."""
    if not path.is_dir():
        return False
    try:
        cp = run_git(["rev-parse", "--is-inside-work-tree"], cwd=path, check=False)
    except GitOperationError:
        return False
    return cp.returncode == 0 and cp.stdout.strip() == "true"


def current_branch(path: Path) -> str | None:
    """Short name of the checked-out branch, or None when HEAD is detached."""
    cp = run_git(["symbolic-ref", "--short", "-q", "HEAD"], cwd=path, check=False)
    if cp.returncode != 0:
        return None
    return cp.stdout.strip() or None


def parse_branch_header(line: str) -> tuple[int, int]:
    """Ahead/behind counts from a ``## branch...upstream [ahead N, behind M]`` header."""
    match = _AHEAD_BEHIND.search(line)
    if not match:
        return 0, 0
    ahead, behind = match.groups()
    return int(ahead or 0), int(behind or 0)


def parse_status(output: str) -> tuple[tuple[int, int], list[StatusEntry]]:
    """Parse ``git status --porcelain=v1 --branch -z`` output.

    Returns:
        ((ahead, behind), entries) with entries in the order git reports them.
    """
    ahead_behind = (0, 0)
    entries: list[StatusEntry] = []

    tokens = output.split("\0")
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token:
            continue
        if token.startswith("## "):
            ahead_behind = parse_branch_header(token)
            continue

        code, path = token[:2], token[3:]
        original = None
        if code[0] in "RC" and i < len(tokens):
            # -z puts the source path of a rename in the next token
            original = tokens[i]
            i += 1
        entries.append(StatusEntry(code=code, path=path, original_path=original))

    return ahead_behind, entries


def status(path: Path) -> tuple[tuple[int, int], list[StatusEntry]]:
    cp = run_git(
        ["status", "--porcelain=v1", "--branch", "-z", "--untracked-files=all"],
        cwd=path,
    )
    return parse_status(cp.stdout)


def parse_conflicting_files(stderr: str) -> list[str]:
    """Files listed by git when a checkout would overwrite local changes."""
    return [line.strip() for line in stderr.splitlines() if line.startswith("\t")]


def list_refs(path: Path, namespace: str) -> list[str]:
    cp = run_git(["for-each-ref", "--format=%(refname:short)", namespace], cwd=path)
    return [line.strip() for line in cp.stdout.splitlines() if line.strip()]


def local_branches(path: Path) -> list[str]:
    """Sorted local branch names."""
    return sorted(list_refs(path, "refs/heads"))


def remote_branches(path: Path, remote: str = "origin") -> list[str]:
    """Sorted branch names on ``remote`` with the remote prefix removed."""
    prefix = f"{remote}/"
    names = set()
    for ref in list_refs(path, f"refs/remotes/{remote}"):
        if not ref.startswith(prefix):
            continue
        short = ref[len(prefix):]
        if short and short != "HEAD":
            names.add(short)
    return sorted(names)


def parse_log(output: str) -> list[CommitInfo]:
    commits = []
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        fields = record.split(_FIELD_SEP)
        if len(fields) != 5:
            logger.debug(f"Skipping malformed log record: {record!r}")
            continue
        sha, short_sha, message, author, date = fields
        commits.append(
            CommitInfo(sha=sha, short_sha=short_sha, message=message, author=author, date=date)
        )
    return commits


def log(path: Path, max_count: int = 20) -> list[CommitInfo]:
    """Most recent commits on HEAD, newest first. Empty for an unborn branch."""
    cp = run_git(
        [
            "log",
            f"--max-count={max_count}",
            f"--format={LOG_FORMAT}",
            "--date=format:%Y-%m-%d %H:%M",
        ],
        cwd=path,
        check=False,
    )
    if cp.returncode != 0:
        if "does not have any commits" in cp.stderr:
            return []
        raise GitOperationError("log", cp.stderr.strip())
    return parse_log(cp.stdout)


def parse_name_status(output: str) -> list[CommitFileChange]:
    changes = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        code = parts[0][:1]
        path = parts[-1]
        changes.append(CommitFileChange(path=path, status=NAME_STATUS.get(code, "changed")))
    return changes


def commit_files(path: Path, sha: str) -> list[CommitFileChange]:
    """Files changed by ``sha`` relative to its first parent (or all files for a root commit)."""
    cp = run_git(
        ["show", "--name-status", "--format=", "--no-renames", sha, "--"],
        cwd=path,
    )
    return parse_name_status(cp.stdout)
