"""Tests for git parsing and the working-tree state tracker."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from monodeck.exceptions import (
    EmptyMessage,
    GitOperationError,
    GitTimeout,
    NotARepositoryError,
    NothingToCommit,
    OperationInProgress,
    RemoteError,
    UncommittedChangesConflict,
)
from monodeck.git import GitStateKind, GitStateTracker
from monodeck.git.commands import (
    git_available,
    parse_branch_header,
    parse_conflicting_files,
    parse_log,
    parse_name_status,
    parse_status,
    run_git,
)

requires_git = pytest.mark.skipif(not git_available(), reason="git is not installed")


# =============================================================================
# Parser Tests
# =============================================================================


class TestParsers:
    """Tests for git output parsers (no git needed)."""

    def test_branch_header_ahead_behind(self):
        assert parse_branch_header("## main...origin/main [ahead 2, behind 1]") == (2, 1)
        assert parse_branch_header("## main...origin/main [ahead 3]") == (3, 0)
        assert parse_branch_header("## main...origin/main [behind 4]") == (0, 4)
        assert parse_branch_header("## main") == (0, 0)

    def test_parse_status(self):
        output = "## main...origin/main [ahead 1]\0 M src/app.ts\0?? new file.txt\0A  added.js\0"
        (ahead, behind), entries = parse_status(output)
        assert (ahead, behind) == (1, 0)
        assert [e.path for e in entries] == ["src/app.ts", "new file.txt", "added.js"]
        assert [e.is_untracked for e in entries] == [False, True, False]

    def test_parse_status_rename(self):
        output = "## main\0R  new.txt\0old.txt\0 M other.txt\0"
        _, entries = parse_status(output)
        assert entries[0].path == "new.txt"
        assert entries[0].original_path == "old.txt"
        assert entries[1].path == "other.txt"

    def test_parse_status_empty(self):
        assert parse_status("## main\0") == ((0, 0), [])

    def test_parse_conflicting_files(self):
        stderr = (
            "error: Your local changes to the following files would be overwritten by checkout:\n"
            "\tREADME.md\n"
            "\tsrc/app.ts\n"
            "Please commit your changes or stash them before you switch branches.\n"
        )
        assert parse_conflicting_files(stderr) == ["README.md", "src/app.ts"]

    def test_parse_log(self):
        output = (
            "abc123\x1fabc\x1fFix bug\x1fAda\x1f2024-01-02 10:00\x1e\n"
            "def456\x1fdef\x1fInitial\x1fAda\x1f2024-01-01 09:00\x1e\n"
        )
        commits = parse_log(output)
        assert [c.short_sha for c in commits] == ["abc", "def"]
        assert commits[0].message == "Fix bug"
        assert commits[0].author == "Ada"

    def test_parse_log_skips_malformed(self):
        assert parse_log("only\x1ftwo\x1e") == []

    def test_parse_name_status(self):
        output = "A\tnew.txt\nM\tsrc/app.ts\nD\told.txt\nX\tweird\n"
        changes = parse_name_status(output)
        assert [(c.path, c.status) for c in changes] == [
            ("new.txt", "added"),
            ("src/app.ts", "modified"),
            ("old.txt", "deleted"),
            ("weird", "changed"),
        ]


# =============================================================================
# Command Runner Tests
# =============================================================================


class TestRunGit:
    """Tests for the git subprocess wrapper (no git needed)."""

    def test_messages_forced_to_c_locale(self, monkeypatch):
        monkeypatch.setenv("LANGUAGE", "de")
        monkeypatch.setenv("LC_ALL", "de_DE.UTF-8")
        captured = {}

        def fake_run(cmd, **kwargs):
            captured.update(kwargs)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        with patch("monodeck.git.commands.subprocess.run", side_effect=fake_run):
            run_git(["status"])

        env = captured["env"]
        assert env["LC_ALL"] == "C"
        assert "LANGUAGE" not in env
        assert env["GIT_TERMINAL_PROMPT"] == "0"

    def test_timeout_raises_git_timeout(self):
        expired = subprocess.TimeoutExpired(["git", "fetch"], 5)
        with patch("monodeck.git.commands.subprocess.run", side_effect=expired) as mock_run:
            with pytest.raises(GitTimeout) as exc_info:
                run_git(["fetch", "origin"], timeout=5)

        assert mock_run.call_args.kwargs["timeout"] == 5
        assert isinstance(exc_info.value, GitOperationError)
        assert exc_info.value.operation == "fetch"
        assert exc_info.value.timeout == 5
        assert "timed out after 5s" in str(exc_info.value)


# =============================================================================
# Tracker Tests
# =============================================================================


@requires_git
class TestObservation:
    """Tests for refresh."""

    def test_initial_state(self, temp_git_repo: Path):
        tracker = GitStateTracker(temp_git_repo)
        assert tracker.state.kind is GitStateKind.NOT_A_REPOSITORY

    def test_clean(self, temp_git_repo: Path):
        state = GitStateTracker(temp_git_repo).refresh()
        assert state.kind is GitStateKind.CLEAN
        assert state.branch == "main"
        assert state.files == []

    def test_dirty(self, temp_git_repo: Path):
        (temp_git_repo / "README.md").write_text("changed\n")
        (temp_git_repo / "notes.txt").write_text("new\n")
        state = GitStateTracker(temp_git_repo).refresh()
        assert state.kind is GitStateKind.DIRTY
        assert sorted(state.files) == ["README.md", "notes.txt"]
        assert state.untracked == ["notes.txt"]

    def test_not_a_repository(self, temp_dir: Path):
        state = GitStateTracker(temp_dir).refresh()
        assert state.kind is GitStateKind.NOT_A_REPOSITORY
        assert not state.is_repository

    def test_missing_directory(self, temp_dir: Path):
        state = GitStateTracker(temp_dir / "gone").refresh()
        assert state.kind is GitStateKind.NOT_A_REPOSITORY

    def test_detached_head(self, temp_git_repo: Path, git_cmd):
        sha = git_cmd(temp_git_repo, "rev-parse", "HEAD").strip()
        git_cmd(temp_git_repo, "checkout", "--detach", sha)
        state = GitStateTracker(temp_git_repo).refresh()
        assert state.branch is None
        assert state.is_detached

    def test_invalid_pull_strategy(self, temp_git_repo: Path):
        with pytest.raises(ValueError):
            GitStateTracker(temp_git_repo, pull_strategy="octopus")


@requires_git
class TestSwitchBranch:
    """Tests for switching branches."""

    def test_switch(self, temp_git_repo: Path, git_cmd):
        git_cmd(temp_git_repo, "branch", "feature")
        tracker = GitStateTracker(temp_git_repo)
        state = tracker.switch_branch("feature")
        assert state.branch == "feature"
        assert state.kind is GitStateKind.CLEAN

    def test_unknown_branch(self, temp_git_repo: Path):
        tracker = GitStateTracker(temp_git_repo)
        with pytest.raises(GitOperationError):
            tracker.switch_branch("nope")
        assert tracker.state.kind is GitStateKind.ERROR
        assert tracker.state.branch == "main"
        assert tracker.state.error

    def test_rejects_option_like_names(self, temp_git_repo: Path):
        with pytest.raises(ValueError):
            GitStateTracker(temp_git_repo).switch_branch("--force")

    def test_conflict_with_local_changes(self, temp_git_repo: Path, git_cmd):
        """Local changes that would be overwritten block the switch."""
        git_cmd(temp_git_repo, "checkout", "-b", "feature")
        (temp_git_repo / "README.md").write_text("feature version\n")
        git_cmd(temp_git_repo, "commit", "-am", "Feature change")
        git_cmd(temp_git_repo, "checkout", "main")
        (temp_git_repo / "README.md").write_text("local edit\n")

        tracker = GitStateTracker(temp_git_repo)
        with pytest.raises(UncommittedChangesConflict) as exc_info:
            tracker.switch_branch("feature")
        assert "README.md" in exc_info.value.files

        # Nothing was stashed or lost
        assert (temp_git_repo / "README.md").read_text() == "local edit\n"
        assert tracker.state.kind is GitStateKind.ERROR
        assert tracker.state.branch == "main"
        assert tracker.state.files == ["README.md"]

    def test_conflict_detected_under_translated_locale(self, temp_git_repo: Path, git_cmd, monkeypatch):
        git_cmd(temp_git_repo, "checkout", "-b", "feature")
        (temp_git_repo / "README.md").write_text("feature version\n")
        git_cmd(temp_git_repo, "commit", "-am", "Feature change")
        git_cmd(temp_git_repo, "checkout", "main")
        (temp_git_repo / "README.md").write_text("local edit\n")

        monkeypatch.setenv("LANGUAGE", "de")
        monkeypatch.setenv("LANG", "de_DE.UTF-8")
        with pytest.raises(UncommittedChangesConflict) as exc_info:
            GitStateTracker(temp_git_repo).switch_branch("feature")
        assert "README.md" in exc_info.value.files

    def test_not_a_repository(self, temp_dir: Path):
        tracker = GitStateTracker(temp_dir)
        with pytest.raises(NotARepositoryError):
            tracker.switch_branch("main")
        assert tracker.state.kind is GitStateKind.NOT_A_REPOSITORY
        assert tracker.state.error


@requires_git
class TestCommit:
    """Tests for committing."""

    def test_commit_all(self, temp_git_repo: Path, git_cmd):
        (temp_git_repo / "a.txt").write_text("a\n")
        (temp_git_repo / "README.md").write_text("changed\n")
        tracker = GitStateTracker(temp_git_repo)
        state = tracker.commit("Add a")
        assert state.kind is GitStateKind.CLEAN
        assert git_cmd(temp_git_repo, "log", "-1", "--format=%s").strip() == "Add a"

    def test_commit_selected_paths(self, temp_git_repo: Path):
        (temp_git_repo / "a.txt").write_text("a\n")
        (temp_git_repo / "b.txt").write_text("b\n")
        state = GitStateTracker(temp_git_repo).commit("Only a", ["a.txt"])
        assert state.kind is GitStateKind.DIRTY
        assert state.files == ["b.txt"]

    def test_nothing_to_commit(self, temp_git_repo: Path, git_cmd):
        head = git_cmd(temp_git_repo, "rev-parse", "HEAD")
        tracker = GitStateTracker(temp_git_repo)
        with pytest.raises(NothingToCommit):
            tracker.commit("msg")
        assert git_cmd(temp_git_repo, "rev-parse", "HEAD") == head

    def test_nothing_to_commit_wins_over_empty_message(self, temp_git_repo: Path):
        with pytest.raises(NothingToCommit):
            GitStateTracker(temp_git_repo).commit("")

    def test_empty_message(self, temp_git_repo: Path):
        (temp_git_repo / "a.txt").write_text("a\n")
        tracker = GitStateTracker(temp_git_repo)
        with pytest.raises(EmptyMessage):
            tracker.commit("   ")
        # Nothing staged or committed
        assert tracker.refresh().untracked == ["a.txt"]

    def test_pending_message(self, temp_git_repo: Path, git_cmd):
        (temp_git_repo / "a.txt").write_text("a\n")
        tracker = GitStateTracker(temp_git_repo)
        tracker.pending_message = "Drafted message"
        tracker.commit()
        assert tracker.pending_message == ""
        assert git_cmd(temp_git_repo, "log", "-1", "--format=%s").strip() == "Drafted message"


@requires_git
class TestRemoteOperations:
    """Tests for pull, push and fetch against a local bare remote."""

    def test_push(self, repo_with_remote, git_cmd):
        work, bare = repo_with_remote
        (work / "a.txt").write_text("a\n")
        tracker = GitStateTracker(work)
        tracker.commit("Add a")
        tracker.push()
        assert git_cmd(bare, "log", "-1", "--format=%s", "main").strip() == "Add a"

    def test_pull_fast_forward(self, repo_with_remote, git_cmd, temp_dir: Path):
        work, bare = repo_with_remote
        other = temp_dir / "other"
        git_cmd(temp_dir, "clone", str(bare), str(other))
        git_cmd(other, "config", "user.name", "Other")
        git_cmd(other, "config", "user.email", "other@example.com")
        (other / "b.txt").write_text("b\n")
        git_cmd(other, "add", "b.txt")
        git_cmd(other, "commit", "-m", "Add b")
        git_cmd(other, "push", "origin", "main")

        state = GitStateTracker(work).pull()
        assert (work / "b.txt").exists()
        assert state.kind is GitStateKind.CLEAN

    def test_push_without_remote(self, temp_git_repo: Path):
        tracker = GitStateTracker(temp_git_repo)
        with pytest.raises(RemoteError):
            tracker.push()
        assert tracker.state.kind is GitStateKind.ERROR

    def test_pull_timeout_is_remote_error(self, repo_with_remote, monkeypatch):
        """A stalled pull fails with RemoteError and frees the tracker."""
        work, _ = repo_with_remote
        real_run = subprocess.run

        def stalled_pull(cmd, *args, **kwargs):
            if "pull" in cmd:
                raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))
            return real_run(cmd, *args, **kwargs)

        monkeypatch.setattr(subprocess, "run", stalled_pull)
        tracker = GitStateTracker(work, timeout=5)
        with pytest.raises(RemoteError) as exc_info:
            tracker.pull()

        assert "timed out" in str(exc_info.value)
        assert tracker.state.kind is GitStateKind.ERROR
        # The operation lock was released
        assert tracker.fetch().kind is GitStateKind.CLEAN

    def test_fetch(self, repo_with_remote):
        work, _ = repo_with_remote
        tracker = GitStateTracker(work)
        tracker.fetch()
        assert tracker.remote_branches() == ["main"]

    def test_checkout_remote_branch(self, repo_with_remote, git_cmd):
        work, bare = repo_with_remote
        git_cmd(bare, "branch", "release", "main")
        tracker = GitStateTracker(work)
        tracker.fetch()
        state = tracker.checkout_remote_branch("release")
        assert state.branch == "release"
        assert "release" in tracker.branches()


@requires_git
class TestQueriesAndExtras:
    """Tests for log, branches, stash and the operation lock."""

    def test_branches(self, temp_git_repo: Path, git_cmd):
        git_cmd(temp_git_repo, "branch", "zeta")
        git_cmd(temp_git_repo, "branch", "alpha")
        assert GitStateTracker(temp_git_repo).branches() == ["alpha", "main", "zeta"]

    def test_log_and_commit_files(self, temp_git_repo: Path):
        (temp_git_repo / "a.txt").write_text("a\n")
        tracker = GitStateTracker(temp_git_repo)
        tracker.commit("Add a")
        commits = tracker.log(10)
        assert [c.message for c in commits] == ["Add a", "Initial commit"]
        changes = tracker.commit_files(commits[0].sha)
        assert [(c.path, c.status) for c in changes] == [("a.txt", "added")]

    def test_log_unborn_branch(self, temp_dir: Path, git_cmd):
        git_cmd(temp_dir, "init")
        assert GitStateTracker(temp_dir).log() == []

    def test_queries_require_repository(self, temp_dir: Path):
        with pytest.raises(NotARepositoryError):
            GitStateTracker(temp_dir).branches()

    def test_stash_and_pop(self, temp_git_repo: Path):
        (temp_git_repo / "README.md").write_text("work in progress\n")
        tracker = GitStateTracker(temp_git_repo)
        assert tracker.stash().kind is GitStateKind.CLEAN
        assert tracker.stash_pop().kind is GitStateKind.DIRTY

    def test_stash_clean_tree(self, temp_git_repo: Path):
        with pytest.raises(NothingToCommit):
            GitStateTracker(temp_git_repo).stash()

    def test_concurrent_operation_rejected(self, temp_git_repo: Path):
        """A second mutating call while one runs is rejected without side effects."""
        tracker = GitStateTracker(temp_git_repo)
        entered = threading.Event()
        release = threading.Event()
        errors: list[Exception] = []

        def blocking_action():
            entered.set()
            release.wait(10)

        worker = threading.Thread(target=lambda: tracker._mutate("pull", blocking_action))
        worker.start()
        try:
            assert entered.wait(10)
            assert tracker.state.kind is GitStateKind.OPERATION_IN_PROGRESS
            assert tracker.state.operation == "pull"
            # refresh keeps the in-progress state
            assert tracker.refresh().kind is GitStateKind.OPERATION_IN_PROGRESS
            try:
                tracker.commit("x")
            except OperationInProgress as e:
                errors.append(e)
        finally:
            release.set()
            worker.join(10)

        assert len(errors) == 1
        assert "pull" in str(errors[0])
        assert tracker.state.kind is GitStateKind.CLEAN
