"""Tests for the run registry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from monodeck.runner import BatchOrchestrator, ProcessRunner, RunManager
from monodeck.runner.models import BatchStatus, RunStatus
from monodeck.workspace.discovery import discover_projects


@pytest.fixture
def manager(launcher) -> RunManager:
    manager = RunManager(BatchOrchestrator(ProcessRunner(grace_period=0.5), launcher))
    yield manager
    manager.cancel_all()


@pytest.fixture
def web(monorepo: Path):
    return discover_projects(monorepo).find("web")


@pytest.fixture
def api(monorepo: Path):
    return discover_projects(monorepo).find("api")


class EventRecorder:
    """Collects (event, id, data) notifications."""

    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()
        self.finished = threading.Event()

    def __call__(self, event, run_id, data):
        with self._lock:
            self.events.append((event, run_id, data))
        if event in ("finished", "batch_finished"):
            self.finished.set()

    def names(self) -> list[str]:
        with self._lock:
            return [e[0] for e in self.events]


# =============================================================================
# Single Run Tests
# =============================================================================


class TestSingleRuns:
    """Tests for starting and tracking single runs."""

    def test_start_and_get(self, manager, web):
        run = manager.start(web, "build")
        assert manager.get(web, "build") is run
        assert manager.find(run.run_id) is run
        assert run.wait(10)
        assert run.status is RunStatus.SUCCEEDED

    def test_events(self, manager, web):
        recorder = EventRecorder()
        manager.subscribe(recorder)
        run = manager.start(web, "build")
        assert recorder.finished.wait(10)

        assert recorder.names() == ["started", "finished"]
        event, run_id, data = recorder.events[-1]
        assert run_id == run.run_id
        assert data["status"] == "succeeded"
        assert data["exit_code"] == 0

    def test_supersede_cancels_previous(self, manager, web):
        """Starting the same pair again cancels a still-running predecessor."""
        first = manager.start(web, "slow")
        second = manager.start(web, "slow")
        assert first.wait(10)
        assert first.status is RunStatus.CANCELLED
        assert manager.get(web, "slow") is second
        assert len(manager.runs) == 1

    def test_different_scripts_coexist(self, manager, web):
        slow = manager.start(web, "slow")
        build = manager.start(web, "build")
        build.wait(10)
        assert manager.get(web, "slow") is slow
        assert slow.status is RunStatus.RUNNING
        assert manager.count == 1

    def test_cancel(self, manager, web):
        run = manager.start(web, "slow")
        assert manager.cancel(web, "slow") is True
        assert run.wait(10)
        assert run.status is RunStatus.CANCELLED
        assert manager.cancel(web, "slow") is False

    def test_cancel_unknown(self, manager, web):
        assert manager.cancel(web, "build") is False

    def test_dismiss(self, manager, web):
        run = manager.start(web, "build")
        run.wait(10)
        assert manager.dismiss(web, "build") is True
        assert manager.get(web, "build") is None
        assert manager.dismiss(web, "build") is False

    def test_dismiss_running_cancels(self, manager, web):
        run = manager.start(web, "slow")
        manager.dismiss(web, "slow")
        assert run.wait(10)
        assert run.status is RunStatus.CANCELLED

    def test_subscriber_errors_are_contained(self, manager, web):
        def broken(event, run_id, data):
            raise RuntimeError("boom")

        manager.subscribe(broken)
        run = manager.start(web, "build")
        assert run.wait(10)


# =============================================================================
# Batch Tests
# =============================================================================


class TestBatches:
    """Tests for batch tracking."""

    def test_run_all_registers_batch(self, manager, web, api):
        recorder = EventRecorder()
        manager.subscribe(recorder)
        batch = manager.run_all([api, web], "build", "parallel")
        assert manager.get_batch(batch.batch_id) is batch
        assert recorder.finished.wait(10)
        assert batch.status is BatchStatus.SUCCEEDED
        assert "batch_started" in recorder.names()
        assert recorder.events[-1][2]["status"] == "succeeded"

    def test_find_run_inside_batch(self, manager, web, api):
        batch = manager.run_all([api, web], "build")
        batch.wait(10)
        for run in batch.runs():
            assert manager.find(run.run_id) is run

    def test_cancel_batch(self, manager, web, api):
        batch = manager.run_all([api, web], "slow", "sequential")
        assert manager.cancel_batch(batch.batch_id) is True
        assert batch.wait(10)
        assert batch.status is BatchStatus.CANCELLED
        assert manager.cancel_batch(batch.batch_id) is False

    def test_dismiss_batch(self, manager, web, api):
        batch = manager.run_all([api, web], "build")
        batch.wait(10)
        assert manager.dismiss_batch(batch.batch_id) is True
        assert manager.get_batch(batch.batch_id) is None
        assert manager.batches == []

    def test_cancel_all(self, manager, web, api):
        single = manager.start(web, "slow")
        batch = manager.run_all([api], "slow")
        manager.cancel_all()
        assert single.wait(10)
        assert batch.wait(10)
        assert single.status is RunStatus.CANCELLED
        assert batch.status is BatchStatus.CANCELLED
