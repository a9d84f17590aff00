"""Tests for the serialized merge queue."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from ralph_loop.events import EventLog, MergeCompletedEvent, MergeQueuedEvent
from ralph_loop.merge_queue import Integrator, MergeJob, MergeQueue
from ralph_loop.schemas import FailureReason
from ralph_loop.workspace import Workspace


class RecordingIntegrator(Integrator):
    def __init__(self, *, prepare_ok: bool = True, merge_ok: bool = True, delay: float = 0.0) -> None:
        self.prepare_ok = prepare_ok
        self.merge_ok = merge_ok
        self.delay = delay
        self.order: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def prepare(self, job: MergeJob) -> bool:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        return self.prepare_ok

    def merge(self, job: MergeJob) -> bool:
        self.order.append(job.branch)
        with self._lock:
            self.active -= 1
        return self.merge_ok


class FakeWorkspaces:
    def __init__(self) -> None:
        self.cleaned: list[str] = []

    def cleanup(self, branch: str) -> None:
        self.cleaned.append(branch)


def _job(tmp_path: Path, n: int) -> MergeJob:
    branch = f"change-{n:03d}"
    return MergeJob(improvement=n, branch=branch, workspace=Workspace(path=tmp_path / branch, branch=branch))


def test_jobs_complete_in_submission_order_without_overlap(tmp_path: Path) -> None:
    integrator = RecordingIntegrator(delay=0.02)
    workspaces = FakeWorkspaces()
    queue = MergeQueue(integrator, workspaces, EventLog(tmp_path / "loop.jsonl"))

    futures = [queue.submit(_job(tmp_path, n)) for n in range(1, 6)]
    results = [f.result(timeout=10) for f in futures]
    queue.close()

    assert all(r.success for r in results)
    assert integrator.order == [f"change-{n:03d}" for n in range(1, 6)]
    assert integrator.max_active == 1
    assert workspaces.cleaned == integrator.order


def test_concurrent_submitters_are_serialized(tmp_path: Path) -> None:
    integrator = RecordingIntegrator(delay=0.01)
    queue = MergeQueue(integrator, FakeWorkspaces(), EventLog(tmp_path / "loop.jsonl"))
    results = {}

    def worker(n: int) -> None:
        results[n] = queue.enqueue(_job(tmp_path, n))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, 9)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    queue.close()

    assert len(results) == 8
    assert integrator.max_active == 1
    queued = [e.branch for e in EventLog(tmp_path / "loop.jsonl").read() if isinstance(e, MergeQueuedEvent)]
    assert queued == integrator.order


def test_unmergeable_branch_is_preserved(tmp_path: Path) -> None:
    workspaces = FakeWorkspaces()
    queue = MergeQueue(RecordingIntegrator(prepare_ok=False), workspaces, EventLog(tmp_path / "loop.jsonl"))

    result = queue.enqueue(_job(tmp_path, 1))
    queue.close()

    assert result.success is False
    assert result.reason is FailureReason.MERGE_CONFLICT
    assert result.workspace_preserved is True
    assert workspaces.cleaned == []


def test_failed_merge_is_recorded(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "loop.jsonl")
    queue = MergeQueue(RecordingIntegrator(merge_ok=False), FakeWorkspaces(), log)
    job = _job(tmp_path, 2)
    job.worker = 1

    result = queue.enqueue(job)
    queue.close()

    assert result.reason is FailureReason.MERGE_FAILED
    completed = [e for e in log.read() if isinstance(e, MergeCompletedEvent)]
    assert [(e.improvement, e.success, e.reason, e.worker) for e in completed] == [(2, False, "merge_failed", 1)]


def test_crashing_integrator_does_not_kill_the_queue(tmp_path: Path) -> None:
    class Exploding(RecordingIntegrator):
        def prepare(self, job: MergeJob) -> bool:
            if job.improvement == 1:
                raise RuntimeError("boom")
            return True

    queue = MergeQueue(Exploding(), FakeWorkspaces(), EventLog(tmp_path / "loop.jsonl"))
    first = queue.enqueue(_job(tmp_path, 1))
    second = queue.enqueue(_job(tmp_path, 2))
    queue.close()

    assert first.reason is FailureReason.ERROR
    assert second.success is True


def test_closed_queue_rejects_jobs(tmp_path: Path) -> None:
    queue = MergeQueue(RecordingIntegrator(), FakeWorkspaces(), EventLog(tmp_path / "loop.jsonl"))
    queue.close()
    with pytest.raises(RuntimeError, match="closed"):
        queue.submit(_job(tmp_path, 1))
