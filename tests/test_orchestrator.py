"""Tests for the root loop with a scripted pipeline."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

import ralph_loop.git_tools as git_tools
from ralph_loop.backlog import BacklogStore
from ralph_loop.config import LoopConfig
from ralph_loop.events import BacklogRefillEvent, EventLog
from ralph_loop.orchestrator import (
    EXIT_FAILURE,
    EXIT_HARD_STOP,
    EXIT_INTERRUPTED,
    EXIT_OK,
    Orchestrator,
    build_parked_task,
    has_more_work,
)
from ralph_loop.schemas import (
    FailureReason,
    Improvement,
    PipelineOutcome,
    StepName,
    StepResult,
    TaskSource,
)

pytestmark = pytest.mark.unit


class FakePipeline:
    def __init__(self, *outcomes: FailureReason | None) -> None:
        # ``None`` means success; the last entry repeats.
        self.outcomes = list(outcomes) or [None]
        self.runs: list[tuple[int, str | None, TaskSource]] = []

    def run(self, improvement_id, task=None, source=TaskSource.IDEATION, worker=0) -> PipelineOutcome:
        self.runs.append((improvement_id, task, source))
        reason = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        improvement = Improvement(
            id=improvement_id,
            branch=f"change-{improvement_id:03d}",
            workspace_path=f"/tmp/wt/change-{improvement_id:03d}",
            task=task,
            source=source,
            worker=worker,
        )
        if reason is None:
            return PipelineOutcome(improvement=improvement, success=True)
        return PipelineOutcome(improvement=improvement, reason=reason, workspace_preserved=True)


class FakeRefillRunner:
    def __init__(self, backlog: Path, tasks: list[str], success: bool = True) -> None:
        self.backlog = backlog
        self.tasks = tasks
        self.success = success
        self.steps: list[StepName] = []

    def run_step(self, request) -> StepResult:
        self.steps.append(request.step)
        if self.success and self.tasks:
            self.backlog.write_text("".join(f"- {t}\n" for t in self.tasks), encoding="utf-8")
        return StepResult(success=self.success)


class FakeMergeQueue:
    closed = False

    def close(self, timeout=None) -> None:
        self.closed = True


class FakeWorkspaces:
    released = False

    def release_all(self) -> None:
        self.released = True


@pytest.fixture(autouse=True)
def quiet_git(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(git_tools, "count_merged_improvements", lambda repo, prefixes, base: 0)
    monkeypatch.setattr(git_tools, "merge_commit_messages", lambda repo, base: [])


def _orchestrator(
    tmp_path: Path,
    pipeline: FakePipeline,
    *,
    backlog: str = "",
    triage: str = "",
    runner=None,
    cancel_event: threading.Event | None = None,
    **config,
) -> Orchestrator:
    cfg = LoopConfig(repo_dir=tmp_path, cooldown_seconds=0, **config)
    cfg.backlog_file.parent.mkdir(parents=True, exist_ok=True)
    cfg.backlog_file.write_text(backlog, encoding="utf-8")
    cfg.triage_file.write_text(triage, encoding="utf-8")
    return Orchestrator(
        cfg,
        runner=runner or FakeRefillRunner(cfg.backlog_file, []),
        event_log=EventLog(tmp_path / "loop.jsonl"),
        workspaces=FakeWorkspaces(),
        merge_queue=FakeMergeQueue(),
        pipeline=pipeline,
        cancel_event=cancel_event,
    )


def test_has_more_work() -> None:
    assert has_more_work(1, 2, 0, 0, 0)
    assert not has_more_work(2, 2, 5, 5, 0)
    assert has_more_work(0, None, 0, 1, 0)
    assert has_more_work(0, None, 0, 0, 1)
    assert not has_more_work(3, None, 0, 0, 0)


def test_reaches_target_and_consumes_tasks(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- Task A\n- Task B\n- Task C\n", target=2)

    assert orch.run() == EXIT_OK

    assert orch.completed == 2
    assert [run[1] for run in pipeline.runs] == ["Task A", "Task B"]
    assert [run[0] for run in pipeline.runs] == [1, 2]
    assert BacklogStore(orch.config.backlog_file).tasks() == ["Task C"]
    assert orch.merge_queue.closed
    assert orch.workspaces.released


def test_triage_is_served_before_backlog(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- Backlog task\n", triage="- Urgent fix\n", target=1)

    orch.run()

    assert pipeline.runs[0][1:] == ("Urgent fix", TaskSource.TRIAGE)
    assert BacklogStore(orch.config.triage_file).tasks() == []


def test_without_target_drains_lists(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- One\n- Two\n")

    assert orch.run() == EXIT_OK
    assert orch.completed == 2
    assert orch.backlog.is_empty()


def test_completed_count_comes_from_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(git_tools, "count_merged_improvements", lambda repo, prefixes, base: 4)
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- Task\n", target=5)

    assert orch.run() == EXIT_OK
    assert pipeline.runs == [(5, "Task", TaskSource.BACKLOG)]


def test_completed_count_includes_legacy_prefixes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        git_tools,
        "count_merged_improvements",
        lambda repo, prefixes, base: 1 if "harness-improvement" in prefixes else 0,
    )
    pipeline = FakePipeline()
    orch = _orchestrator(
        tmp_path, pipeline, backlog="- Task\n", target=2, legacy_branch_prefixes=["harness-improvement"]
    )

    assert orch.run() == EXIT_OK
    assert pipeline.runs == [(2, "Task", TaskSource.BACKLOG)]


def test_hard_stop_after_consecutive_failures(tmp_path: Path) -> None:
    pipeline = FakePipeline(FailureReason.IMPLEMENTATION_FAILED)
    orch = _orchestrator(tmp_path, pipeline, backlog="- Task A\n- Task B\n", target=10)

    assert orch.run() == EXIT_HARD_STOP
    assert orch.attempted == 3
    assert len(pipeline.runs) == 3
    # Failed tasks stay in the backlog for another attempt.
    assert orch.backlog.tasks() == ["Task A", "Task B"]


def test_success_resets_failure_count(tmp_path: Path) -> None:
    reasons = [FailureReason.NO_CHANGES, FailureReason.NO_CHANGES, None, FailureReason.NO_CHANGES, None]
    pipeline = FakePipeline(*reasons)
    orch = _orchestrator(tmp_path, pipeline, backlog="- Task A\n- Task B\n", target=2)

    assert orch.run() == EXIT_OK
    assert orch.attempted == 5


def test_escalated_task_is_parked_in_triage(tmp_path: Path) -> None:
    pipeline = FakePipeline(FailureReason.REVIEW_ESCALATED)
    orch = _orchestrator(tmp_path, pipeline, backlog="- Hard task\n", target=1, failure_threshold=1)

    assert orch.run() == EXIT_HARD_STOP

    assert orch.backlog.tasks() == []
    (parked,) = orch.triage.tasks()
    assert parked.startswith("Human escalation required for change-001 (improvement #1).")
    assert parked.endswith("Original task: Hard task")


def test_parked_task_does_not_nest_wrappers() -> None:
    improvement = Improvement(
        id=2,
        branch="change-002",
        workspace_path="/w2",
        task="Human escalation required for change-001 (improvement #1). Workspace: /w1. Original task: Add cache",
    )
    text = build_parked_task(PipelineOutcome(improvement=improvement, reason=FailureReason.MERGE_CONFLICT))
    assert text.count("Human escalation required") == 1
    assert text.endswith("Original task: Add cache")


def test_refill_runs_when_lists_are_empty(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    cfg_backlog = tmp_path / "ralph" / "backlog.md"
    runner = FakeRefillRunner(cfg_backlog, ["Generated task"])
    orch = _orchestrator(tmp_path, pipeline, runner=runner, target=1)

    assert orch.run() == EXIT_OK
    assert runner.steps == [StepName.BACKLOG_REFILL]
    assert pipeline.runs[0][1] == "Generated task"
    refills = [e for e in orch.event_log.read() if isinstance(e, BacklogRefillEvent)]
    assert refills[0].success and refills[0].tasks == 1


def test_failed_refill_with_nothing_running_exits_with_failure(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    runner = FakeRefillRunner(tmp_path / "ralph" / "backlog.md", [], success=False)
    orch = _orchestrator(tmp_path, pipeline, runner=runner, target=3)

    assert orch.run() == EXIT_FAILURE
    assert pipeline.runs == []


def test_cli_task_runs_once_without_touching_lists(tmp_path: Path) -> None:
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- Other\n", task="Explicit job")

    assert orch.run() == EXIT_OK
    assert pipeline.runs == [(1, "Explicit job", TaskSource.CLI)]
    assert orch.backlog.tasks() == ["Other"]


def test_cancel_before_start_reports_interrupt(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    pipeline = FakePipeline()
    orch = _orchestrator(tmp_path, pipeline, backlog="- Task\n", cancel_event=cancel)

    assert orch.run() == EXIT_INTERRUPTED
    assert pipeline.runs == []
