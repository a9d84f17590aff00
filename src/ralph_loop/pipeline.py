"""Drive one improvement from plan to merge.

States::

    created -> planning -> implementing -> reviewing -> merging -> merged
                  |             |              |            |
                  +-------------+------> failed / escalated +

Planning is skipped when the workspace was resumed with committed work.
Only the implementation call is retried (once). Every transition is written
to the event log, and every failure is turned into a :class:`PipelineOutcome`
instead of an exception so the orchestrator can count it and move on.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Union

from ralph_loop import git_tools, review_requests
from ralph_loop.agent_runner import AgentDispatcher, AgentRunner, StepRequest
from ralph_loop.agent_signals import (
    REVIEW_FAILED,
    classify_review,
    done_summary,
    fixed_summary,
    plan_summary,
)
from ralph_loop.config import LoopConfig
from ralph_loop.events import (
    EventLog,
    ImprovementDoneEvent,
    ImprovementEscalatedEvent,
    ImprovementFailedEvent,
    StateChangedEvent,
    WorkerFinishedEvent,
    WorkerStartedEvent,
)
from ralph_loop.merge_queue import MergeJob, MergeQueue
from ralph_loop.prompts import PromptCatalog
from ralph_loop.prompts.catalog import truncate_findings
from ralph_loop.reconcile import IDEATION_TASK
from ralph_loop.reporting import WorkerLogAdapter, format_step_summary, improvement_summary_table
from ralph_loop.review_requests import ReviewRequest
from ralph_loop.schemas import (
    FailureReason,
    Improvement,
    PipelineOutcome,
    PipelineState,
    ReviewVerdict,
    StepName,
    StepResult,
    StepSummary,
    TaskSource,
    branch_name_for,
)
from ralph_loop.validation import ValidationRunner
from ralph_loop.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

StepRunner = Union[AgentRunner, AgentDispatcher]

# ── Commit titles ─────────────────────────────────────────────────

TITLE_MAX_LENGTH = 72
_LOW_SIGNAL_TITLES = frozenset(
    {"x", "fix", "fixes", "something", "improvement", "update", "changes", "misc"}
)
_TITLE_LABEL_RE = re.compile(r"^(PLAN|Title)\s*:\s*", re.IGNORECASE)
_CONVENTIONAL_PREFIX_RE = re.compile(
    r"^(feat|fix|chore|refactor|test|docs|ci|perf|style|build)(\(.+?\))?:\s*", re.IGNORECASE
)
_PREFIX_RULES = (
    ("test", re.compile(r"\btest(s|ing)?\b")),
    ("docs", re.compile(r"\bdoc(s|umentation)?\b")),
    ("ci", re.compile(r"\b(lint|ci|pipeline|workflow)\b")),
    ("refactor", re.compile(r"\brefactor\b")),
    ("fix", re.compile(r"\bfix(es|ed)?\b")),
    ("feat", re.compile(r"\b(add|implement|create|introduce)\b")),
)


def clean_title(value: str) -> str:
    text = " ".join((value or "").split())
    return _TITLE_LABEL_RE.sub("", text).rstrip(".;:, ")


def is_low_signal_title(value: str) -> bool:
    normalized = clean_title(value).lower()
    if len(normalized) < 4 or normalized in _LOW_SIGNAL_TITLES:
        return True
    return len(normalized.split(" ")) < 2


def infer_conventional_prefix(value: str) -> str:
    lowered = value.lower()
    for prefix, pattern in _PREFIX_RULES:
        if pattern.search(lowered):
            return prefix
    return "chore"


def truncate_title(value: str, limit: int = TITLE_MAX_LENGTH) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def build_improvement_title(improvement: int, plan: str = "", task: str | None = None) -> str:
    """Commit title from the plan summary, else the task, else ``improvement #N``."""
    for candidate in (clean_title(plan), clean_title(task or "")):
        if not is_low_signal_title(candidate):
            break
    else:
        candidate = f"improvement #{improvement}"
    if _CONVENTIONAL_PREFIX_RE.match(candidate):
        return truncate_title(candidate)
    return truncate_title(f"{infer_conventional_prefix(candidate)}: {candidate}")


def build_commit_message(title: str, body: str = "") -> str:
    return f"{title}\n{body}" if body else title


# ── Pipeline ──────────────────────────────────────────────────────


@dataclass
class _Run:
    """Mutable state of one pipeline run."""

    improvement: Improvement
    workspace: Workspace
    log: EventLog
    out: WorkerLogAdapter
    title: str = ""
    done: str = ""
    review_request: ReviewRequest | None = None


class ImprovementPipeline:
    """Runs improvements against isolated workspaces.

    One instance is shared by all worker threads; per-run state lives in
    :class:`_Run`.
    """

    def __init__(
        self,
        config: LoopConfig,
        *,
        runner: StepRunner,
        workspaces: WorkspaceManager,
        merge_queue: MergeQueue,
        event_log: EventLog,
        prompts: PromptCatalog | None = None,
        validator: ValidationRunner | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.workspaces = workspaces
        self.merge_queue = merge_queue
        self.event_log = event_log
        self.prompts = prompts or PromptCatalog(config.prompts_file)
        self.validator = validator or ValidationRunner(
            config.validate_command, timeout=config.validate_timeout_seconds
        )
        self.cancel_event = cancel_event or threading.Event()

    @property
    def pull_requests(self) -> bool:
        return self.config.integration == "pull_request"

    # -- entry point --------------------------------------------------------

    def run(
        self,
        improvement_id: int,
        task: str | None = None,
        source: TaskSource = TaskSource.IDEATION,
        worker: int = 0,
    ) -> PipelineOutcome:
        """Drive one improvement to a terminal state. Never raises for ordinary failures."""
        branch = branch_name_for(self.config.branch_prefix, improvement_id)
        improvement = Improvement(
            id=improvement_id,
            branch=branch,
            workspace_path=str(self.workspaces.path_for(branch)),
            task=task,
            source=source if task else TaskSource.IDEATION,
            worker=worker,
        )
        log = self.event_log.bind(worker)
        out = WorkerLogAdapter(logger, worker)
        log.append(
            WorkerStartedEvent(
                improvement=improvement_id,
                task=task or IDEATION_TASK,
                source=improvement.source.value,
                branch=branch,
            )
        )
        out.info("Improvement #%d on %s: %s", improvement_id, branch, (task or IDEATION_TASK)[:80])

        try:
            with self.workspaces.lease(branch) as workspace:
                outcome = self._drive(_Run(improvement, workspace, log, out))
        except Exception as exc:
            out.exception("Improvement #%d crashed", improvement_id)
            preserved = self.workspaces.path_for(branch).exists()
            log.append(
                StateChangedEvent(
                    improvement=improvement_id,
                    from_state=improvement.state.value,
                    to_state=PipelineState.FAILED.value,
                    reason=FailureReason.ERROR.value,
                )
            )
            outcome = self._terminal(
                improvement, log, out, FailureReason.ERROR, f"{type(exc).__name__}: {exc}", preserved
            )

        log.append(
            WorkerFinishedEvent(
                improvement=improvement_id, success=outcome.success, state=outcome.state.value
            )
        )
        return outcome

    def _drive(self, run: _Run) -> PipelineOutcome:
        if not run.workspace.created:
            return self._fail(run, FailureReason.WORKSPACE_UNAVAILABLE, "could not create workspace", preserve=False)

        if run.workspace.resumed:
            run.out.info("Resuming %s with existing commits; skipping planning", run.workspace.branch)
        else:
            outcome = self._plan(run)
            if outcome is not None:
                return outcome

        outcome = self._implement(run)
        if outcome is not None:
            return outcome

        if self.pull_requests:
            outcome = self._publish(run)
            if outcome is not None:
                return outcome

        passed = self._review(run)
        if isinstance(passed, PipelineOutcome):
            return passed
        if passed is None:
            return self._cancelled(run)
        if not passed:
            return self._escalate(run)
        return self._merge(run)

    # -- steps --------------------------------------------------------------

    def _plan(self, run: _Run) -> PipelineOutcome | None:
        self._transition(run, PipelineState.PLANNING)
        run.out.for_step(StepName.PLAN).info("[1/5] Planning")
        plan_doc = self.config.plan_doc_path
        if run.improvement.task:
            prompt = self.prompts.render("task_plan", task=run.improvement.task, plan_doc=plan_doc)
        else:
            target = f" of {self.config.target}" if self.config.target is not None else ""
            prompt = self.prompts.render(
                "ideation_plan", improvement=run.improvement.id, target_label=target, plan_doc=plan_doc
            )

        result = self._call(run, StepName.PLAN, prompt)
        if self.cancel_event.is_set():
            return self._cancelled(run)
        if not result.success:
            return self._fail(run, FailureReason.PLANNING_FAILED, _tail(result.output_text))
        if not (run.workspace.path / plan_doc).is_file():
            return self._fail(run, FailureReason.PLAN_MISSING, f"no plan written to {plan_doc}")
        run.title = build_improvement_title(run.improvement.id, plan_summary(result.output_text), run.improvement.task)
        run.out.info("Plan: %s", run.title)
        return None

    def _implement(self, run: _Run) -> PipelineOutcome | None:
        self._transition(run, PipelineState.IMPLEMENTING)
        run.out.for_step(StepName.IMPLEMENT).info("[2/5] Implementing")
        prompt = self.prompts.render(
            "implement",
            plan_doc=self.config.plan_doc_path,
            managed_files=self._managed_files_label(),
            validate_command=self.config.validate_command,
        )
        result = self._call(run, StepName.IMPLEMENT, prompt)
        if not result.success and not self.cancel_event.is_set():
            run.out.warning("Implementation failed; retrying once")
            result = self._call(run, StepName.IMPLEMENT, prompt)
        if self.cancel_event.is_set():
            return self._cancelled(run)
        if not result.success:
            return self._fail(run, FailureReason.IMPLEMENTATION_FAILED, _tail(result.output_text))

        if not run.title:
            run.title = build_improvement_title(run.improvement.id, "", run.improvement.task)
        run.done = done_summary(result.output_text)
        if run.done:
            run.out.info("DONE: %s", run.done)

        committed = self._commit(run, build_commit_message(run.title, run.done))
        if not committed and not git_tools.has_new_commits(run.workspace.path, self.config.base_branch):
            run.out.error("No changes produced")
            self.workspaces.cleanup(run.workspace.branch)
            return self._fail(run, FailureReason.NO_CHANGES, "no changes produced", preserve=False)
        return None

    def _publish(self, run: _Run) -> PipelineOutcome | None:
        branch = run.workspace.branch
        run.out.info("[3/5] Pushing %s and opening a pull request", branch)
        if not git_tools.push_branch(run.workspace.path, branch):
            return self._fail(run, FailureReason.PUSH_FAILED, f"could not push {branch}")
        body_lines = [f"Improvement #{run.improvement.id}"]
        if run.improvement.task:
            body_lines.append(f"Task: {run.improvement.task}")
        body_lines += ["", run.done or "Automated improvement."]
        request = review_requests.ensure_review_request(
            run.workspace.path, branch, run.title, "\n".join(body_lines), self.config.base_branch
        )
        if request is None:
            return self._fail(run, FailureReason.REVIEW_REQUEST_FAILED, f"no pull request for {branch}")
        run.improvement.review_request = request.url
        run.review_request = request
        run.out.info("Pull request: %s", request)
        return None

    def _review(self, run: _Run) -> bool | None | PipelineOutcome:
        """Run the review/fix loop.

        Returns True when the review passed, False when the cycle budget ran
        out, None on cancellation, or an outcome for a terminal push failure.
        """
        self._transition(run, PipelineState.REVIEWING)
        cfg = self.config
        out = run.out.for_step(StepName.REVIEW)
        for cycle in range(1, cfg.max_review_cycles + 1):
            run.improvement.review_cycles = cycle
            out.info("[4/5] Review cycle %d/%d", cycle, cfg.max_review_cycles)
            result = self._call(run, StepName.REVIEW, self._review_prompt(run, cycle))
            if self.cancel_event.is_set():
                return None
            verdict = classify_review(result.output_text) if result.success else ReviewVerdict.AMBIGUOUS

            if verdict is ReviewVerdict.PASSED:
                if cycle >= cfg.min_review_cycles:
                    out.info("Review passed")
                    return True
                out.info("Review passed early; running another cycle to reach the minimum of %d", cfg.min_review_cycles)
                continue

            if verdict is ReviewVerdict.FAILED:
                out.warning("Reviewer found issues; running fix step")
                findings = result.output_text.split(REVIEW_FAILED, 1)[1].strip() or result.output_text
                label = "review"
            else:
                out.warning("Ambiguous review output; running validation as tiebreaker")
                validation = self.validator.run(run.workspace.path, self.cancel_event)
                if self.cancel_event.is_set():
                    return None
                if validation.passed:
                    out.info("Validation passed")
                    return True
                out.warning("Validation failed; running fix step")
                findings = self.prompts.render(
                    "validation_findings",
                    validate_command=cfg.validate_command,
                    output=truncate_findings(validation.summary),
                )
                label = "validation"

            fix = self._call(
                run,
                StepName.IMPLEMENT,
                self.prompts.render(
                    "fix",
                    plan_doc=cfg.plan_doc_path,
                    findings=truncate_findings(findings),
                    managed_files=self._managed_files_label(),
                    validate_command=cfg.validate_command,
                ),
                accumulate_as=StepName.REVIEW,
            )
            if self.cancel_event.is_set():
                return None
            fixed = fixed_summary(fix.output_text)
            if fixed:
                out.info("FIXED: %s", fixed)
            committed = self._commit(run, f"{run.title} - fix from {label} (cycle {cycle})")
            if committed and self.pull_requests and not git_tools.push_branch(run.workspace.path, run.workspace.branch):
                return self._fail(run, FailureReason.PUSH_FAILED, f"could not push {label} fixes for cycle {cycle}")

        out.error("Exceeded %d review cycles; escalating to a human", cfg.max_review_cycles)
        return False

    def _merge(self, run: _Run) -> PipelineOutcome:
        if self.cancel_event.is_set():
            return self._cancelled(run)
        self._transition(run, PipelineState.MERGING)
        run.out.for_step(StepName.MERGE).info("Waiting for the merge queue")
        job = MergeJob(
            improvement=run.improvement.id,
            branch=run.workspace.branch,
            workspace=run.workspace,
            task=run.improvement.task,
            review_request=run.review_request,
            worker=run.improvement.worker,
        )
        result = self.merge_queue.enqueue(job)
        if not result.success:
            reason = result.reason or FailureReason.MERGE_FAILED
            return self._fail(run, reason, f"merge job {result.job_id}: {reason.value}", preserve=result.workspace_preserved)

        self._transition(run, PipelineState.MERGED)
        improvement = run.improvement
        run.log.append(
            ImprovementDoneEvent(
                improvement=improvement.id,
                total_cost_usd=round(improvement.total_cost_usd, 4),
                total_duration_seconds=round(improvement.total_duration_seconds, 3),
            )
        )
        for line in improvement_summary_table(improvement.id, improvement.steps):
            run.out.info("%s", line)
        return PipelineOutcome(improvement=improvement, success=True)

    # -- helpers ------------------------------------------------------------

    def _call(
        self,
        run: _Run,
        step: StepName,
        prompt: str,
        *,
        accumulate_as: StepName | None = None,
    ) -> StepResult:
        agent = self.config.agents.for_step(step)
        result = self.runner.run_step(
            StepRequest(
                prompt=prompt,
                step=step,
                cwd=run.workspace.path,
                backend=agent.backend,
                model=agent.model,
                improvement=run.improvement.id,
                max_turns=self.config.max_turns,
                cancel_event=self.cancel_event,
                event_log=run.log,
            )
        )
        key = accumulate_as or step
        summary = next((s for s in run.improvement.steps if s.step is key), None)
        if summary is None:
            summary = StepSummary.from_result(key, result)
            run.improvement.steps.append(summary)
        else:
            summary.add(result)
        if result.success:
            run.out.for_step(step).info("%s", format_step_summary(StepSummary.from_result(step, result)))
        return result

    def _commit(self, run: _Run, message: str) -> bool:
        """Commit everything except the main-managed task files."""
        if self.config.managed_paths:
            git_tools.restore_paths(run.workspace.path, self.config.managed_paths, self.config.base_branch)
        return git_tools.commit_all(run.workspace.path, message)

    def _review_prompt(self, run: _Run, cycle: int) -> str:
        if self.pull_requests and run.improvement.review_request:
            target = f"Pull request: {run.improvement.review_request}"
        else:
            target = f"Changes are on branch {run.workspace.branch}, compared with {self.config.base_branch}."
        return self.prompts.render(
            "review",
            branch=run.workspace.branch,
            cycle=cycle,
            max_cycles=self.config.max_review_cycles,
            review_target=target,
            base_branch=self.config.base_branch,
            plan_doc=self.config.plan_doc_path,
            validate_command=self.config.validate_command,
        )

    def _managed_files_label(self) -> str:
        return ", ".join(self.config.managed_paths) or "the backlog and triage files"

    def _transition(self, run: _Run, state: PipelineState, reason: str | None = None) -> None:
        previous = run.improvement.state
        run.improvement.state = state
        run.log.append(
            StateChangedEvent(
                improvement=run.improvement.id,
                from_state=previous.value,
                to_state=state.value,
                reason=reason,
            )
        )

    def _fail(self, run: _Run, reason: FailureReason, detail: str = "", *, preserve: bool = True) -> PipelineOutcome:
        self._transition(run, PipelineState.FAILED, reason.value)
        return self._terminal(run.improvement, run.log, run.out, reason, detail, preserve)

    def _terminal(
        self,
        improvement: Improvement,
        log: EventLog,
        out: WorkerLogAdapter,
        reason: FailureReason,
        detail: str,
        preserved: bool,
    ) -> PipelineOutcome:
        improvement.state = PipelineState.FAILED
        log.append(
            ImprovementFailedEvent(
                improvement=improvement.id,
                reason=reason.value,
                detail=detail,
                workspace=improvement.workspace_path if preserved else None,
            )
        )
        out.error("Improvement #%d failed (%s)%s", improvement.id, reason.value, f": {detail}" if detail else "")
        if preserved:
            out.info("Workspace preserved at %s", improvement.workspace_path)
        return PipelineOutcome(
            improvement=improvement, reason=reason, detail=detail, workspace_preserved=preserved
        )

    def _cancelled(self, run: _Run) -> PipelineOutcome:
        destroyed = self.workspaces.release(run.workspace)
        return self._fail(run, FailureReason.CANCELLED, "interrupted", preserve=not destroyed)

    def _escalate(self, run: _Run) -> PipelineOutcome:
        improvement = run.improvement
        self._transition(run, PipelineState.ESCALATED, FailureReason.REVIEW_ESCALATED.value)
        run.log.append(
            ImprovementEscalatedEvent(
                improvement=improvement.id,
                review_cycles=improvement.review_cycles,
                workspace=improvement.workspace_path,
            )
        )
        run.out.info("Workspace preserved at %s", improvement.workspace_path)
        return PipelineOutcome(
            improvement=improvement,
            reason=FailureReason.REVIEW_ESCALATED,
            detail=f"review did not pass within {improvement.review_cycles} cycles",
            workspace_preserved=True,
        )


def _tail(text: str, limit: int = 500) -> str:
    return (text or "").strip()[-limit:]
