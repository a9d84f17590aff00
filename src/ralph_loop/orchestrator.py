"""Root loop: hand tasks to pipelines until the target is met or work runs out.

Tasks come from an explicit ``--task``, then the triage list, then the
backlog; an empty backlog is refilled by the backlog agent. Up to
``parallelism`` pipelines run at once on worker threads, and their merges
are serialized by the shared :class:`~ralph_loop.merge_queue.MergeQueue`.
A task is removed from its list only after its merge is confirmed.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from ralph_loop import git_tools, review_requests
from ralph_loop.agent_runner import StepRequest
from ralph_loop.backlog import BacklogStore, unwrap_escalated_task
from ralph_loop.config import LoopConfig
from ralph_loop.events import BacklogRefillEvent, ErrorEvent, EventLog, TaskReconciledEvent
from ralph_loop.integrators import LocalIntegrator, PullRequestIntegrator
from ralph_loop.merge_queue import MergeQueue
from ralph_loop.pipeline import ImprovementPipeline, StepRunner
from ralph_loop.prompts import PromptCatalog
from ralph_loop.reconcile import MatchPolicy, ReconcileReport, ReconciliationEngine
from ralph_loop.reporting import RULE
from ralph_loop.schemas import FailureReason, PipelineOutcome, StepName, TaskSource
from ralph_loop.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_HARD_STOP = 2
EXIT_INTERRUPTED = 130

_PARKED_REASONS = frozenset(
    {FailureReason.REVIEW_ESCALATED, FailureReason.MERGE_CONFLICT, FailureReason.MERGE_FAILED}
)


@dataclass(frozen=True)
class TaskClaim:
    text: str | None
    source: TaskSource

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.source.value, self.text)


def has_more_work(
    completed: int,
    target: int | None,
    triage_count: int,
    backlog_count: int,
    in_flight: int,
) -> bool:
    """With a target, run until it is met; without one, until the lists are drained."""
    if target is not None:
        return completed < target
    return triage_count > 0 or backlog_count > 0 or in_flight > 0


def build_parked_task(outcome: PipelineOutcome) -> str:
    improvement = outcome.improvement
    label = improvement.review_request or improvement.branch
    original = unwrap_escalated_task(improvement.task or "")
    return (
        f"Human escalation required for {label} (improvement #{improvement.id}). "
        f"Workspace: {improvement.workspace_path}. Original task: {original}"
    )


class Orchestrator:
    """Owns the stores, the workspace manager, the merge queue and the worker pool."""

    def __init__(
        self,
        config: LoopConfig,
        *,
        runner: StepRunner,
        event_log: EventLog | None = None,
        workspaces: WorkspaceManager | None = None,
        merge_queue: MergeQueue | None = None,
        pipeline: ImprovementPipeline | None = None,
        prompts: PromptCatalog | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.cancel_event = cancel_event or threading.Event()
        self.event_log = event_log or EventLog(config.log_file)
        self.prompts = prompts or PromptCatalog(config.prompts_file)
        self.backlog = BacklogStore(config.backlog_file, name="backlog")
        self.triage = BacklogStore(config.triage_file, name="triage")
        self.workspaces = workspaces or WorkspaceManager(
            config.repo_dir,
            config.worktree_dir,
            base_branch=config.base_branch,
            link_paths=config.link_paths,
        )
        if merge_queue is None:
            integrator_cls = PullRequestIntegrator if config.integration == "pull_request" else LocalIntegrator
            merge_queue = MergeQueue(
                integrator_cls(config.repo_dir, config.base_branch), self.workspaces, self.event_log
            )
        self.merge_queue = merge_queue
        self.pipeline = pipeline or ImprovementPipeline(
            config,
            runner=runner,
            workspaces=self.workspaces,
            merge_queue=self.merge_queue,
            event_log=self.event_log,
            prompts=self.prompts,
            cancel_event=self.cancel_event,
        )
        self.reconciler = ReconciliationEngine(
            self.event_log,
            self.backlog,
            self.triage,
            repo_dir=config.repo_dir,
            branch_prefixes=config.branch_prefixes,
            base_branch=config.base_branch,
            policy=MatchPolicy(config.match_threshold, config.match_min_shared_tokens),
        )

        self.completed = 0
        self.consecutive_failures = 0
        self.attempted = 0
        self._claimed: set[tuple[str, str | None]] = set()

    # -- task sources -------------------------------------------------------

    def reconcile(self, reason: str) -> ReconcileReport:
        report = self.reconciler.run()
        if report.removed_total:
            logger.warning(
                "Backlog sync (%s) removed %d completed task(s) (%d backlog, %d triage)",
                reason,
                report.removed_total,
                len(report.removed_from_backlog),
                len(report.removed_from_triage),
            )
        return report

    def acquire_task(self) -> TaskClaim | None:
        """First unclaimed task, triage before backlog."""
        if self.config.task:
            return TaskClaim(self.config.task, TaskSource.CLI)
        for store, source in ((self.triage, TaskSource.TRIAGE), (self.backlog, TaskSource.BACKLOG)):
            for text in store.tasks():
                claim = TaskClaim(text, source)
                if claim.key not in self._claimed:
                    return claim
        return None

    def _has_unclaimed(self, store: BacklogStore, source: TaskSource) -> bool:
        return any((source.value, text) not in self._claimed for text in store.tasks())

    def ensure_backlog(self) -> bool:
        """Make sure a task is available, running the backlog refill when both lists are empty."""
        if self.config.task:
            return True
        if self._has_unclaimed(self.triage, TaskSource.TRIAGE) or not self.backlog.is_empty():
            return True
        if not self.triage.is_empty():
            # Everything left is already being worked on.
            return True
        return self.refill_backlog()

    def refill_backlog(self) -> bool:
        agent = self.config.agents.backlog
        logger.info("Backlog empty; refilling with the %s agent", agent.label())
        try:
            backlog_rel = self.config.backlog_file.relative_to(self.config.repo_dir).as_posix()
        except ValueError:
            backlog_rel = str(self.config.backlog_file)
        self.config.backlog_file.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run_step(
            StepRequest(
                prompt=self.prompts.render("backlog_refill", backlog_file=backlog_rel),
                step=StepName.BACKLOG_REFILL,
                cwd=self.config.repo_dir,
                backend=agent.backend,
                model=agent.model,
                improvement=self.completed,
                max_turns=self.config.max_turns,
                cancel_event=self.cancel_event,
                event_log=self.event_log,
            )
        )
        tasks = self.backlog.tasks()
        self.event_log.append(BacklogRefillEvent(success=result.success, tasks=len(tasks)))
        if not result.success:
            logger.error("Backlog refill failed")
            return False
        logger.info("Backlog refilled: %d tasks", len(tasks))
        for task in tasks:
            logger.info("  - %s", task)
        self.reconcile("post-refill")
        if self.backlog.is_empty():
            logger.error("Refill produced no tasks; stopping")
            return False
        return True

    def import_open_review_requests(self) -> int:
        """Put open pull requests from earlier runs on the triage list."""
        if self.config.task or self.config.integration != "pull_request":
            return 0
        added = 0
        for request in review_requests.list_open_review_requests(self.config.repo_dir, self.config.branch_prefix):
            task = (
                f"Outstanding pull request {request.url} on branch {request.branch}: "
                "address review feedback, fix validation and get it merged."
            )
            if self.triage.append(task):
                added += 1
        if added:
            logger.warning("Imported %d outstanding pull request(s) into triage", added)
        return added

    # -- outcomes -----------------------------------------------------------

    def _record_outcome(self, claim: TaskClaim, outcome: PipelineOutcome) -> None:
        self._claimed.discard(claim.key)
        improvement = outcome.improvement
        if outcome.success:
            self.completed += 1
            self.consecutive_failures = 0
            self._consume_task(claim, improvement.id)
            target = f"/{self.config.target}" if self.config.target is not None else ""
            logger.info("Progress: %d%s merged", self.completed, target)
            return

        self.consecutive_failures += 1
        if outcome.reason in _PARKED_REASONS:
            self._park(claim, outcome)
        logger.warning(
            "Improvement #%d failed: %s (consecutive failures: %d)",
            improvement.id,
            outcome.reason.value if outcome.reason else "unknown",
            self.consecutive_failures,
        )

    def _store_for(self, source: TaskSource) -> BacklogStore | None:
        if source is TaskSource.BACKLOG:
            return self.backlog
        if source is TaskSource.TRIAGE:
            return self.triage
        return None

    def _consume_task(self, claim: TaskClaim, improvement: int) -> None:
        store = self._store_for(claim.source)
        if store is None or not claim.text:
            return
        if store.remove(claim.text):
            logger.info("Task removed from %s after merge", store.name)
            self.event_log.append(
                TaskReconciledEvent(improvement=improvement, store=store.name, task=claim.text)
            )

    def _park(self, claim: TaskClaim, outcome: PipelineOutcome) -> None:
        store = self._store_for(claim.source)
        if store is None or not claim.text:
            return
        store.remove(claim.text)
        self.triage.append(build_parked_task(outcome))
        logger.warning(
            "Escalated improvement #%d to triage; workspace preserved at %s",
            outcome.improvement.id,
            outcome.improvement.workspace_path,
        )

    # -- main loop ----------------------------------------------------------

    def _banner(self) -> None:
        cfg = self.config
        logger.info(RULE)
        logger.info("  Ralph loop, target: %s", cfg.target_label())
        logger.info("  Parallelism    : %d", cfg.parallelism)
        logger.info("  Branch prefix  : %s", cfg.branch_prefix)
        logger.info("  Repo           : %s", cfg.repo_dir)
        logger.info("  Worktrees      : %s", cfg.worktree_dir)
        logger.info("  Integration    : %s", cfg.integration)
        logger.info("  Max turns/step : %d", cfg.max_turns)
        logger.info("  Review cycles  : %d-%d", cfg.min_review_cycles, cfg.max_review_cycles)
        for role in ("backlog", "plan", "implement", "review"):
            logger.info("  %-15s: %s", f"{role.capitalize()} agent", getattr(cfg.agents, role).label())
        if cfg.task:
            logger.info("  Task           : %s", cfg.task)
        logger.info("  Triage         : %d tasks", len(self.triage.tasks()))
        logger.info("  Backlog        : %d tasks", len(self.backlog.tasks()))
        logger.info(RULE)

    def run(self) -> int:
        """Run the loop and return the process exit code."""
        cfg = self.config
        self.reconcile("startup")
        self.import_open_review_requests()
        self._banner()

        self.completed = git_tools.count_merged_improvements(cfg.repo_dir, cfg.branch_prefixes, cfg.base_branch)
        target = cfg.target
        if target is None and cfg.task:
            target = self.completed + 1
        logger.info("Already completed: %d%s", self.completed, f"/{target}" if target is not None else "")
        next_id = self.completed + 1
        exit_code = EXIT_OK

        in_flight: dict[Future[PipelineOutcome], tuple[int, TaskClaim]] = {}
        pool = ThreadPoolExecutor(max_workers=cfg.parallelism, thread_name_prefix="ralph-worker")
        try:
            while True:
                if self.cancel_event.is_set():
                    break
                if self.consecutive_failures >= cfg.failure_threshold:
                    logger.error(
                        "%d consecutive failures (threshold: %d); stopping",
                        self.consecutive_failures,
                        cfg.failure_threshold,
                    )
                    exit_code = EXIT_HARD_STOP
                    break
                if not has_more_work(
                    self.completed, target, len(self.triage.tasks()), len(self.backlog.tasks()), len(in_flight)
                ):
                    break

                busy = {slot for slot, _ in in_flight.values()}
                for slot in (s for s in range(cfg.parallelism) if s not in busy):
                    if self.cancel_event.is_set():
                        break
                    if target is not None and self.completed + len(in_flight) >= target:
                        break
                    if not self.ensure_backlog():
                        if not in_flight:
                            logger.error("No tasks available and no workers running; stopping")
                            exit_code = EXIT_FAILURE
                        break
                    claim = self.acquire_task()
                    if claim is None:
                        break
                    if claim.source is not TaskSource.CLI:
                        self._claimed.add(claim.key)
                    improvement = next_id
                    next_id += 1
                    self.attempted += 1
                    logger.info(
                        "[W%d] Starting %s task (%d triage, %d backlog): %s",
                        slot,
                        claim.source.value,
                        len(self.triage.tasks()),
                        len(self.backlog.tasks()),
                        (claim.text or "(ideation)")[:80],
                    )
                    future = pool.submit(self.pipeline.run, improvement, claim.text, claim.source, slot)
                    in_flight[future] = (slot, claim)

                if exit_code != EXIT_OK or not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    _, claim = in_flight.pop(future)
                    self._record_outcome(claim, future.result())

                if self.cancel_event.wait(cfg.cooldown_seconds):
                    break

            if in_flight:
                logger.info("Waiting for %d remaining worker(s)", len(in_flight))
                for future in list(in_flight):
                    _, claim = in_flight.pop(future)
                    self._record_outcome(claim, future.result())
        except Exception as exc:
            logger.exception("Fatal error in the loop")
            self.event_log.append(ErrorEvent(message=f"{type(exc).__name__}: {exc}"))
            self.cancel_event.set()
            exit_code = EXIT_FAILURE
        except BaseException:
            self.cancel_event.set()
            raise
        finally:
            pool.shutdown(wait=True)
            self.merge_queue.close()
            self.workspaces.release_all()

        if self.cancel_event.is_set() and exit_code == EXIT_OK:
            exit_code = EXIT_INTERRUPTED
        logger.info(RULE)
        logger.info("  Done: %d improvement(s) merged, %d attempted this run", self.completed, self.attempted)
        logger.info(RULE)
        return exit_code
