"""Serialized merge decisions.

Pipelines run in parallel but the final "is this mergeable, and merge it"
step mutates the shared base branch. Every such decision goes through one
consumer thread, in the order jobs were submitted.
"""

from __future__ import annotations

import abc
import logging
import queue
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field

from ralph_loop.events import EventLog, MergeCompletedEvent, MergeQueuedEvent
from ralph_loop.review_requests import ReviewRequest
from ralph_loop.schemas import FailureReason
from ralph_loop.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class MergeJob:
    improvement: int
    branch: str
    workspace: Workspace
    task: str | None = None
    review_request: ReviewRequest | None = None
    worker: int | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class MergeResult:
    job_id: str
    success: bool
    reason: FailureReason | None = None
    workspace_preserved: bool = False


class Integrator(abc.ABC):
    """How a finished branch reaches the base branch."""

    @abc.abstractmethod
    def prepare(self, job: MergeJob) -> bool:
        """Bring the branch up to date with the base; True when it can be merged."""

    @abc.abstractmethod
    def merge(self, job: MergeJob) -> bool:
        """Integrate the branch; True once the merge is confirmed."""


_STOP = object()


class MergeQueue:
    """Single-consumer FIFO of merge jobs.

    ``submit`` returns a future immediately; ``enqueue`` blocks until the
    job has been processed. Jobs never overlap and complete in submission
    order, whatever the timing of the submitting threads.
    """

    def __init__(self, integrator: Integrator, workspaces: WorkspaceManager, event_log: EventLog) -> None:
        self.integrator = integrator
        self.workspaces = workspaces
        self.event_log = event_log
        self._jobs: queue.Queue[object] = queue.Queue()
        self._submit_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._closed = False

    def _log_for(self, job: MergeJob) -> EventLog:
        return self.event_log.bind(job.worker) if job.worker is not None else self.event_log

    def submit(self, job: MergeJob) -> Future[MergeResult]:
        future: Future[MergeResult] = Future()
        # Recording and queueing happen together so the log order matches the processing order.
        with self._submit_lock:
            if self._closed:
                raise RuntimeError("merge queue is closed")
            if self._thread is None:
                self._thread = threading.Thread(target=self._consume, name="merge-queue", daemon=True)
                self._thread.start()
            self._log_for(job).append(
                MergeQueuedEvent(improvement=job.improvement, branch=job.branch, job_id=job.job_id)
            )
            self._jobs.put((job, future))
        logger.info("Queued merge of %s (job %s, %d waiting)", job.branch, job.job_id, self._jobs.qsize())
        return future

    def enqueue(self, job: MergeJob) -> MergeResult:
        return self.submit(job).result()

    def close(self, timeout: float | None = None) -> None:
        """Stop accepting jobs and wait for queued ones to finish."""
        with self._submit_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._jobs.put(_STOP)
            thread.join(timeout)

    def _consume(self) -> None:
        while True:
            item = self._jobs.get()
            if item is _STOP:
                return
            job, future = item  # type: ignore[misc]
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = self._process(job)
            except Exception as exc:
                logger.exception("Merge job %s for %s crashed", job.job_id, job.branch)
                result = MergeResult(
                    job_id=job.job_id,
                    success=False,
                    reason=FailureReason.ERROR,
                    workspace_preserved=True,
                )
                self._log_for(job).append(
                    MergeCompletedEvent(
                        improvement=job.improvement,
                        branch=job.branch,
                        job_id=job.job_id,
                        success=False,
                        reason=f"{FailureReason.ERROR.value}: {exc}",
                    )
                )
                future.set_result(result)
                continue
            self._log_for(job).append(
                MergeCompletedEvent(
                    improvement=job.improvement,
                    branch=job.branch,
                    job_id=job.job_id,
                    success=result.success,
                    reason=result.reason.value if result.reason else None,
                )
            )
            future.set_result(result)

    def _process(self, job: MergeJob) -> MergeResult:
        logger.info("[5/5] Ensuring mergeability + deciding merge for %s", job.branch)
        if not self.integrator.prepare(job):
            logger.error("%s is not mergeable after syncing; workspace preserved at %s", job.branch, job.workspace.path)
            return MergeResult(job.job_id, False, FailureReason.MERGE_CONFLICT, workspace_preserved=True)
        if not self.integrator.merge(job):
            logger.error("Merging %s failed; needs attention. Workspace preserved at %s", job.branch, job.workspace.path)
            return MergeResult(job.job_id, False, FailureReason.MERGE_FAILED, workspace_preserved=True)
        logger.info("Merged %s", job.branch)
        self.workspaces.cleanup(job.branch)
        return MergeResult(job.job_id, True)
