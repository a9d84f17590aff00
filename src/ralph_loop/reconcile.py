"""Prune backlog and triage entries whose work is already merged.

The event log links improvement ids to task text (``worker_started``) and to
confirmed merges (``merge_completed`` with ``success``). Merges that never got
logged (for example after a crash) are recovered from merge commits on the
base branch. Every resolved task then removes at most one line: an exact
match if there is one, else the single best fuzzy match above the policy
threshold.

Each removal is recorded as a ``task_reconciled`` event, and improvements that
already have one are skipped, so repeated passes converge without removing
anything twice.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop import git_tools
from ralph_loop.backlog import BacklogEntry, BacklogStore
from ralph_loop.events import (
    EventLog,
    MergeCompletedEvent,
    TaskReconciledEvent,
    WorkerStartedEvent,
)
from ralph_loop.file_io import locked_path

logger = logging.getLogger(__name__)

IDEATION_TASK = "(ideation)"

_PATH_RE = re.compile(r"(?:[\w.-]+/)+[\w.-]+\.[a-z0-9]+")
_EMPHASIS_RE = re.compile(r"[*_~]+")
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_TASK_TRAILER_RE = re.compile(r"^Task:\s*(?P<task>.+?)\s*$", re.MULTILINE)

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
        "into", "is", "it", "its", "of", "on", "or", "plus", "so", "that",
        "the", "then", "this", "to", "via", "with",
    }
)


@dataclass(frozen=True)
class MatchPolicy:
    """When a paraphrased backlog line counts as the same task.

    A line matches when the Jaccard similarity of the two token sets reaches
    ``threshold`` and they share at least ``min_shared_tokens`` tokens. Lines
    whose wording is identical once punctuation and markup are dropped always
    match, however short.
    """

    threshold: float = 0.6
    min_shared_tokens: int = 3


def normalize_task(text: str) -> str:
    """Case-fold and strip markdown and file-path noise from a task line."""
    value = text.casefold().replace("`", " ")
    value = _PATH_RE.sub(" ", value)
    value = _EMPHASIS_RE.sub(" ", value)
    return " ".join(value.split())


def task_tokens(text: str) -> frozenset[str]:
    return frozenset(
        tok
        for tok in _TOKEN_RE.findall(normalize_task(text))
        if len(tok) >= 2 and tok not in STOPWORDS
    )


def task_wording(text: str) -> tuple[str, ...]:
    """Every word of the normalized line, in order, punctuation dropped."""
    return tuple(_TOKEN_RE.findall(normalize_task(text)))


def similarity(a: str, b: str) -> tuple[float, int]:
    """Return ``(jaccard, shared_token_count)`` for two task texts."""
    left, right = task_tokens(a), task_tokens(b)
    if not left or not right:
        return 0.0, 0
    shared = len(left & right)
    return shared / len(left | right), shared


def extract_task_trailer(message: str) -> str | None:
    match = _TASK_TRAILER_RE.search(message)
    return match.group("task") if match else None


@dataclass
class Removal:
    improvement: int
    store: str
    task: str
    method: str
    score: float | None = None


@dataclass
class ReconcileReport:
    merged_tasks_seen: int = 0
    removed_from_backlog: list[str] = field(default_factory=list)
    removed_from_triage: list[str] = field(default_factory=list)
    removals: list[Removal] = field(default_factory=list)

    @property
    def removed_total(self) -> int:
        return len(self.removed_from_backlog) + len(self.removed_from_triage)


@dataclass(frozen=True)
class _Candidate:
    store: BacklogStore
    entry: BacklogEntry


class ReconciliationEngine:
    """Remove backlog/triage lines for confirmed-merged improvements."""

    def __init__(
        self,
        event_log: EventLog,
        backlog: BacklogStore,
        triage: BacklogStore,
        *,
        repo_dir: str | Path | None = None,
        branch_prefixes: Sequence[str] = ("change",),
        base_branch: str = git_tools.DEFAULT_BASE_BRANCH,
        policy: MatchPolicy | None = None,
    ) -> None:
        self.event_log = event_log
        self.backlog = backlog
        self.triage = triage
        self.repo_dir = Path(repo_dir) if repo_dir is not None else None
        self.branch_prefixes = tuple(branch_prefixes)
        self.base_branch = base_branch
        self.policy = policy or MatchPolicy()

    # -- resolving merged tasks ---------------------------------------------

    def _merge_history(self) -> dict[int, str]:
        """Map improvement id to merge commit message for prefixed branches."""
        if self.repo_dir is None or not self.branch_prefixes:
            return {}
        pattern = re.compile(
            r"\b(?:%s)-(?P<id>\d+)\b" % "|".join(re.escape(p) for p in self.branch_prefixes)
        )
        history: dict[int, str] = {}
        for message in git_tools.merge_commit_messages(self.repo_dir, self.base_branch):
            subject = message.splitlines()[0] if message else ""
            match = pattern.search(subject)
            if match:
                history.setdefault(int(match.group("id")), message)
        return history

    def merged_tasks(self) -> tuple[dict[int, str], set[tuple[int, str]]]:
        """Return ``({improvement: task}, {(improvement, task) already reconciled})``."""
        started: dict[int, str] = {}
        merged: dict[int, str | None] = {}
        reconciled: set[tuple[int, str]] = set()
        seen_ids: set[int] = set()

        for event in self.event_log.iter_events():
            if isinstance(event, WorkerStartedEvent):
                seen_ids.add(event.improvement)
                task = event.task.strip()
                if task and task != IDEATION_TASK:
                    started[event.improvement] = task
                else:
                    started.pop(event.improvement, None)
            elif isinstance(event, MergeCompletedEvent):
                seen_ids.add(event.improvement)
                if event.success:
                    merged[event.improvement] = started.get(event.improvement)
            elif isinstance(event, TaskReconciledEvent):
                reconciled.add((event.improvement, event.task.strip()))

        unresolved = (seen_ids - set(merged)) | {i for i, t in merged.items() if t is None}
        if unresolved:
            history = self._merge_history()
            for improvement in sorted(unresolved):
                message = history.get(improvement)
                if message is None:
                    continue
                task = started.get(improvement) or extract_task_trailer(message)
                if task:
                    logger.debug("Improvement #%d merge found in git history", improvement)
                merged[improvement] = task

        resolved = {i: t for i, t in sorted(merged.items()) if t}
        return resolved, reconciled

    # -- matching -----------------------------------------------------------

    def _best_match(
        self, task: str, candidates: list[_Candidate]
    ) -> tuple[_Candidate | None, str, float | None]:
        for cand in candidates:
            if cand.entry.text == task:
                return cand, "exact", None

        # Same words, different punctuation or markup.
        wording = task_wording(task)
        if wording:
            for cand in candidates:
                if task_wording(cand.entry.text) == wording:
                    return cand, "fuzzy", 1.0

        best: _Candidate | None = None
        best_score = 0.0
        for cand in candidates:
            score, shared = similarity(task, cand.entry.text)
            if shared < self.policy.min_shared_tokens or score < self.policy.threshold:
                continue
            if score > best_score:
                best, best_score = cand, score
        if best is None:
            return None, "", None
        return best, "fuzzy", round(best_score, 3)

    def run(self) -> ReconcileReport:
        """Run one reconciliation pass and rewrite the task files."""
        tasks, reconciled = self.merged_tasks()
        report = ReconcileReport(merged_tasks_seen=len(tasks))
        stores = (self.backlog, self.triage)

        with ExitStack() as stack:
            for store in stores:
                stack.enter_context(locked_path(store.path))

            candidates = [
                _Candidate(store, entry) for store in stores for entry in store.read_all()
            ]
            claimed: dict[BacklogStore, set[int]] = {store: set() for store in stores}

            for improvement, task in tasks.items():
                if (improvement, task) in reconciled:
                    continue
                cand, method, score = self._best_match(task, candidates)
                if cand is None:
                    continue
                candidates.remove(cand)
                claimed[cand.store].add(cand.entry.position)
                report.removals.append(
                    Removal(
                        improvement=improvement,
                        store=cand.store.name,
                        task=task,
                        method=method,
                        score=score,
                    )
                )
                logger.info(
                    "Improvement #%d merged; removing %s line (%s): %s",
                    improvement,
                    cand.store.name,
                    method,
                    cand.entry.text,
                )

            for store in stores:
                removed = store.rewrite_without(claimed[store])
                if store is self.backlog:
                    report.removed_from_backlog.extend(removed)
                else:
                    report.removed_from_triage.extend(removed)

        for removal in report.removals:
            self.event_log.append(
                TaskReconciledEvent(
                    improvement=removal.improvement,
                    store=removal.store,
                    task=removal.task,
                    method=removal.method,
                    score=removal.score,
                )
            )
        return report
