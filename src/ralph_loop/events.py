"""Append-only structured event log.

Every component records what it did as one JSON object per line. The record
kinds form a tagged union discriminated on the ``event`` field; this module is
the only place that serializes or parses them. Records are never rewritten
once appended, so reconciliation and offline tooling can trust the log even
after a crash.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ralph_loop.file_io import append_text, read_text

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ts: str = ""
    worker: int | None = None


class StepStartEvent(_Event):
    event: Literal["step_start"] = "step_start"
    improvement: int | None = None
    step: str
    backend: str


class ToolCallEvent(_Event):
    event: Literal["tool_call"] = "tool_call"
    improvement: int | None = None
    step: str
    tool: str
    summary: str = ""


class StepEndEvent(_Event):
    event: Literal["step_end"] = "step_end"
    improvement: int | None = None
    step: str
    backend: str
    success: bool
    turns: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_seconds: float = 0.0


class StateChangedEvent(_Event):
    event: Literal["state_changed"] = "state_changed"
    improvement: int
    from_state: str
    to_state: str
    reason: str | None = None


class WorkerStartedEvent(_Event):
    event: Literal["worker_started"] = "worker_started"
    improvement: int
    task: str
    source: str = "backlog"
    branch: str | None = None


class WorkerFinishedEvent(_Event):
    event: Literal["worker_finished"] = "worker_finished"
    improvement: int
    success: bool
    state: str | None = None


class ImprovementDoneEvent(_Event):
    event: Literal["improvement_done"] = "improvement_done"
    improvement: int
    total_cost_usd: float = 0.0
    total_duration_seconds: float = 0.0


class ImprovementFailedEvent(_Event):
    event: Literal["improvement_failed"] = "improvement_failed"
    improvement: int
    reason: str
    detail: str = ""
    workspace: str | None = None


class ImprovementEscalatedEvent(_Event):
    event: Literal["improvement_escalated"] = "improvement_escalated"
    improvement: int
    review_cycles: int
    workspace: str | None = None


class MergeQueuedEvent(_Event):
    event: Literal["merge_queued"] = "merge_queued"
    improvement: int
    branch: str
    job_id: str


class MergeCompletedEvent(_Event):
    event: Literal["merge_completed"] = "merge_completed"
    improvement: int
    branch: str | None = None
    job_id: str | None = None
    success: bool
    reason: str | None = None


class BacklogRefillEvent(_Event):
    event: Literal["backlog_refill"] = "backlog_refill"
    success: bool
    tasks: int = 0


class TaskReconciledEvent(_Event):
    event: Literal["task_reconciled"] = "task_reconciled"
    improvement: int
    store: str
    task: str
    method: str = "orchestrator"
    score: float | None = None


class ErrorEvent(_Event):
    event: Literal["error"] = "error"
    message: str
    improvement: int | None = None


class UnknownEvent(_Event):
    """A record whose kind this version does not know; kept for completeness."""

    model_config = ConfigDict(extra="allow")

    event: str


LogEvent = Annotated[
    Union[
        StepStartEvent,
        ToolCallEvent,
        StepEndEvent,
        StateChangedEvent,
        WorkerStartedEvent,
        WorkerFinishedEvent,
        ImprovementDoneEvent,
        ImprovementFailedEvent,
        ImprovementEscalatedEvent,
        MergeQueuedEvent,
        MergeCompletedEvent,
        BacklogRefillEvent,
        TaskReconciledEvent,
        ErrorEvent,
    ],
    Field(discriminator="event"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(LogEvent)
KNOWN_EVENT_KINDS = frozenset(
    {
        "step_start",
        "tool_call",
        "step_end",
        "state_changed",
        "worker_started",
        "worker_finished",
        "improvement_done",
        "improvement_failed",
        "improvement_escalated",
        "merge_queued",
        "merge_completed",
        "backlog_refill",
        "task_reconciled",
        "error",
    }
)


def parse_event(data: dict[str, Any]) -> _Event:
    """Validate one decoded record into its event model."""
    if data.get("event") not in KNOWN_EVENT_KINDS:
        return UnknownEvent.model_validate(data)
    return _EVENT_ADAPTER.validate_python(data)


class EventLog:
    """JSONL event sink bound to a file and, optionally, a worker slot."""

    def __init__(self, path: str | Path, *, worker: int | None = None) -> None:
        self.path = Path(path)
        self.worker = worker

    def bind(self, worker: int) -> EventLog:
        """Return a log writing to the same file that stamps *worker* on records."""
        return EventLog(self.path, worker=worker)

    def append(self, event: _Event) -> None:
        record = event.model_copy()
        if not record.ts:
            record.ts = utc_now()
        if record.worker is None and self.worker is not None:
            record.worker = self.worker
        line = record.model_dump_json(exclude_none=True)
        append_text(self.path, line + "\n")

    def __call__(self, event: _Event) -> None:
        self.append(event)

    def read(self) -> list[_Event]:
        return list(self.iter_events())

    def iter_events(self) -> Iterator[_Event]:
        for lineno, raw in enumerate(read_text(self.path).splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Skip invalid event log line %d in %s: %s", lineno, self.path, exc)
                continue
            if not isinstance(data, dict):
                continue
            try:
                yield parse_event(data)
            except ValidationError as exc:
                logger.warning(
                    "Skip malformed %r event on line %d in %s: %s",
                    data.get("event"),
                    lineno,
                    self.path,
                    exc.errors()[0].get("msg", exc),
                )
