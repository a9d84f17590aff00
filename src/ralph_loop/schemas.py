"""Pydantic models for structured data passed between loop components."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Agent steps
# ---------------------------------------------------------------------------


class AgentBackend(str, Enum):
    """Coding-agent implementations a step can be dispatched to."""

    CLAUDE = "claude"
    CODEX = "codex"


class StepName(str, Enum):
    """Agent invocations the loop performs."""

    BACKLOG_REFILL = "backlog-refill"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    MERGE = "merge"


# Short labels used in worker log prefixes.
STEP_LABELS: dict[StepName, str] = {
    StepName.BACKLOG_REFILL: "refill",
    StepName.PLAN: "plan",
    StepName.IMPLEMENT: "impl",
    StepName.REVIEW: "review",
    StepName.MERGE: "merge",
}


class StepResult(BaseModel):
    """Outcome of one agent invocation.

    Transport problems (spawn failure, timeout, cancellation) are reported as
    ``success=False`` with the error text in ``output_text``; runners never
    raise for them.
    """

    backend: AgentBackend = AgentBackend.CLAUDE
    success: bool = False
    turns: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_seconds: float = 0.0
    output_text: str = ""

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class StepSummary(BaseModel):
    """Accumulated usage for one pipeline step of an improvement."""

    step: StepName
    backend: AgentBackend
    turns: int = 0
    cost_usd: float = 0.0
    tokens: int = 0
    duration_seconds: float = 0.0

    @classmethod
    def from_result(cls, step: StepName, result: StepResult) -> StepSummary:
        return cls(
            step=step,
            backend=result.backend,
            turns=result.turns,
            cost_usd=result.cost_usd,
            tokens=result.tokens,
            duration_seconds=result.duration_seconds,
        )

    def add(self, result: StepResult) -> None:
        """Fold another invocation's usage into this summary."""
        self.turns += result.turns
        self.cost_usd += result.cost_usd
        self.tokens += result.tokens
        self.duration_seconds += result.duration_seconds


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class PipelineState(str, Enum):
    """States of the per-improvement state machine."""

    CREATED = "created"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"
    ESCALATED = "escalated"


TERMINAL_STATES = frozenset(
    {PipelineState.MERGED, PipelineState.FAILED, PipelineState.ESCALATED}
)


class FailureReason(str, Enum):
    """Why an improvement did not reach the merged state."""

    WORKSPACE_UNAVAILABLE = "workspace_unavailable"
    PLANNING_FAILED = "planning_failed"
    PLAN_MISSING = "plan_missing"
    IMPLEMENTATION_FAILED = "implementation_failed"
    NO_CHANGES = "no_changes"
    PUSH_FAILED = "push_failed"
    REVIEW_REQUEST_FAILED = "review_request_failed"
    REVIEW_ESCALATED = "review_escalated"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_FAILED = "merge_failed"
    CANCELLED = "cancelled"
    ERROR = "error"


class TaskSource(str, Enum):
    """Where the task text for an improvement came from."""

    BACKLOG = "backlog"
    TRIAGE = "triage"
    CLI = "cli"
    IDEATION = "ideation"


class ReviewVerdict(str, Enum):
    """Classification of a review agent's output."""

    PASSED = "passed"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


class Improvement(BaseModel):
    """One unit of work: a task driven through a branch-bound workspace."""

    id: int
    branch: str
    workspace_path: str
    task: str | None = None
    source: TaskSource = TaskSource.IDEATION
    worker: int = 0
    state: PipelineState = PipelineState.CREATED
    steps: list[StepSummary] = Field(default_factory=list)
    review_cycles: int = 0
    review_request: str | None = None

    @property
    def total_cost_usd(self) -> float:
        return sum(s.cost_usd for s in self.steps)

    @property
    def total_duration_seconds(self) -> float:
        return sum(s.duration_seconds for s in self.steps)


class PipelineOutcome(BaseModel):
    """Result a pipeline hands back to the orchestrator."""

    improvement: Improvement
    success: bool = False
    reason: FailureReason | None = None
    detail: str = ""
    workspace_preserved: bool = False

    @property
    def state(self) -> PipelineState:
        return self.improvement.state


def branch_name_for(prefix: str, improvement_id: int) -> str:
    """Return the deterministic branch name for an improvement id."""
    return f"{prefix}-{improvement_id:03d}"
