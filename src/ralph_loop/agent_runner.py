"""Abstract base class for coding-agent runners.

Every backend (Claude Code, Codex, test fakes) implements the same
``run_step`` contract so the pipeline can dispatch a step to any of them.
Runners never raise for transport problems: spawn failures, timeouts,
non-zero exits and cancellation all come back as ``success=False``.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.events import EventLog, StepEndEvent, StepStartEvent, ToolCallEvent
from ralph_loop.schemas import AgentBackend, StepName, StepResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100


@dataclass
class StepRequest:
    """Everything a runner needs for one agent invocation."""

    prompt: str
    step: StepName
    cwd: Path
    backend: AgentBackend = AgentBackend.CLAUDE
    model: str = ""
    improvement: int | None = None
    max_turns: int = DEFAULT_MAX_TURNS
    cancel_event: threading.Event = field(default_factory=threading.Event)
    event_log: EventLog | None = None

    def emit_tool_call(self, tool: str, summary: str = "") -> None:
        logger.debug("[%s] %s %s", self.step.value, tool, summary)
        if self.event_log is not None:
            self.event_log.append(
                ToolCallEvent(
                    improvement=self.improvement,
                    step=self.step.value,
                    tool=tool,
                    summary=summary,
                )
            )


class AgentRunner(abc.ABC):
    """Common interface for coding-agent CLI wrappers.

    Subclasses implement :meth:`_execute`; :meth:`run_step` wraps it with
    the ``step_start`` / ``step_end`` events and timing.
    """

    #: Backend this runner serves.
    backend: AgentBackend = AgentBackend.CLAUDE

    def run_step(self, request: StepRequest) -> StepResult:
        """Execute one step and return its usage and output."""
        if request.event_log is not None:
            request.event_log.append(
                StepStartEvent(
                    improvement=request.improvement,
                    step=request.step.value,
                    backend=self.backend.value,
                )
            )
        start = time.monotonic()
        if request.cancel_event.is_set():
            result = StepResult(backend=self.backend, output_text="Cancelled before start")
        else:
            result = self._execute(request)
        if not result.duration_seconds:
            result.duration_seconds = time.monotonic() - start
        if request.event_log is not None:
            request.event_log.append(
                StepEndEvent(
                    improvement=request.improvement,
                    step=request.step.value,
                    backend=self.backend.value,
                    success=result.success,
                    turns=result.turns,
                    cost_usd=result.cost_usd,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    duration_seconds=round(result.duration_seconds, 3),
                )
            )
        if not result.success:
            logger.error(
                "Step %s (%s) failed: %s",
                request.step.value,
                self.backend.value,
                (result.output_text or "no output").strip()[:500],
            )
        return result

    @abc.abstractmethod
    def _execute(self, request: StepRequest) -> StepResult:
        """Run the agent and return its aggregated result."""


class AgentDispatcher:
    """Route each request to the runner registered for its backend."""

    def __init__(self, runners: Mapping[AgentBackend, AgentRunner]) -> None:
        self.runners = dict(runners)

    def run_step(self, request: StepRequest) -> StepResult:
        runner = self.runners.get(request.backend)
        if runner is None:
            return StepResult(
                backend=request.backend,
                output_text=f"No runner configured for backend {request.backend.value!r}",
            )
        return runner.run_step(request)


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentRunner]] = {}


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )
    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)
