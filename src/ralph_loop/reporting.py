"""Human-readable progress lines for console logging."""

from __future__ import annotations

import logging
from collections.abc import Iterable, MutableMapping
from typing import Any

from ralph_loop.schemas import STEP_LABELS, AgentBackend, StepName, StepSummary

RULE = "=" * 60


class WorkerLogAdapter(logging.LoggerAdapter):
    """Prefix records with ``[W<slot>:<step>]`` so parallel workers stay readable."""

    def __init__(self, logger: logging.Logger, worker: int, step: StepName | None = None) -> None:
        super().__init__(logger, {"worker": worker})
        self.worker = worker
        self.step = step

    def for_step(self, step: StepName) -> WorkerLogAdapter:
        return WorkerLogAdapter(self.logger, self.worker, step)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        if self.step is None:
            return f"[W{self.worker}] {msg}", kwargs
        return f"[W{self.worker}:{STEP_LABELS[self.step]}] {msg}", kwargs


def format_cost(backend: AgentBackend, cost_usd: float, tokens: int) -> str:
    if backend is AgentBackend.CODEX:
        return "N/A"
    return f"${cost_usd:.2f}, {round(tokens / 1000)}k tok"


def format_step_summary(summary: StepSummary) -> str:
    """e.g. ``✓ implement done (42s, 17 turns, $0.31, 120k tok)``."""
    secs = round(summary.duration_seconds)
    cost = format_cost(summary.backend, summary.cost_usd, summary.tokens)
    return f"✓ {summary.step.value} done ({secs}s, {summary.turns} turns, {cost})"


def improvement_summary_table(improvement: int, steps: Iterable[StepSummary]) -> list[str]:
    """Per-step cost/turn table for one finished improvement."""
    steps = list(steps)
    lines = ["+" + "-" * 58, f"| Improvement #{improvement} complete"]
    for s in steps:
        label = f"{s.step.value}:".ljust(15)
        secs = round(s.duration_seconds)
        if s.backend is AgentBackend.CODEX:
            lines.append(f"| {label} {secs:>4}s {s.turns:>4} turns  {'N/A':>6}  {'N/A':>8}  [codex]")
        else:
            lines.append(
                f"| {label} {secs:>4}s {s.turns:>4} turns  ${s.cost_usd:>5.2f}  {round(s.tokens / 1000):>4}k tok"
            )

    total_secs = round(sum(s.duration_seconds for s in steps))
    total_turns = sum(s.turns for s in steps)
    total = f"| {'Total:'.ljust(15)} {total_secs:>4}s {total_turns:>4} turns"
    if any(s.backend is AgentBackend.CLAUDE for s in steps):
        total_cost = sum(s.cost_usd for s in steps)
        total_tok = round(sum(s.tokens for s in steps) / 1000)
        total += f"  ${total_cost:>5.2f}  {total_tok:>4}k tok"
    lines.append(total)
    lines.append("+" + "-" * 58)
    return lines
