"""Tests for the runner base class, the dispatcher and the registry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ralph_loop.agent_runner import (
    AgentDispatcher,
    AgentRunner,
    StepRequest,
    get_agent_class,
    list_agents,
    register_agent,
)
from ralph_loop.claude_code import ClaudeCodeRunner
from ralph_loop.codex_cli import CodexRunner
from ralph_loop.events import EventLog, StepEndEvent, StepStartEvent, ToolCallEvent
from ralph_loop.schemas import AgentBackend, StepName, StepResult


class _EchoRunner(AgentRunner):
    backend = AgentBackend.CODEX

    def __init__(self) -> None:
        self.calls = 0

    def _execute(self, request: StepRequest) -> StepResult:
        self.calls += 1
        request.emit_tool_call("Read", "README.md")
        return StepResult(backend=self.backend, success=True, turns=2, output_text=request.prompt)


def _request(tmp_path: Path, **kwargs) -> StepRequest:
    return StepRequest(prompt="hello", step=StepName.IMPLEMENT, cwd=tmp_path, **kwargs)


def test_run_step_records_start_tool_and_end_events(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "loop.jsonl")
    result = _EchoRunner().run_step(_request(tmp_path, improvement=3, event_log=log))

    assert result.success is True
    assert result.duration_seconds > 0
    kinds = [type(e) for e in log.read()]
    assert kinds == [StepStartEvent, ToolCallEvent, StepEndEvent]
    end = log.read()[-1]
    assert end.improvement == 3
    assert end.turns == 2
    assert end.backend == "codex"


def test_cancelled_request_never_executes(tmp_path: Path) -> None:
    runner = _EchoRunner()
    cancel = threading.Event()
    cancel.set()

    result = runner.run_step(_request(tmp_path, cancel_event=cancel))

    assert runner.calls == 0
    assert result.success is False


def test_dispatcher_routes_by_backend(tmp_path: Path) -> None:
    runner = _EchoRunner()
    dispatcher = AgentDispatcher({AgentBackend.CODEX: runner})

    ok = dispatcher.run_step(_request(tmp_path, backend=AgentBackend.CODEX))
    missing = dispatcher.run_step(_request(tmp_path, backend=AgentBackend.CLAUDE))

    assert ok.success is True
    assert missing.success is False
    assert "claude" in missing.output_text


def test_builtin_runners_are_registered() -> None:
    assert get_agent_class("claude") is ClaudeCodeRunner
    assert get_agent_class("codex") is CodexRunner
    assert {"claude", "codex"} <= set(list_agents())


def test_registry_rejects_conflicts_and_unknown_keys() -> None:
    with pytest.raises(ValueError):
        register_agent("claude", CodexRunner)
    with pytest.raises(ValueError):
        register_agent("  ", CodexRunner)
    with pytest.raises(KeyError, match="Available"):
        get_agent_class("nonexistent")
