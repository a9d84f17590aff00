"""Unit tests for claude_code module."""

from __future__ import annotations

from pathlib import Path

import ralph_loop.claude_code as claude_module
from ralph_loop.agent_runner import StepRequest
from ralph_loop.claude_code import (
    ClaudeCodeRunner,
    aggregate_claude_events,
    iter_tool_uses,
    summarize_tool_input,
)
from ralph_loop.events import EventLog, ToolCallEvent
from ralph_loop.runner_common import StreamExecutionResult
from ralph_loop.schemas import AgentBackend, StepName


def _request(cwd: Path, **kwargs) -> StepRequest:
    return StepRequest(prompt="plan it", step=StepName.PLAN, cwd=cwd, **kwargs)


class TestBuildCommand:
    def test_basic(self, tmp_path: Path) -> None:
        cmd = ClaudeCodeRunner().build_command(_request(tmp_path, max_turns=40, model="opus"))
        assert Path(cmd[0]).name.lower().startswith("claude")
        assert cmd[1:4] == ["-p", "--output-format", "stream-json"]
        assert "--dangerously-skip-permissions" in cmd
        assert cmd[cmd.index("--max-turns") + 1] == "40"
        assert cmd[cmd.index("--model") + 1] == "opus"

    def test_no_model_or_turn_cap(self, tmp_path: Path) -> None:
        cmd = ClaudeCodeRunner().build_command(_request(tmp_path, max_turns=0))
        assert "--model" not in cmd
        assert "--max-turns" not in cmd

    def test_invalid_timeout_is_coerced(self) -> None:
        assert ClaudeCodeRunner(timeout="bad").timeout == 0  # type: ignore[arg-type]
        assert ClaudeCodeRunner(timeout=-5).timeout == 0


class TestToolSummaries:
    def test_paths_are_relative_to_cwd(self, tmp_path: Path) -> None:
        summary = summarize_tool_input("Edit", {"file_path": str(tmp_path / "src" / "app.py")}, tmp_path)
        assert summary == str(Path("src") / "app.py")

    def test_bash_unwraps_shell_and_truncates(self, tmp_path: Path) -> None:
        assert summarize_tool_input("Bash", {"command": "/bin/bash -lc 'npm test'"}, tmp_path) == "npm test"
        long = summarize_tool_input("Bash", {"command": "x" * 200}, tmp_path)
        assert long.endswith("…")
        assert len(long) == 81

    def test_grep_and_unknown(self, tmp_path: Path) -> None:
        assert summarize_tool_input("Grep", {"pattern": "TODO"}, tmp_path) == '"TODO" in .'
        assert summarize_tool_input("WebFetch", {"url": "x"}, tmp_path) == ""

    def test_iter_tool_uses_reads_assistant_blocks(self) -> None:
        event = {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Looking"},
                    {"type": "tool_use", "name": "Read", "input": {"file_path": "/a"}},
                ]
            },
        }
        assert iter_tool_uses(event) == [("Read", {"file_path": "/a"})]
        assert iter_tool_uses({"type": "result"}) == []


class TestAggregate:
    def test_result_event_supplies_usage(self) -> None:
        events = [
            {"type": "system"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}},
            {
                "type": "result",
                "subtype": "success",
                "num_turns": 12,
                "total_cost_usd": 0.42,
                "usage": {"input_tokens": 1000, "output_tokens": 250},
                "result": "PLAN: feat: add caching",
            },
        ]
        result = aggregate_claude_events(events, exit_code=0)
        assert result.success is True
        assert result.backend is AgentBackend.CLAUDE
        assert result.turns == 12
        assert result.cost_usd == 0.42
        assert result.tokens == 1250
        assert result.output_text == "PLAN: feat: add caching"

    def test_error_result_is_failure(self) -> None:
        events = [{"type": "result", "subtype": "error_max_turns", "num_turns": 100}]
        result = aggregate_claude_events(events, exit_code=0, stderr="turn cap")
        assert result.success is False
        assert result.turns == 100
        assert result.output_text == "turn cap"

    def test_missing_result_uses_last_text(self) -> None:
        events = [{"type": "assistant", "message": {"content": "partial answer"}}]
        result = aggregate_claude_events(events, exit_code=1)
        assert result.success is False
        assert result.output_text == "partial answer"


class TestExecute:
    def test_prompt_goes_to_stdin_and_tool_calls_are_logged(self, monkeypatch, tmp_path: Path) -> None:
        captured: dict[str, object] = {}

        def fake_execute(**kwargs):
            captured.update(kwargs)
            kwargs["on_event"](
                {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Glob", "input": {"pattern": "**/*.py"}}]}}
            )
            return StreamExecutionResult(
                events=[{"type": "result", "subtype": "success", "num_turns": 1, "result": "DONE: ok"}],
                stderr_lines=[],
                exit_code=0,
            )

        monkeypatch.setattr(claude_module, "execute_streaming_json_command", fake_execute)
        log = EventLog(tmp_path / "loop.jsonl")
        result = ClaudeCodeRunner(timeout=30).run_step(_request(tmp_path, event_log=log))

        assert result.success is True
        assert captured["stdin_text"] == "plan it"
        assert captured["timeout_seconds"] == 30
        assert "plan it" not in captured["cmd"]
        tool_events = [e for e in log.read() if isinstance(e, ToolCallEvent)]
        assert [(e.tool, e.summary) for e in tool_events] == [("Glob", "**/*.py")]

    def test_timeout_is_a_failure_not_an_exception(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setattr(
            claude_module,
            "execute_streaming_json_command",
            lambda **_kw: StreamExecutionResult(events=[], stderr_lines=[], exit_code=-9, timed_out=True),
        )
        result = ClaudeCodeRunner(timeout=5).run_step(_request(tmp_path))
        assert result.success is False
        assert "timed out" in result.output_text

    def test_missing_cwd(self, tmp_path: Path) -> None:
        result = ClaudeCodeRunner().run_step(_request(tmp_path / "gone"))
        assert result.success is False
        assert "cwd does not exist" in result.output_text
