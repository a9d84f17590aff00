"""Interface to Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from ralph_loop.agent_runner import AgentRunner, StepRequest, register_agent
from ralph_loop.runner_common import (
    coerce_float,
    coerce_int,
    execute_streaming_json_command,
    resolve_binary,
)
from ralph_loop.schemas import AgentBackend, StepResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 900  # seconds without output before the child is killed
_SHELL_WRAPPER_RE = re.compile(r"^/bin/(?:zsh|bash|sh)\s+-lc\s+(['\"])(.*)\1$", re.DOTALL)
_SUMMARY_LIMIT = 80


def _relative(path: str, cwd: Path) -> str:
    try:
        return os.path.relpath(path, cwd)
    except ValueError:
        return path


def summarize_tool_input(tool: str, tool_input: dict[str, Any], cwd: Path) -> str:
    """Return a short, cwd-relative description of a tool call."""
    if tool in {"Read", "Write", "Edit", "MultiEdit"}:
        path = tool_input.get("file_path")
        return _relative(path, cwd) if isinstance(path, str) else ""
    if tool == "Grep":
        pattern = tool_input.get("pattern") if isinstance(tool_input.get("pattern"), str) else ""
        path = tool_input.get("path")
        where = _relative(path, cwd) if isinstance(path, str) else "."
        return f'"{pattern}" in {where}'
    if tool == "Glob":
        pattern = tool_input.get("pattern")
        return pattern if isinstance(pattern, str) else ""
    if tool == "Bash":
        cmd = tool_input.get("command")
        if not isinstance(cmd, str):
            return ""
        wrapped = _SHELL_WRAPPER_RE.match(cmd)
        if wrapped:
            cmd = wrapped.group(2)
        cmd = cmd.replace(f"{cwd}{os.sep}", "")
        return cmd if len(cmd) <= _SUMMARY_LIMIT else cmd[:_SUMMARY_LIMIT] + "…"
    if tool == "Task":
        description = tool_input.get("description")
        return description if isinstance(description, str) else ""
    return ""


class ClaudeCodeRunner(AgentRunner):
    """Spawn ``claude -p`` and parse its stream-json output.

    The prompt is written to stdin. ``stream-json`` emits one object per line::

        {"type": "system", ...}
        {"type": "assistant", "message": {"content": [...]}}
        {"type": "result", "num_turns": 12, "total_cost_usd": 0.4, "usage": {...}, "result": "..."}

    Every ``tool_use`` block becomes a ``tool_call`` event; the final
    ``result`` object carries turns, cost, token usage and the output text.
    """

    backend = AgentBackend.CLAUDE

    def __init__(
        self,
        claude_binary: str = "claude",
        timeout: int = DEFAULT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.claude_binary = claude_binary
        self.timeout = max(0, coerce_int(timeout))
        self.env_overrides = env_overrides or {}

    def build_command(self, request: StepRequest) -> list[str]:
        cmd = [
            resolve_binary(self.claude_binary),
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if request.max_turns > 0:
            cmd.extend(["--max-turns", str(request.max_turns)])
        if request.model:
            cmd.extend(["--model", request.model])
        return cmd

    def _execute(self, request: StepRequest) -> StepResult:
        cwd = Path(request.cwd).resolve()
        if not cwd.is_dir():
            return StepResult(backend=self.backend, output_text=f"cwd does not exist: {cwd}")

        def _on_event(data: dict[str, Any]) -> None:
            for tool, tool_input in iter_tool_uses(data):
                request.emit_tool_call(tool, summarize_tool_input(tool, tool_input, cwd))

        execution = execute_streaming_json_command(
            cmd=self.build_command(request),
            cwd=cwd,
            process_name="Claude Code",
            on_event=_on_event,
            stdin_text=request.prompt,
            env={**os.environ, **self.env_overrides},
            timeout_seconds=self.timeout,
            cancel_event=request.cancel_event,
        )
        if execution.spawn_error:
            return StepResult(backend=self.backend, output_text=f"Failed to execute claude: {execution.spawn_error}")
        if execution.cancelled:
            return StepResult(backend=self.backend, output_text="Execution cancelled")
        if execution.timed_out:
            return StepResult(
                backend=self.backend,
                output_text=f"Claude Code timed out after {self.timeout}s with no output",
            )
        return aggregate_claude_events(execution.events, execution.exit_code, execution.stderr_text)


def iter_tool_uses(data: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Return ``(tool_name, input)`` pairs for the tool_use blocks of an assistant event."""
    if data.get("type") != "assistant":
        return []
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    uses = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "tool_use":
            tool_input = block.get("input")
            uses.append((str(block.get("name") or "unknown"), tool_input if isinstance(tool_input, dict) else {}))
    return uses


def _assistant_text(data: dict[str, Any]) -> str:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        str(block.get("text", ""))
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ).strip()


def aggregate_claude_events(
    events: list[dict[str, Any]], exit_code: int, stderr: str = ""
) -> StepResult:
    """Combine parsed stream-json events into a :class:`StepResult`."""
    result_event: dict[str, Any] | None = None
    last_text = ""
    for data in events:
        etype = data.get("type")
        if etype == "result":
            result_event = data
        elif etype == "assistant":
            text = _assistant_text(data)
            if text:
                last_text = text

    if result_event is None:
        detail = stderr or last_text or f"Claude Code exited with status {exit_code} and no result"
        return StepResult(backend=AgentBackend.CLAUDE, output_text=detail[-2000:])

    usage = result_event.get("usage") if isinstance(result_event.get("usage"), dict) else {}
    output = result_event.get("result")
    output_text = output if isinstance(output, str) else last_text
    is_error = bool(result_event.get("is_error")) or result_event.get("subtype") not in (None, "success")
    success = exit_code == 0 and not is_error
    if not success and not output_text:
        output_text = stderr or f"Claude Code exited with status {exit_code}"

    return StepResult(
        backend=AgentBackend.CLAUDE,
        success=success,
        turns=max(0, coerce_int(result_event.get("num_turns"))),
        cost_usd=max(0.0, coerce_float(result_event.get("total_cost_usd"))),
        input_tokens=max(0, coerce_int(usage.get("input_tokens"))),
        output_tokens=max(0, coerce_int(usage.get("output_tokens"))),
        output_text=output_text,
    )


# ── Register with the agent registry ─────────────────────────────
register_agent(AgentBackend.CLAUDE.value, ClaudeCodeRunner)
