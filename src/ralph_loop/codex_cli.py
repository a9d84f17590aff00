"""Interface to the OpenAI Codex CLI (``codex exec``)."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ralph_loop.agent_runner import AgentRunner, StepRequest, register_agent
from ralph_loop.runner_common import coerce_int, execute_streaming_json_command, resolve_binary
from ralph_loop.schemas import AgentBackend, StepResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 900
_SUMMARY_LIMIT = 60
_TEXT_KEYS = (
    "text",
    "output_text",
    "last_agent_message",
    "review_output",
    "message",
    "content",
    "final_answer",
    "summary_text",
)


def extract_text(value: Any, depth: int = 0) -> str:
    """Flatten the text fields of a (possibly nested) Codex payload."""
    if depth > 5 or value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(t for t in (extract_text(v, depth + 1) for v in value) if t)
    if not isinstance(value, dict):
        return ""
    parts = (extract_text(value.get(key), depth + 1) for key in _TEXT_KEYS)
    return "\n".join(p for p in parts if p)


class CodexStreamState:
    """Running totals while a ``codex exec --json`` stream is consumed."""

    def __init__(self) -> None:
        self.turns = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.last_message = ""
        self.turn_failed = False
        self.errors: list[str] = []

    def feed(self, data: dict[str, Any], request: StepRequest | None = None) -> None:
        etype = data.get("type")
        item = data.get("item") if isinstance(data.get("item"), dict) else {}

        if etype == "item.started" and item.get("type") == "command_execution" and request is not None:
            cmd = str(item.get("command") or "")
            request.emit_tool_call("Bash", cmd if len(cmd) <= _SUMMARY_LIMIT else cmd[:_SUMMARY_LIMIT] + "...")
        elif etype == "item.completed" and item.get("type") in {"agent_message", "review_output"}:
            text = extract_text(item)
            if text:
                self.last_message = text
        elif etype == "turn.completed":
            self.turns += 1
            usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
            self.input_tokens += max(0, coerce_int(usage.get("input_tokens")))
            self.output_tokens += max(0, coerce_int(usage.get("output_tokens")))
            text = extract_text(data.get("last_agent_message"))
            if text:
                self.last_message = text
        elif etype == "turn.failed":
            self.turn_failed = True
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            self.errors.append(str(error.get("message") or data.get("message") or "turn.failed"))
        elif etype == "error":
            message = data.get("message")
            if isinstance(message, str) and message:
                self.errors.append(message)


class CodexRunner(AgentRunner):
    """Spawn ``codex exec --json`` and parse its JSONL event stream.

    Turns are counted from ``turn.completed`` events. Codex does not report
    cost, so ``cost_usd`` is always 0 and shown as N/A.
    """

    backend = AgentBackend.CODEX

    def __init__(
        self,
        codex_binary: str = "codex",
        timeout: int = DEFAULT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.codex_binary = codex_binary
        self.timeout = max(0, coerce_int(timeout))
        self.env_overrides = env_overrides or {}

    def build_command(self, request: StepRequest, output_file: Path) -> list[str]:
        cmd = [resolve_binary(self.codex_binary), "exec", "--json", "--full-auto"]
        if request.model:
            cmd.extend(["-m", request.model])
        cmd.extend(["--output-last-message", str(output_file), "-"])
        return cmd

    def _execute(self, request: StepRequest) -> StepResult:
        cwd = Path(request.cwd).resolve()
        if not cwd.is_dir():
            return StepResult(backend=self.backend, output_text=f"cwd does not exist: {cwd}")

        state = CodexStreamState()
        with tempfile.TemporaryDirectory(prefix="ralph-codex-") as tmp:
            output_file = Path(tmp) / "output.txt"
            execution = execute_streaming_json_command(
                cmd=self.build_command(request, output_file),
                cwd=cwd,
                process_name="Codex",
                on_event=lambda data: state.feed(data, request),
                stdin_text=request.prompt,
                env={**os.environ, **self.env_overrides},
                timeout_seconds=self.timeout,
                cancel_event=request.cancel_event,
            )
            try:
                output_text = output_file.read_text(encoding="utf-8")
            except OSError:
                output_text = ""

        if execution.spawn_error:
            return StepResult(backend=self.backend, output_text=f"Failed to execute codex: {execution.spawn_error}")
        if execution.cancelled:
            return StepResult(backend=self.backend, output_text="Execution cancelled")
        if execution.timed_out:
            return StepResult(
                backend=self.backend,
                output_text=f"Codex timed out after {self.timeout}s with no output",
            )

        if not output_text.strip():
            output_text = state.last_message
        success = (
            execution.exit_code == 0
            and not state.turn_failed
            and (state.turns > 0 or bool(output_text.strip()))
        )
        if not success:
            detail = "\n".join(state.errors) or execution.stderr_text[-500:]
            logger.error(
                "Codex failed (code=%s, turns=%d, turn_failed=%s): %s",
                execution.exit_code,
                state.turns,
                state.turn_failed,
                detail,
            )
            output_text = output_text or detail
        return StepResult(
            backend=self.backend,
            success=success,
            turns=state.turns,
            cost_usd=0.0,
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            output_text=output_text,
        )


# ── Register with the agent registry ─────────────────────────────
register_agent(AgentBackend.CODEX.value, CodexRunner)
