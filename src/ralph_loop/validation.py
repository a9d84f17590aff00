"""Run the project's validation command inside a workspace."""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.runner_common import terminate_process

logger = logging.getLogger(__name__)

DEFAULT_VALIDATE_COMMAND = "npm run validate"


def parse_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Parse a shell-like string or a token list into argv tokens."""
    if command is None:
        return None
    if isinstance(command, str):
        raw = command.strip()
        if not raw:
            return None
        try:
            parts = shlex.split(raw)
        except ValueError:
            logger.warning("Could not parse command %r with shell quoting; splitting on whitespace.", raw)
            parts = raw.split()
        return [p for p in parts if p] or None
    cleaned = [str(part).strip() for part in command if part is not None]
    return [p for p in cleaned if p] or None


@dataclass
class ValidationResult:
    passed: bool
    exit_code: int
    summary: str = ""


class ValidationRunner:
    """Pass/fail wrapper around one external command.

    Parameters
    ----------
    command:
        Command line, e.g. ``"npm run validate"``.
    timeout:
        Maximum seconds the command may run; 0 disables the limit.
    """

    def __init__(self, command: str | Sequence[str] = DEFAULT_VALIDATE_COMMAND, timeout: int = 1800) -> None:
        self.argv = parse_command(command)
        self.command = " ".join(self.argv or [])
        self.timeout = timeout

    def run(self, cwd: str | Path, cancel_event: threading.Event | None = None) -> ValidationResult:
        if not self.argv:
            return ValidationResult(passed=False, exit_code=-1, summary="No validation command configured")

        logger.info("Running validation: %s (cwd=%s)", self.command, cwd)
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as output:
            try:
                proc = subprocess.Popen(
                    self.argv,
                    cwd=Path(cwd),
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    start_new_session=True,
                )
            except OSError as exc:
                return ValidationResult(passed=False, exit_code=-1, summary=f"Validation command failed to start: {exc}")

            deadline = time.monotonic() + self.timeout if self.timeout > 0 else None
            reason = ""
            while proc.poll() is None:
                if cancel_event is not None and cancel_event.wait(0.5):
                    reason = "cancelled"
                elif cancel_event is None:
                    time.sleep(0.5)
                if not reason and deadline is not None and time.monotonic() >= deadline:
                    reason = f"timed out after {self.timeout}s"
                if reason:
                    terminate_process(proc, process_name="validation", reason=reason)
                    break
            proc.wait()
            output.seek(0)
            summary = summarise_output(output.read())

        if reason:
            return ValidationResult(passed=False, exit_code=-1, summary=f"Validation {reason}\n{summary}".strip())
        return ValidationResult(passed=proc.returncode == 0, exit_code=proc.returncode, summary=summary)


def summarise_output(text: str, max_lines: int = 60) -> str:
    """Keep the head and tail of long command output."""
    lines = text.strip().splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    head, tail = lines[:10], lines[-(max_lines - 10):]
    return "\n".join([*head, f"  ... ({len(lines) - max_lines} lines omitted) ...", *tail])
