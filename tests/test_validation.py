"""Tests for the validation command wrapper."""

from __future__ import annotations

import shlex
import sys
import threading
from pathlib import Path

import pytest

from ralph_loop.validation import ValidationRunner, parse_command, summarise_output


def _python(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def test_parse_command_handles_strings_and_lists() -> None:
    assert parse_command("npm run validate") == ["npm", "run", "validate"]
    assert parse_command("pytest -k 'not slow'") == ["pytest", "-k", "not slow"]
    assert parse_command(["make", "", None, " check "]) == ["make", "check"]
    assert parse_command("   ") is None
    assert parse_command(None) is None


def test_summarise_output_keeps_head_and_tail() -> None:
    text = "\n".join(f"line {i}" for i in range(200))
    summary = summarise_output(text, max_lines=20)
    lines = summary.splitlines()
    assert lines[0] == "line 0"
    assert lines[-1] == "line 199"
    assert "(180 lines omitted)" in summary


def test_empty_command_fails() -> None:
    result = ValidationRunner("").run(".")
    assert result.passed is False


@pytest.mark.integration
def test_pass_and_fail_exit_codes(tmp_path: Path) -> None:
    ok = ValidationRunner(_python("print('all good')")).run(tmp_path)
    bad = ValidationRunner(_python("import sys; print('2 failed'); sys.exit(3)")).run(tmp_path)

    assert ok.passed is True
    assert "all good" in ok.summary
    assert bad.passed is False
    assert bad.exit_code == 3
    assert "2 failed" in bad.summary


@pytest.mark.integration
def test_timeout_stops_the_command(tmp_path: Path) -> None:
    result = ValidationRunner(_python("import time; time.sleep(30)"), timeout=1).run(tmp_path)
    assert result.passed is False
    assert "timed out" in result.summary


@pytest.mark.integration
def test_cancel_stops_the_command(tmp_path: Path) -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        result = ValidationRunner(_python("import time; time.sleep(30)")).run(tmp_path, cancel)
    finally:
        timer.cancel()
    assert result.passed is False
    assert "cancelled" in result.summary


def test_missing_binary_fails_cleanly(tmp_path: Path) -> None:
    result = ValidationRunner(str(tmp_path / "no-such-tool")).run(tmp_path)
    assert result.passed is False
    assert "failed to start" in result.summary
