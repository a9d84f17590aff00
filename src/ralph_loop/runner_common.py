"""Shared subprocess plumbing for the agent CLI runners."""

from __future__ import annotations

import json
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_MAX_CAPTURED_EVENTS = 20_000
_DEFAULT_MAX_CAPTURED_STDERR_LINES = 5_000


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            return int(float(cleaned)) if cleaned else 0
        except (ValueError, OverflowError):
            return 0
    return 0


def coerce_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_json_object(line: str) -> dict[str, Any] | None:
    """Decode one JSONL line, returning None for non-object or invalid lines."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from a runner subprocess."""

    events: list[dict[str, Any]]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False
    spawn_error: str = ""

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def execute_streaming_json_command(
    *,
    cmd: list[str],
    cwd: Path,
    process_name: str,
    on_event: Callable[[dict[str, Any]], None] | None = None,
    stdin_text: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float = 0,
    cancel_event: threading.Event | None = None,
    max_events: int = _DEFAULT_MAX_CAPTURED_EVENTS,
) -> StreamExecutionResult:
    """Run a subprocess that prints JSONL on stdout.

    Each decoded object is passed to *on_event* as it arrives, on the calling
    thread. The child is killed when *cancel_event* is set or when no output
    arrives for *timeout_seconds* (0 disables the timeout). Spawn failures are
    reported in the result instead of raised.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            start_new_session=os.name != "nt",
        )
    except OSError as exc:
        logger.error("Failed to start %s: %s", process_name, exc)
        return StreamExecutionResult(
            events=[], stderr_lines=[], exit_code=-1, spawn_error=str(exc)
        )
    assert proc.stdout is not None and proc.stderr is not None

    events: deque[dict[str, Any]] = deque(maxlen=max(1, max_events))
    stderr_lines: deque[str] = deque(maxlen=_DEFAULT_MAX_CAPTURED_STDERR_LINES)
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _pump_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text)
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    def _collect(stream_name: str, line: str) -> None:
        if stream_name == "stderr":
            stderr_lines.append(line)
            return
        data = parse_json_object(line)
        if data is None:
            logger.debug("Non-JSON line from %s: %s", process_name, line[:200])
            return
        events.append(data)
        if on_event is not None:
            try:
                on_event(data)
            except Exception:  # pragma: no cover - observer errors must not kill the step
                logger.exception("%s event handler failed", process_name)

    threads = [
        threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True),
        threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True),
    ]
    if stdin_text is not None and proc.stdin is not None:
        threads.append(
            threading.Thread(target=_pump_stdin, args=(proc.stdin, stdin_text), daemon=True)
        )
    for thread in threads:
        thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    closed_streams: set[str] = set()
    timed_out = False
    cancelled = False

    try:
        while len(closed_streams) < 2:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                terminate_process(proc, process_name=process_name, reason="cancel")
                break
            if inactivity_timeout is not None and time.monotonic() - last_activity >= inactivity_timeout:
                timed_out = True
                terminate_process(
                    proc, process_name=process_name, reason="inactivity timeout"
                )
                break
            try:
                stream_name, payload = stream_queue.get(timeout=0.25)
            except queue.Empty:
                continue
            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue
            last_activity = time.monotonic()
            if payload:
                _collect(stream_name, str(payload))

        _wait_for_process(proc)

        # Lines buffered just before exit.
        while True:
            try:
                stream_name, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is not done_sentinel and payload:
                _collect(stream_name, str(payload))

        return StreamExecutionResult(
            events=list(events),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            cancelled=cancelled,
        )
    finally:
        for thread in threads:
            thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - defensive
        _kill_process(proc)
        proc.wait(timeout=5.0)


def terminate_process(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return
    logger.info("Stopping %s (%s)", process_name, reason)
    _signal_process(proc, "SIGTERM")
    try:
        proc.wait(timeout=terminate_timeout_seconds)
        return
    except subprocess.TimeoutExpired:
        logger.warning("%s did not exit after terminate during %s; forcing kill.", process_name, reason)
    _kill_process(proc)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _kill_process(proc: subprocess.Popen[str]) -> None:
    _signal_process(proc, "SIGKILL")


def _signal_process(proc: subprocess.Popen[str], sig_name: str) -> None:
    """Signal the child's process group on POSIX, the child itself elsewhere."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(OSError):
                os.killpg(os.getpgid(pid), getattr(signal, sig_name))
    with suppress(OSError):
        if sig_name == "SIGKILL":
            proc.kill()
        else:
            proc.terminate()
