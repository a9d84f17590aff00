"""Plain-text task lists (backlog and triage).

Each task is a markdown bullet (``- task text``). Other lines such as
headings, notes and blank lines are kept verbatim when the file is rewritten.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.file_io import atomic_write_text, locked_path, read_text

logger = logging.getLogger(__name__)

_TASK_LINE_RE = re.compile(r"^\s*[-*]\s+(?P<text>\S.*?)\s*$")

ESCALATION_MARKER = "Original task:"


@dataclass(frozen=True)
class BacklogEntry:
    text: str
    position: int  # zero-based line index in the file


def parse_entries(content: str) -> list[BacklogEntry]:
    entries: list[BacklogEntry] = []
    for index, line in enumerate(content.splitlines()):
        match = _TASK_LINE_RE.match(line)
        if match:
            entries.append(BacklogEntry(text=match.group("text"), position=index))
    return entries


def unwrap_escalated_task(text: str) -> str:
    """Strip any number of escalation wrappers, returning the innermost task."""
    current = text.strip()
    while ESCALATION_MARKER in current:
        current = current.split(ESCALATION_MARKER, 1)[1].strip()
    return current


class BacklogStore:
    """Ordered task list persisted as a markdown bullet file."""

    def __init__(self, path: str | Path, *, name: str = "backlog") -> None:
        self.path = Path(path)
        self.name = name

    def __repr__(self) -> str:
        return f"BacklogStore({self.name!r}, {str(self.path)!r})"

    def read_all(self) -> list[BacklogEntry]:
        return parse_entries(read_text(self.path))

    def tasks(self) -> list[str]:
        return [entry.text for entry in self.read_all()]

    def is_empty(self) -> bool:
        return not self.read_all()

    def peek(self) -> str | None:
        """Return the first task without removing it."""
        entries = self.read_all()
        return entries[0].text if entries else None

    def pop(self) -> str | None:
        """Remove and return the first task."""
        with locked_path(self.path):
            entries = self.read_all()
            if not entries:
                return None
            self._write_without({entries[0].position})
            return entries[0].text

    def append(self, task: str) -> bool:
        """Append *task* unless an identical entry exists. Returns True if added."""
        text = " ".join(task.split())
        if not text:
            return False
        with locked_path(self.path):
            content = read_text(self.path)
            if any(entry.text == text for entry in parse_entries(content)):
                logger.debug("%s already lists %r", self.name, text)
                return False
            if content and not content.endswith("\n"):
                content += "\n"
            atomic_write_text(self.path, f"{content}- {text}\n")
        return True

    def remove(self, task: str) -> bool:
        """Remove the first entry whose text equals *task* exactly."""
        with locked_path(self.path):
            for entry in self.read_all():
                if entry.text == task.strip():
                    self._write_without({entry.position})
                    return True
        return False

    def rewrite_without(self, positions: Iterable[int]) -> list[str]:
        """Drop the task lines at *positions*, preserving every other line.

        Returns the text of the removed tasks in file order.
        """
        wanted = set(positions)
        if not wanted:
            return []
        with locked_path(self.path):
            matched = [e for e in self.read_all() if e.position in wanted]
            if matched:
                self._write_without({e.position for e in matched})
        return [e.text for e in matched]

    def _write_without(self, positions: set[int]) -> None:
        lines = read_text(self.path).splitlines()
        kept = [line for index, line in enumerate(lines) if index not in positions]
        atomic_write_text(self.path, "\n".join(kept) + "\n" if kept else "")
