"""Agent output detection — pure functions over text, no I/O.

The supervisor feeds decoded output through these helpers; keeping them free
of process handling means they can be checked against literal sample logs.
"""

from __future__ import annotations

import enum
from typing import Iterable

ITERATION_PREFIXES = ("```", "## ")


class OutputEvent(str, enum.Enum):
    READY = "ready"  # the agent has produced output
    COMPLETED = "completed"  # the completion sentinel was seen


def is_iteration_marker(line: str) -> bool:
    """True for a line that opens a code fence or a level-2 heading."""
    return line.lstrip().startswith(ITERATION_PREFIXES)


def count_iteration_markers(lines: Iterable[str]) -> int:
    return sum(1 for line in lines if is_iteration_marker(line))


def detect_event(text: str, sentinel: str) -> OutputEvent | None:
    """Classify accumulated output.

    ``COMPLETED`` wins over ``READY``; empty (or whitespace-only) text
    yields ``None``.
    """
    if sentinel and sentinel in text:
        return OutputEvent.COMPLETED
    if text.strip():
        return OutputEvent.READY
    return None


class LineSplitter:
    """Reassembles arbitrary chunks into complete lines.

    A trailing partial line is held back until the next chunk (or
    :meth:`flush`) completes it.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        lines = data.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        if not self._pending:
            return []
        line, self._pending = self._pending.rstrip("\r"), ""
        return [line]

    @property
    def pending(self) -> str:
        return self._pending
