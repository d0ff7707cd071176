"""Process activity probe — counts live agent processes per run.

One scan issues exactly one process-table query (``ps -eo pid,ppid,comm``)
no matter how many runs are tracked, then walks each run's process subtree
in memory. The table source is a narrow protocol so tests can inject a
fabricated listing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)

GENERATING = "generating"
WAITING = "waiting"


@dataclass(frozen=True)
class ProcessEntry:
    pid: int
    ppid: int
    command: str


@dataclass(frozen=True)
class TrackedProcess:
    """Root pid of a run's process tree plus the owner it is reported under."""

    pid: int
    owner_id: str
    last_output_at: float | None = None  # epoch seconds


class ProcessTable(Protocol):
    async def query(self) -> list[ProcessEntry]: ...


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_process_list(stdout: str) -> list[ProcessEntry]:
    """Parse ``ps -eo pid,ppid,comm`` output. Malformed rows are skipped."""
    entries: list[ProcessEntry] = []
    for line in stdout.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            # Header row ("PID PPID COMMAND") or garbage
            continue
        entries.append(ProcessEntry(pid=pid, ppid=ppid, command=parts[2].strip()))
    return entries


def build_process_maps(
    entries: Iterable[ProcessEntry],
) -> tuple[dict[int, list[int]], dict[int, str]]:
    """Return (parent → children, pid → command) maps."""
    children: dict[int, list[int]] = {}
    commands: dict[int, str] = {}
    for entry in entries:
        commands[entry.pid] = entry.command
        children.setdefault(entry.ppid, []).append(entry.pid)
    return children, commands


def count_agent_processes(
    root_pid: int,
    children: dict[int, list[int]],
    commands: dict[int, str],
    process_name: str,
) -> int:
    """Count processes in ``root_pid``'s subtree (root included) named like the agent."""
    needle = process_name.lower()
    count = 0
    seen: set[int] = set()
    stack = [root_pid]
    while stack:
        pid = stack.pop()
        if pid in seen:
            continue
        seen.add(pid)
        command = commands.get(pid)
        if command is not None and needle in command.lower():
            count += 1
        stack.extend(children.get(pid, ()))
    return count


def compute_activity(
    activity: dict[str, int],
    tracked: Iterable[TrackedProcess],
    now: float | None = None,
    idle_ms: int = 2500,
) -> dict[str, str]:
    """Derive ``generating`` / ``waiting`` per owner with at least one agent process.

    Owners with no matching process get no entry.
    """
    now = time.time() if now is None else now
    idle = idle_ms / 1000
    result: dict[str, str] = {}
    for proc in tracked:
        if activity.get(proc.owner_id, 0) <= 0:
            continue
        recent = proc.last_output_at is not None and now - proc.last_output_at <= idle
        result[proc.owner_id] = GENERATING if recent else WAITING
    return result


# ── Process Table Sources ────────────────────────────────────────────────────


class PsProcessTable:
    """Reads the OS process table with a single ``ps`` invocation."""

    def __init__(self, timeout: float = 3.0, ps_exe: str = "ps") -> None:
        self.timeout = timeout
        self.ps_exe = ps_exe

    async def query(self) -> list[ProcessEntry]:
        proc = await asyncio.create_subprocess_exec(
            self.ps_exe,
            "-eo",
            "pid,ppid,comm",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode:
            raise OSError(f"ps exited {proc.returncode}: {stderr.decode(errors='replace').strip()}")
        return parse_process_list(stdout.decode(errors="replace"))


class ActivityProbe:
    """Batched process-tree scan for every tracked run."""

    def __init__(self, table: ProcessTable, process_name: str) -> None:
        self.table = table
        self.process_name = process_name
        self.scans = 0

    async def scan(self, tracked: Iterable[TrackedProcess]) -> dict[str, int]:
        """Agent-process count per owner; empty if the table query fails."""
        tracked = list(tracked)
        if not tracked:
            return {}
        self.scans += 1
        try:
            entries = await self.table.query()
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Process table query failed: %s", e)
            return {}

        children, commands = build_process_maps(entries)
        counts: dict[str, int] = {}
        for proc in tracked:
            counts[proc.owner_id] = counts.get(proc.owner_id, 0) + count_agent_processes(
                proc.pid, children, commands, self.process_name
            )
        return counts
