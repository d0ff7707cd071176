"""Execution Supervisor — at most one external agent process per ticket.

Each run is spawned in its own session, so its pid is also its process-group
id and signals reach the whole subprocess tree. Output from stdout and
stderr goes into a bounded ring buffer and is scanned for iteration markers
and the completion sentinel.

Run lifecycle::

    idle → spawning → running → succeeded | failed | stopped → cleaned

``stop()`` is the only cancellation primitive: SIGTERM to the group, then an
unconditional SIGKILL after ``agent.kill_grace_ms`` unless the exit handler
cancels the escalation first.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ticketflow.config import AgentConfig, PortsConfig
from ticketflow.detection import LineSplitter, OutputEvent, count_iteration_markers, detect_event
from ticketflow.errors import PortExhaustedError, ProcessError, RunRejectedError
from ticketflow.locks import PathWriteLocks
from ticketflow.log_buffer import OutputBuffer
from ticketflow.models import ExitInfo, RunPhase, RunStatus, Ticket, utcnow
from ticketflow.ports import PortRegistry
from ticketflow.probe import TrackedProcess
from ticketflow.worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
STOP_SLACK = 5.0  # seconds past grace + drain before stop() gives up waiting


@dataclass
class RunState:
    """Ephemeral state of one agent run. Never persisted."""

    ticket_id: str
    run_id: str
    worktree_path: Path
    buffer: OutputBuffer
    phase: RunPhase = RunPhase.SPAWNING
    process: asyncio.subprocess.Process | None = None
    port: int | None = None
    started_at: datetime = field(default_factory=utcnow)
    exit_info: ExitInfo | None = None
    iteration_count: int = 0
    last_output_at: float | None = None
    sentinel_seen: bool = False
    stop_requested: bool = False
    signal_error: str | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    escalation: asyncio.TimerHandle | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def alive(self) -> bool:
        return self.phase in (RunPhase.SPAWNING, RunPhase.RUNNING)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


class ExecutionSupervisor:
    """Spawns, observes and stops agent runs, keyed by ticket id."""

    def __init__(
        self,
        agent: AgentConfig,
        ports: PortRegistry,
        locks: PathWriteLocks,
        provisioner: WorktreeProvisioner,
        ports_config: PortsConfig | None = None,
    ) -> None:
        self.agent = agent
        self.ports = ports
        self.locks = locks
        self.provisioner = provisioner
        self.ports_config = ports_config or PortsConfig()
        self._runs: dict[str, RunState] = {}

    # ── Execute ──────────────────────────────────────────────────────────

    async def execute(self, ticket: Ticket) -> bool:
        """Start the agent for ``ticket``.

        Returns False (without spawning) if a run is already alive or the
        spawn itself failed.

        Raises:
            RunRejectedError: the ticket has no worktree or no approved PRD.
            PortExhaustedError: run port allocation is enabled and no port is free.
        """
        existing = self._runs.get(ticket.id)
        if existing is not None and existing.alive:
            logger.warning("Ticket %s already has an active run (%s); ignoring execute", ticket.id, existing.run_id)
            return False
        if not ticket.worktree_path:
            raise RunRejectedError(f"Ticket {ticket.id} has no worktree")
        if ticket.prd is None or not ticket.prd.approved:
            raise RunRejectedError(f"Ticket {ticket.id} has no approved PRD")
        worktree = Path(ticket.worktree_path)
        if not worktree.is_dir():
            raise RunRejectedError(f"Worktree for ticket {ticket.id} does not exist: {worktree}")

        # Registered before the first await so a concurrent execute sees it
        state = RunState(
            ticket_id=ticket.id,
            run_id=uuid.uuid4().hex[:12],
            worktree_path=worktree,
            buffer=OutputBuffer(self.agent.max_log_chars),
        )
        self._runs[ticket.id] = state

        prd_text = ticket.prd.content
        try:
            await self.locks.write_text(worktree / self.agent.prd_path, prd_text)
            env = await self._build_env(state)
        except PortExhaustedError as e:
            self._finish(state, ExitInfo(error=str(e)))
            raise
        except OSError as e:
            logger.error("Could not prepare run for ticket %s: %s", ticket.id, e)
            self._finish(state, ExitInfo(error=str(e)))
            return False

        if state.stop_requested:
            logger.info("Run %s for ticket %s stopped before spawn", state.run_id, ticket.id)
            self._finish(state, ExitInfo(error="stopped before spawn"))
            return False

        try:
            state.process = await self._spawn(worktree, env)
        except ProcessError as e:
            logger.error("Failed to spawn agent for ticket %s: %s", ticket.id, e)
            self._finish(state, ExitInfo(error=str(e)))
            return False

        logger.info(
            "Spawned agent for ticket %s (run=%s, pid=%d, cwd=%s)",
            ticket.id,
            state.run_id,
            state.process.pid,
            worktree,
        )
        if not self.agent.wait_for_output:
            state.phase = RunPhase.RUNNING

        proc = state.process
        readers = [
            asyncio.create_task(self._read_stream(state, proc.stdout), name=f"run-{state.run_id}-stdout"),
            asyncio.create_task(self._read_stream(state, proc.stderr), name=f"run-{state.run_id}-stderr"),
        ]
        state.tasks = [
            asyncio.create_task(self._feed_stdin(state, prd_text), name=f"run-{state.run_id}-stdin"),
            *readers,
            asyncio.create_task(self._wait_for_exit(state, readers), name=f"run-{state.run_id}-wait"),
        ]

        if state.stop_requested:
            # stop() arrived while the process was being created
            self._terminate(state)
        return True

    async def _spawn(self, worktree: Path, env: dict[str, str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.agent.command,
                cwd=str(worktree),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessError(f"spawn failed: {e}") from e

    async def _build_env(self, state: RunState) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.agent.env)
        env["TICKETFLOW_TICKET_ID"] = state.ticket_id
        env["TICKETFLOW_RUN_ID"] = state.run_id
        if self.ports_config.allocate_for_runs:
            port = await self.ports.allocate(
                state.ticket_id, self.ports_config.base_port, self.ports_config.max_attempts
            )
            state.port = port
            env["PORT"] = str(port)
        return env

    # ── Process I/O ──────────────────────────────────────────────────────

    async def _feed_stdin(self, state: RunState, text: str) -> None:
        stdin = state.process.stdin if state.process else None
        if stdin is None:
            return
        try:
            stdin.write(text.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent for ticket %s closed stdin early", state.ticket_id)
        finally:
            stdin.close()

    async def _read_stream(self, state: RunState, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        splitter = LineSplitter()
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._on_output(state, text, splitter.feed(text))
        tail = decoder.decode(b"", final=True)
        self._on_output(state, tail, splitter.feed(tail) + splitter.flush())

    def _on_output(self, state: RunState, text: str, lines: list[str]) -> None:
        if lines:
            state.iteration_count += count_iteration_markers(lines)
        if not text:
            return

        state.buffer.append(text)
        state.last_output_at = time.time()
        if state.phase == RunPhase.SPAWNING:
            state.phase = RunPhase.RUNNING
            logger.info("Agent for ticket %s is producing output", state.ticket_id)

        if not state.sentinel_seen:
            # A sentinel may straddle two chunks
            window = state.buffer.tail(len(text) + len(self.agent.completion_sentinel))
            if detect_event(window, self.agent.completion_sentinel) == OutputEvent.COMPLETED:
                state.sentinel_seen = True
                logger.info("Completion sentinel seen for ticket %s (run=%s)", state.ticket_id, state.run_id)

    async def _wait_for_exit(self, state: RunState, readers: list[asyncio.Task]) -> None:
        assert state.process is not None
        returncode = await state.process.wait()

        # Descendants may still hold the pipes open; don't wait on them forever
        _, pending = await asyncio.wait(readers, timeout=self.agent.drain_timeout)
        for task in pending:
            task.cancel()

        info = ExitInfo(
            returncode=returncode if returncode >= 0 else None,
            signal=-returncode if returncode < 0 else None,
        )
        self._finish(state, info)

    def _finish(self, state: RunState, info: ExitInfo) -> None:
        """Exit handler: cancel escalation, classify, release the run's port."""
        if state.escalation is not None:
            state.escalation.cancel()
            state.escalation = None

        if info.error is None and state.signal_error is not None:
            info = info.model_copy(update={"error": state.signal_error})
        state.exit_info = info
        state.phase = self._classify(state, info)
        if state.port is not None:
            self.ports.unregister(state.ticket_id, state.port)

        log = logger.warning if state.phase == RunPhase.FAILED else logger.info
        log(
            "Run %s for ticket %s finished: %s (returncode=%s, signal=%s, error=%s)",
            state.run_id,
            state.ticket_id,
            state.phase.value,
            info.returncode,
            info.signal,
            info.error,
        )
        state.exited.set()

    @staticmethod
    def _classify(state: RunState, info: ExitInfo) -> RunPhase:
        if state.stop_requested:
            return RunPhase.STOPPED
        if state.sentinel_seen:
            if info.returncode:
                logger.info(
                    "Ticket %s agent exited %d after reporting completion",
                    state.ticket_id,
                    info.returncode,
                )
            return RunPhase.SUCCEEDED
        return RunPhase.FAILED

    # ── Stop / Cleanup ───────────────────────────────────────────────────

    async def stop(self, ticket_id: str) -> bool:
        """Terminate the ticket's process group and wait for it to exit.

        Returns False when no run is alive (a no-op) or when the run did
        not exit within the grace period plus a bounded wait.
        """
        state = self._runs.get(ticket_id)
        if state is None or not state.alive:
            logger.warning("Stop requested for ticket %s with no active run", ticket_id)
            return False

        if not state.stop_requested:
            state.stop_requested = True
            if state.process is not None:
                self._terminate(state)

        timeout = self.agent.kill_grace + self.agent.drain_timeout + STOP_SLACK
        try:
            await asyncio.wait_for(state.exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Run %s for ticket %s did not exit within %.1fs of stop", state.run_id, ticket_id, timeout)
            return False
        return True

    def _terminate(self, state: RunState) -> None:
        logger.info("Stopping run %s for ticket %s (pid=%s)", state.run_id, state.ticket_id, state.pid)
        self._deliver(state, signal.SIGTERM)
        loop = asyncio.get_running_loop()
        state.escalation = loop.call_later(self.agent.kill_grace, self._escalate, state)

    def _escalate(self, state: RunState) -> None:
        state.escalation = None
        if not state.alive:
            return
        logger.warning(
            "Run %s for ticket %s ignored SIGTERM for %dms; sending SIGKILL",
            state.run_id,
            state.ticket_id,
            self.agent.kill_grace_ms,
        )
        self._deliver(state, signal.SIGKILL)

    def _deliver(self, state: RunState, sig: signal.Signals) -> bool:
        try:
            return self._signal_group(state, sig)
        except ProcessError as e:
            logger.error("Run %s for ticket %s: %s", state.run_id, state.ticket_id, e)
            state.signal_error = str(e)
            return False

    @staticmethod
    def _signal_group(state: RunState, sig: signal.Signals) -> bool:
        """Send ``sig`` to the run's process group. False if it is already gone.

        Raises:
            ProcessError: the signal could not be delivered (e.g. EPERM).
        """
        pid = state.pid
        if pid is None:
            return False
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            logger.debug("Process group %d already gone (%s)", pid, sig.name)
            return False
        except PermissionError as e:
            raise ProcessError(f"not permitted to send {sig.name} to process group {pid}: {e}") from e
        return True

    async def cleanup(self, ticket_id: str, worktree_path: Path | str | None = None) -> bool:
        """Remove the run's worktree and drop its state. Refused while alive."""
        state = self._runs.get(ticket_id)
        if state is not None and state.alive:
            logger.warning("Refusing cleanup of ticket %s: run %s is still alive", ticket_id, state.run_id)
            return False

        path = worktree_path or (state.worktree_path if state else None)
        removed = await self.provisioner.remove(path) if path else False
        released = self.ports.unregister_all(ticket_id)
        if released:
            logger.info("Released ports %s held by ticket %s", released, ticket_id)

        if state is not None:
            state.phase = RunPhase.CLEANED
            del self._runs[ticket_id]
        return removed or state is not None

    async def stop_all(self) -> None:
        """Best-effort concurrent stop of every alive run."""
        alive = [tid for tid, state in self._runs.items() if state.alive]
        if not alive:
            return
        logger.info("Stopping %d active run(s)", len(alive))
        results = await asyncio.gather(*(self.stop(tid) for tid in alive), return_exceptions=True)
        for tid, result in zip(alive, results):
            if isinstance(result, BaseException):
                logger.error("Failed to stop run for ticket %s: %r", tid, result)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_status(self, ticket_id: str, include_log: bool = False) -> RunStatus:
        state = self._runs.get(ticket_id)
        if state is None:
            return RunStatus(ticket_id=ticket_id)
        return RunStatus(
            ticket_id=ticket_id,
            run_id=state.run_id,
            phase=state.phase,
            alive=state.alive,
            iteration_count=state.iteration_count,
            last_output_at=state.last_output_at,
            started_at=state.started_at,
            exit=state.exit_info,
            port=state.port,
            log=state.buffer.text() if include_log else "",
        )

    async def wait(self, ticket_id: str, timeout: float | None = None) -> RunStatus:
        """Block until the ticket's current run has exited, then return its status."""
        state = self._runs.get(ticket_id)
        if state is not None:
            await asyncio.wait_for(state.exited.wait(), timeout=timeout)
        return self.get_status(ticket_id)

    def is_running(self, ticket_id: str) -> bool:
        state = self._runs.get(ticket_id)
        return state is not None and state.alive

    def ticket_ids(self) -> list[str]:
        return list(self._runs)

    def tracked_processes(self) -> list[TrackedProcess]:
        return [
            TrackedProcess(pid=state.pid, owner_id=tid, last_output_at=state.last_output_at)
            for tid, state in self._runs.items()
            if state.alive and state.pid is not None
        ]
