"""Tests for ExecutionSupervisor — spawn, output tracking, stop/escalation, cleanup.

The "agent" in these tests is a short ``sh -c`` script.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from conftest import SENTINEL, make_supervisor, requires_posix, runnable_ticket
from ticketflow.config import PortsConfig
from ticketflow.errors import ProcessError, RunRejectedError
from ticketflow.models import PRD, RunPhase
from ticketflow.supervisor import ExecutionSupervisor

pytestmark = requires_posix

LONG_RUNNING = "echo started; sleep 30"


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def _pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] not in ("Z", "X")
    except FileNotFoundError:
        return False
    except OSError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.fixture
async def supervisor_for(ports, locks, provisioner):
    created = []

    def factory(script: str, **kwargs):
        sup = make_supervisor(script, ports, locks, provisioner, **kwargs)
        created.append(sup)
        return sup

    yield factory
    # Leave no agent processes behind, whatever the test did
    for sup in created:
        await sup.stop_all()


# ── Execute ──────────────────────────────────────────────────────────────────


class TestExecute:
    async def test_successful_run(self, tmp_path, supervisor_for):
        sup = supervisor_for(f"echo '## Step 1'; echo '{SENTINEL}'; exit 0")
        ticket = runnable_ticket(tmp_path)

        assert await sup.execute(ticket)
        status = await sup.wait(ticket.id, timeout=5)

        assert status.phase == RunPhase.SUCCEEDED
        assert status.alive is False
        assert status.exit.returncode == 0
        assert status.iteration_count == 1
        assert status.last_output_at is not None

    async def test_prd_written_and_piped_to_stdin(self, tmp_path, supervisor_for):
        sup = supervisor_for("cat > stdin_copy.md")
        ticket = runnable_ticket(tmp_path)

        await sup.execute(ticket)
        await sup.wait(ticket.id, timeout=5)

        worktree = tmp_path / "worktrees" / "add-login-page"
        assert (worktree / ".claude" / "prd.md").read_text() == ticket.prd.content
        assert (worktree / "stdin_copy.md").read_text() == ticket.prd.content

    async def test_runs_in_worktree_with_ticket_env(self, tmp_path, supervisor_for):
        sup = supervisor_for('pwd; echo "id=$TICKETFLOW_TICKET_ID"; echo "x=$EXTRA"', env={"EXTRA": "42"})
        ticket = runnable_ticket(tmp_path)

        await sup.execute(ticket)
        await sup.wait(ticket.id, timeout=5)

        log = sup.get_status(ticket.id, include_log=True).log
        assert os.path.realpath(ticket.worktree_path) in log
        assert f"id={ticket.id}" in log
        assert "x=42" in log

    async def test_sentinel_split_across_chunks(self, tmp_path, supervisor_for):
        sup = supervisor_for("printf '<promise>COMP'; sleep 0.2; printf 'LETE</promise>\\n'")
        ticket = runnable_ticket(tmp_path)

        await sup.execute(ticket)
        status = await sup.wait(ticket.id, timeout=5)
        assert status.phase == RunPhase.SUCCEEDED

    async def test_iteration_markers_counted(self, tmp_path, supervisor_for):
        sup = supervisor_for("printf '## one\\ntext\\n```\\ncode\\n```\\n## two'")
        ticket = runnable_ticket(tmp_path)

        await sup.execute(ticket)
        status = await sup.wait(ticket.id, timeout=5)
        # the final line has no newline and is counted at EOF
        assert status.iteration_count == 4

    async def test_sentinel_then_nonzero_exit_still_succeeds(self, tmp_path, supervisor_for):
        sup = supervisor_for(f"echo '{SENTINEL}'; exit 2")
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        status = await sup.wait(ticket.id, timeout=5)
        assert status.phase == RunPhase.SUCCEEDED
        assert status.exit.returncode == 2

    @pytest.mark.parametrize("script,returncode", [("echo oops >&2; exit 3", 3), ("echo no sentinel", 0)])
    async def test_failures(self, tmp_path, supervisor_for, script, returncode):
        sup = supervisor_for(script)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        status = await sup.wait(ticket.id, timeout=5)
        assert status.phase == RunPhase.FAILED
        assert status.exit.returncode == returncode

    async def test_stderr_captured(self, tmp_path, supervisor_for):
        sup = supervisor_for("echo to-stderr >&2; exit 1")
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await sup.wait(ticket.id, timeout=5)
        assert "to-stderr" in sup.get_status(ticket.id, include_log=True).log

    async def test_spawn_error_marks_failed(self, tmp_path, ports, locks, provisioner):
        sup = make_supervisor("unused", ports, locks, provisioner)
        sup.agent.command = ["/nonexistent/agent-binary"]
        ticket = runnable_ticket(tmp_path)

        assert await sup.execute(ticket) is False
        status = sup.get_status(ticket.id)
        assert status.phase == RunPhase.FAILED
        assert "spawn failed" in status.exit.error

    async def test_spawn_raises_process_error(self, tmp_path, ports, locks, provisioner):
        sup = make_supervisor("unused", ports, locks, provisioner)
        sup.agent.command = ["/nonexistent/agent-binary"]
        with pytest.raises(ProcessError, match="spawn failed"):
            await sup._spawn(tmp_path, {})

    async def test_log_buffer_is_bounded(self, tmp_path, supervisor_for):
        sup = supervisor_for("i=0; while [ $i -lt 200 ]; do echo line-$i; i=$((i+1)); done", max_log_chars=50)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await sup.wait(ticket.id, timeout=5)
        log = sup.get_status(ticket.id, include_log=True).log
        assert len(log) == 50
        assert log.endswith("line-199\n")

    async def test_running_immediately_without_output_wait(self, tmp_path, supervisor_for):
        sup = supervisor_for("sleep 30", wait_for_output=False)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        assert sup.get_status(ticket.id).phase == RunPhase.RUNNING
        await sup.stop(ticket.id)

    async def test_spawning_until_first_output(self, tmp_path, supervisor_for):
        sup = supervisor_for("sleep 0.3; echo hi; sleep 30")
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        assert sup.get_status(ticket.id).phase == RunPhase.SPAWNING
        await _wait_until(lambda: sup.get_status(ticket.id).phase == RunPhase.RUNNING)
        await sup.stop(ticket.id)


class TestExecutePreconditions:
    async def test_requires_worktree(self, tmp_path, supervisor_for):
        sup = supervisor_for("true")
        ticket = runnable_ticket(tmp_path, worktree_path=None)
        with pytest.raises(RunRejectedError, match="no worktree"):
            await sup.execute(ticket)

    async def test_requires_existing_worktree_directory(self, tmp_path, supervisor_for):
        sup = supervisor_for("true")
        ticket = runnable_ticket(tmp_path, worktree_path=str(tmp_path / "gone"))
        with pytest.raises(RunRejectedError, match="does not exist"):
            await sup.execute(ticket)

    @pytest.mark.parametrize("prd", [None, PRD(content="draft", approved=False)])
    async def test_requires_approved_prd(self, tmp_path, supervisor_for, prd):
        sup = supervisor_for("true")
        ticket = runnable_ticket(tmp_path, prd=prd)
        with pytest.raises(RunRejectedError, match="approved PRD"):
            await sup.execute(ticket)
        assert sup.get_status(ticket.id).phase == RunPhase.IDLE


class TestSingleRunPerTicket:
    async def test_second_execute_is_a_no_op(self, tmp_path, supervisor_for, caplog):
        sup = supervisor_for(LONG_RUNNING)
        ticket = runnable_ticket(tmp_path)

        assert await sup.execute(ticket)
        first = sup.get_status(ticket.id)
        pid = sup.tracked_processes()[0].pid

        assert await sup.execute(ticket) is False
        assert sup.get_status(ticket.id).run_id == first.run_id
        assert [p.pid for p in sup.tracked_processes()] == [pid]
        assert "already has an active run" in caplog.text
        await sup.stop(ticket.id)

    async def test_concurrent_execute_spawns_once(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING)
        ticket = runnable_ticket(tmp_path)

        results = await asyncio.gather(sup.execute(ticket), sup.execute(ticket))

        assert sorted(results) == [False, True]
        assert len(sup.tracked_processes()) == 1
        await sup.stop(ticket.id)

    async def test_rerun_after_exit(self, tmp_path, supervisor_for):
        sup = supervisor_for("echo done")
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        first = await sup.wait(ticket.id, timeout=5)

        assert await sup.execute(ticket)
        second = await sup.wait(ticket.id, timeout=5)
        assert second.run_id != first.run_id


# ── Stop ─────────────────────────────────────────────────────────────────────


class TestStop:
    async def test_stop_terminates_process_group(self, tmp_path, supervisor_for):
        sup = supervisor_for('sleep 30 & echo "child=$!"; wait')
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await _wait_until(lambda: "child=" in sup.get_status(ticket.id, include_log=True).log)
        log = sup.get_status(ticket.id, include_log=True).log
        child = int(log.split("child=", 1)[1].split()[0])
        assert _pid_alive(child)

        assert await sup.stop(ticket.id)

        status = sup.get_status(ticket.id)
        assert status.phase == RunPhase.STOPPED
        assert status.alive is False
        assert status.exit.signal == signal.SIGTERM
        # The background grandchild shares the group and must die with it
        await _wait_until(lambda: not _pid_alive(child))

    async def test_escalates_to_sigkill(self, tmp_path, supervisor_for):
        sup = supervisor_for("trap '' TERM; echo ready; sleep 30", kill_grace_ms=200)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await _wait_until(lambda: sup.get_status(ticket.id).phase == RunPhase.RUNNING)

        started = time.monotonic()
        assert await sup.stop(ticket.id)
        elapsed = time.monotonic() - started

        status = sup.get_status(ticket.id)
        assert status.phase == RunPhase.STOPPED
        assert status.exit.signal == signal.SIGKILL
        assert elapsed >= 0.15

    async def test_denied_sigterm_is_recorded_and_sigkill_still_sent(self, tmp_path, supervisor_for, caplog):
        sup = supervisor_for(LONG_RUNNING, kill_grace_ms=200)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await _wait_until(lambda: sup.get_status(ticket.id).phase == RunPhase.RUNNING)

        real_killpg = os.killpg

        def deny_term(pid, sig):
            if sig == signal.SIGTERM:
                raise PermissionError(1, "Operation not permitted")
            real_killpg(pid, sig)

        with patch("ticketflow.supervisor.os.killpg", side_effect=deny_term):
            assert await sup.stop(ticket.id)

        status = sup.get_status(ticket.id)
        assert status.phase == RunPhase.STOPPED
        assert status.exit.signal == signal.SIGKILL
        assert "not permitted to send SIGTERM" in status.exit.error
        assert "not permitted to send SIGTERM" in caplog.text

    def test_signal_group_wraps_permission_error(self, tmp_path):
        state = SimpleNamespace(pid=12345)
        with patch("ticketflow.supervisor.os.killpg", side_effect=PermissionError(1, "denied")):
            with pytest.raises(ProcessError, match="SIGTERM"):
                ExecutionSupervisor._signal_group(state, signal.SIGTERM)
        with patch("ticketflow.supervisor.os.killpg", side_effect=ProcessLookupError()):
            assert ExecutionSupervisor._signal_group(state, signal.SIGTERM) is False

    async def test_natural_exit_cancels_escalation(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING, kill_grace_ms=5000)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await _wait_until(lambda: sup.get_status(ticket.id).phase == RunPhase.RUNNING)

        started = time.monotonic()
        await sup.stop(ticket.id)

        assert time.monotonic() - started < 2
        assert sup._runs[ticket.id].escalation is None

    async def test_stop_without_run_is_a_no_op(self, tmp_path, supervisor_for):
        sup = supervisor_for("true")
        assert await sup.stop("unknown") is False
        assert await sup.stop("unknown") is False
        assert sup.ticket_ids() == []

    async def test_stop_twice(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)

        assert await sup.stop(ticket.id)
        assert await sup.stop(ticket.id) is False
        assert sup.get_status(ticket.id).phase == RunPhase.STOPPED

    async def test_stop_only_affects_its_ticket(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING)
        t1 = runnable_ticket(tmp_path, title="Ticket one")
        t2 = runnable_ticket(tmp_path, title="Ticket two")
        await sup.execute(t1)
        await sup.execute(t2)
        pids = {p.owner_id: p.pid for p in sup.tracked_processes()}
        assert pids[t1.id] != pids[t2.id]

        await sup.stop(t1.id)

        assert not sup.is_running(t1.id)
        assert sup.is_running(t2.id)
        assert _pid_alive(pids[t2.id])
        await sup.stop(t2.id)

    async def test_stop_all(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING)
        tickets = [runnable_ticket(tmp_path, title=f"Ticket {i}") for i in range(3)]
        for t in tickets:
            await sup.execute(t)

        await sup.stop_all()

        assert all(sup.get_status(t.id).phase == RunPhase.STOPPED for t in tickets)
        assert sup.tracked_processes() == []

    async def test_stop_all_continues_past_failures(self, tmp_path, supervisor_for):
        sup = supervisor_for(LONG_RUNNING)
        t1 = runnable_ticket(tmp_path, title="Ticket one")
        t2 = runnable_ticket(tmp_path, title="Ticket two")
        await sup.execute(t1)
        await sup.execute(t2)

        real_stop = sup.stop

        async def flaky_stop(ticket_id):
            if ticket_id == t1.id:
                raise RuntimeError("boom")
            return await real_stop(ticket_id)

        sup.stop = flaky_stop
        await sup.stop_all()
        assert not sup.is_running(t2.id)

        sup.stop = real_stop
        await sup.stop(t1.id)


# ── Cleanup ──────────────────────────────────────────────────────────────────


class TestCleanup:
    async def test_cleanup_refused_while_alive(self, tmp_path, supervisor_for, caplog):
        sup = supervisor_for(LONG_RUNNING)
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)

        assert await sup.cleanup(ticket.id) is False
        assert os.path.isdir(ticket.worktree_path)
        assert "Refusing cleanup" in caplog.text
        await sup.stop(ticket.id)

    async def test_cleanup_after_stop(self, tmp_path, supervisor_for, ports):
        sup = supervisor_for(LONG_RUNNING)
        ticket = runnable_ticket(tmp_path)
        ports.register(ticket.id, 45678)
        await sup.execute(ticket)
        await sup.stop(ticket.id)

        assert await sup.cleanup(ticket.id)

        assert not os.path.exists(ticket.worktree_path)
        assert ports.ports_of(ticket.id) == []
        assert sup.get_status(ticket.id).phase == RunPhase.IDLE
        assert sup.ticket_ids() == []

    async def test_cleanup_without_run_uses_given_path(self, tmp_path, supervisor_for):
        sup = supervisor_for("true")
        ticket = runnable_ticket(tmp_path)
        assert await sup.cleanup(ticket.id, ticket.worktree_path)
        assert not os.path.exists(ticket.worktree_path)

    async def test_cleanup_nothing(self, supervisor_for):
        sup = supervisor_for("true")
        assert await sup.cleanup("unknown") is False


# ── Ports ────────────────────────────────────────────────────────────────────


class TestRunPorts:
    async def test_port_allocated_and_released(self, tmp_path, supervisor_for, ports):
        sup = supervisor_for(
            'echo "port=$PORT"; sleep 30',
            ports_config=PortsConfig(allocate_for_runs=True, base_port=41000, max_attempts=200),
        )
        ticket = runnable_ticket(tmp_path)
        await sup.execute(ticket)
        await _wait_until(lambda: "port=" in sup.get_status(ticket.id, include_log=True).log)

        port = sup.get_status(ticket.id).port
        assert port is not None
        assert ports.owner_of(port) == ticket.id
        assert f"port={port}" in sup.get_status(ticket.id, include_log=True).log

        await sup.stop(ticket.id)
        assert ports.owner_of(port) is None

    async def test_concurrent_executes_get_distinct_ports(self, tmp_path, supervisor_for, ports):
        sup = supervisor_for(
            LONG_RUNNING,
            ports_config=PortsConfig(allocate_for_runs=True, base_port=42000, max_attempts=200),
        )
        first = runnable_ticket(tmp_path, title="First ticket")
        second = runnable_ticket(tmp_path, title="Second ticket")

        assert await asyncio.gather(sup.execute(first), sup.execute(second)) == [True, True]

        port_a = sup.get_status(first.id).port
        port_b = sup.get_status(second.id).port
        assert port_a != port_b
        assert ports.owner_of(port_a) == first.id
        assert ports.owner_of(port_b) == second.id

        await sup.stop_all()
        assert ports.snapshot() == {}
