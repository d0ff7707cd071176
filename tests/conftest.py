"""Shared fixtures for ticketflow tests."""

from __future__ import annotations

import shutil
import sys

import pytest

from ticketflow.config import AgentConfig, PortsConfig
from ticketflow.locks import PathWriteLocks
from ticketflow.models import PRD, CreateTicketRequest, Ticket, TicketStatus
from ticketflow.ports import PortRegistry
from ticketflow.store import TicketStore
from ticketflow.supervisor import ExecutionSupervisor
from ticketflow.worktree import WorktreeProvisioner

SENTINEL = "<promise>COMPLETE</promise>"

requires_posix = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")
requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def shell_agent(script: str, **overrides) -> AgentConfig:
    """An AgentConfig whose 'agent' is a short sh script."""
    defaults = dict(
        command=["sh", "-c", script],
        process_name="sh",
        completion_sentinel=SENTINEL,
        kill_grace_ms=200,
        drain_timeout=0.5,
    )
    defaults.update(overrides)
    return AgentConfig(**defaults)


@pytest.fixture
def store(tmp_path) -> TicketStore:
    return TicketStore(tmp_path / "data" / "tickets.json", debounce=0.05)


@pytest.fixture
def locks() -> PathWriteLocks:
    return PathWriteLocks()


@pytest.fixture
def ports() -> PortRegistry:
    return PortRegistry()


@pytest.fixture
def provisioner(locks) -> WorktreeProvisioner:
    return WorktreeProvisioner(locks)


def make_supervisor(
    script: str,
    ports: PortRegistry,
    locks: PathWriteLocks,
    provisioner: WorktreeProvisioner,
    ports_config: PortsConfig | None = None,
    **agent_overrides,
) -> ExecutionSupervisor:
    return ExecutionSupervisor(
        shell_agent(script, **agent_overrides),
        ports=ports,
        locks=locks,
        provisioner=provisioner,
        ports_config=ports_config,
    )


def runnable_ticket(tmp_path, title: str = "Add login page", **kwargs) -> Ticket:
    """A ticket with an existing worktree directory and an approved PRD."""
    worktree = tmp_path / "worktrees" / title.lower().replace(" ", "-")
    worktree.mkdir(parents=True, exist_ok=True)
    defaults = dict(
        title=title,
        status=TicketStatus.IN_PROGRESS,
        prd=PRD(content="# PRD\nBuild it.\n", approved=True),
        worktree_base_path=str(worktree.parent),
        worktree_path=str(worktree),
    )
    defaults.update(kwargs)
    return Ticket(**defaults)


def advance(store: TicketStore, ticket_id: str, *statuses: TicketStatus) -> None:
    for status in statuses:
        assert store.transition(ticket_id, status), f"could not move to {status.value}"


def to_in_progress(store: TicketStore, title: str = "Ticket") -> Ticket:
    ticket = store.create(CreateTicketRequest(title=title))
    advance(
        store,
        ticket.id,
        TicketStatus.UP_NEXT,
        TicketStatus.IN_REVIEW,
        TicketStatus.IN_PROGRESS,
    )
    return store.get(ticket.id)
