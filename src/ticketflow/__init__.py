"""Ticketflow — Kanban ticket workflow engine with a supervised agent runner.

Key exports:
    TicketStore — persisted Kanban state machine
    ExecutionSupervisor — per-ticket agent process lifecycle
    StatusBroadcaster — periodic status polling and auto-transition
    PortRegistry — port ownership registry
    WorktreeProvisioner — isolated per-ticket workspaces
"""

from ticketflow.broadcaster import StatusBroadcaster
from ticketflow.ports import PortRegistry
from ticketflow.store import TicketStore
from ticketflow.supervisor import ExecutionSupervisor
from ticketflow.worktree import WorktreeProvisioner

__all__ = [
    "ExecutionSupervisor",
    "PortRegistry",
    "StatusBroadcaster",
    "TicketStore",
    "WorktreeProvisioner",
]

__version__ = "0.1.0"
