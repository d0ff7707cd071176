"""Exception hierarchy for ticketflow.

Repository operations report rejections as ``False`` / unchanged results and
never raise; these exceptions cover the places where a caller must be told
*why* something could not happen (HTTP layer, worktree provisioning, port
allocation, run preconditions).
"""

from __future__ import annotations


class TicketFlowError(Exception):
    """Base class for all ticketflow errors."""


# ── Validation ───────────────────────────────────────────────────────────────


class ValidationError(TicketFlowError):
    """A request was rejected: unknown ticket, invalid transition, bad input."""


class TicketNotFoundError(ValidationError):
    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id


class RunRejectedError(ValidationError):
    """Run preconditions are not met (no worktree, PRD missing or unapproved)."""


# ── Resources ────────────────────────────────────────────────────────────────


class ResourceError(TicketFlowError):
    """A scarce OS resource could not be obtained."""


class PortExhaustedError(ResourceError):
    def __init__(self, base_port: int, max_attempts: int) -> None:
        last = base_port + max_attempts - 1
        super().__init__(f"No available port found in range {base_port}-{last}")
        self.base_port = base_port
        self.max_attempts = max_attempts


class WorktreeExistsError(ResourceError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Worktree directory already exists: {path}")
        self.path = path


class InvalidBaseError(ResourceError):
    """The worktree base directory is missing, not a directory, or not writable."""


class WorktreeInitError(ResourceError):
    """Version-control initialisation of a new worktree failed."""


# ── Processes & persistence ──────────────────────────────────────────────────


class ProcessError(TicketFlowError):
    """Spawning or signalling an agent process failed."""


class PersistenceError(TicketFlowError):
    """The ticket document could not be written."""
