"""Core data models for ticketflow."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Ticket Status & Transitions ──────────────────────────────────────────────


class TicketStatus(str, enum.Enum):
    """Kanban columns, in board order."""

    BACKLOG = "backlog"
    UP_NEXT = "up_next"
    IN_REVIEW = "in_review"
    IN_PROGRESS = "in_progress"
    IN_TESTING = "in_testing"
    COMPLETED = "completed"


VALID_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.BACKLOG: frozenset({TicketStatus.UP_NEXT}),
    TicketStatus.UP_NEXT: frozenset({TicketStatus.IN_REVIEW, TicketStatus.BACKLOG}),
    TicketStatus.IN_REVIEW: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.BACKLOG}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.IN_TESTING}),
    TicketStatus.IN_TESTING: frozenset({TicketStatus.COMPLETED, TicketStatus.IN_PROGRESS}),
    TicketStatus.COMPLETED: frozenset(),
}


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    """Whether ``current → target`` is an edge of the workflow graph."""
    return target in VALID_TRANSITIONS[current]


class TicketType(str, enum.Enum):
    FEATURE = "feature"
    BUG = "bug"
    CHORE = "chore"
    SPIKE = "spike"


class TicketPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ── Ticket Record ────────────────────────────────────────────────────────────


class PRD(BaseModel):
    """Externally generated PRD; only ``approved`` matters to the engine."""

    content: str
    generated_at: datetime = Field(default_factory=utcnow)
    approved: bool = False


class HistoryEvent(BaseModel):
    """One audit entry. Serialised with ``from``/``to`` keys."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(default_factory=utcnow)
    action: str
    from_status: TicketStatus | None = Field(default=None, alias="from")
    to_status: TicketStatus | None = Field(default=None, alias="to")


class Ticket(BaseModel):
    """A unit of work moving through the Kanban workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    status: TicketStatus = TicketStatus.BACKLOG
    type: TicketType = TicketType.FEATURE
    priority: TicketPriority = TicketPriority.MEDIUM
    project_id: str | None = None
    prd: PRD | None = None
    history: list[HistoryEvent] = Field(default_factory=list)
    worktree_base_path: str | None = Field(
        default=None, description="User-chosen directory under which the worktree is created"
    )
    worktree_path: str | None = Field(default=None, description="Full path once provisioned")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    order: int = Field(default=0, description="Sort position within the status column")

    def record(
        self,
        action: str,
        from_status: TicketStatus | None = None,
        to_status: TicketStatus | None = None,
    ) -> HistoryEvent:
        """Bump ``updated_at`` and append exactly one history entry."""
        self.updated_at = utcnow()
        event = HistoryEvent(
            timestamp=self.updated_at,
            action=action,
            from_status=from_status,
            to_status=to_status,
        )
        self.history.append(event)
        return event

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ── Requests ─────────────────────────────────────────────────────────────────


class CreateTicketRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    type: TicketType = TicketType.FEATURE
    priority: TicketPriority = TicketPriority.MEDIUM
    project_id: str | None = None
    prd: PRD | None = None


class UpdateTicketRequest(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    acceptance_criteria: list[str] | None = None
    type: TicketType | None = None
    priority: TicketPriority | None = None
    project_id: str | None = None


class TransitionRequest(BaseModel):
    status: TicketStatus


class ReorderRequest(BaseModel):
    status: TicketStatus
    index: int = Field(ge=0)


class SetPRDRequest(BaseModel):
    content: str
    approved: bool = False


class ExecuteRequest(BaseModel):
    worktree_base_path: str | None = None


class PortRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)


# ── Run State ────────────────────────────────────────────────────────────────


class RunPhase(str, enum.Enum):
    """Per-run lifecycle: idle → spawning → running → terminal → cleaned."""

    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"
    CLEANED = "cleaned"

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.SUCCEEDED, RunPhase.FAILED, RunPhase.STOPPED)


class ExitInfo(BaseModel):
    returncode: int | None = None
    signal: int | None = None
    error: str | None = None
    exited_at: datetime = Field(default_factory=utcnow)


class RunStatus(BaseModel):
    """Point-in-time view of a ticket's run, derived without blocking."""

    ticket_id: str
    run_id: str | None = None
    phase: RunPhase = RunPhase.IDLE
    alive: bool = False
    iteration_count: int = 0
    last_output_at: float | None = Field(
        default=None, description="Epoch seconds of the most recent output chunk"
    )
    started_at: datetime | None = None
    exit: ExitInfo | None = None
    port: int | None = None
    log: str = ""


# ── Notifications ────────────────────────────────────────────────────────────


class NotificationType(str, enum.Enum):
    TICKET_STATUS_CHANGED = "ticket-status-changed"
    RUN_STATUS_CHANGED = "run-status-changed"


class TicketStatusChanged(BaseModel):
    event_type: NotificationType = NotificationType.TICKET_STATUS_CHANGED
    ticket: Ticket
    timestamp: datetime = Field(default_factory=utcnow)

    def to_sse_data(self) -> str:
        return self.model_dump_json(by_alias=True)


class RunStatusChanged(BaseModel):
    event_type: NotificationType = NotificationType.RUN_STATUS_CHANGED
    ticket_id: str
    run_id: str | None = None
    alive: bool
    iteration_count: int
    phase: RunPhase
    agent_processes: int = 0
    activity: str | None = Field(default=None, description="'generating' or 'waiting'")
    timestamp: datetime = Field(default_factory=utcnow)

    def to_sse_data(self) -> str:
        return self.model_dump_json()


Notification = TicketStatusChanged | RunStatusChanged
