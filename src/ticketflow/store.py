"""Ticket Store — JSON-document-backed Kanban state machine.

Single source of truth for ticket status, column order and history.

- Lazy-load on first access; an unreadable or corrupt document degrades to
  an empty board (logged) instead of raising.
- Mutations flip a dirty flag and schedule one coalesced flush after a quiet
  period, so a burst of drag-reorders produces a single write.
- ``await flush()`` bypasses the timer (shutdown path). Writes are serialised
  by a lock and land atomically via temp file + ``os.replace``.

Every mutation appends exactly one history entry, and ``order`` values are
dense (``0..n-1``) within each column after every mutation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ticketflow.errors import PersistenceError
from ticketflow.models import (
    CreateTicketRequest,
    PRD,
    Ticket,
    TicketStatus,
    UpdateTicketRequest,
    can_transition,
)

logger = logging.getLogger(__name__)

_TICKET_LIST = TypeAdapter(list[Ticket])
_COLUMN_INDEX = {status: i for i, status in enumerate(TicketStatus)}
_NULLABLE_UPDATE_FIELDS = frozenset({"project_id"})


class ReorderResult(list):
    """Tickets returned by :meth:`TicketStore.reorder`.

    Behaves as the full ticket list; ``accepted`` is False when the move was
    rejected (unknown ticket or invalid cross-column transition), which is
    otherwise indistinguishable from a move to the same position.
    """

    def __init__(self, tickets: list[Ticket], accepted: bool) -> None:
        super().__init__(tickets)
        self.accepted = accepted


class TicketStore:
    """In-memory ticket set with debounced, atomic JSON persistence."""

    def __init__(self, file_path: Path | str, debounce: float = 0.5) -> None:
        self.file_path = Path(file_path)
        self.debounce = debounce
        self._tickets: list[Ticket] | None = None
        self._dirty = False
        self._flush_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self.load_error: str | None = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ── Persistence ──────────────────────────────────────────────────────

    def _load(self) -> list[Ticket]:
        if self._tickets is not None:
            return self._tickets

        if not self.file_path.exists():
            self._tickets = []
            return self._tickets

        try:
            parsed: Any = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            self._reset_after_load_failure(f"unreadable ticket document: {e}")
            return self._tickets  # type: ignore[return-value]

        if not isinstance(parsed, list):
            self._reset_after_load_failure(
                f"ticket document is a {type(parsed).__name__}, expected a list"
            )
            return self._tickets  # type: ignore[return-value]

        try:
            self._tickets = _TICKET_LIST.validate_python(parsed)
        except PydanticValidationError as e:
            self._reset_after_load_failure(
                f"ticket document failed validation ({e.error_count()} errors)"
            )
            return self._tickets  # type: ignore[return-value]

        logger.info("Loaded %d tickets from %s", len(self._tickets), self.file_path)
        return self._tickets

    def _reset_after_load_failure(self, reason: str) -> None:
        logger.error("TICKET STORE RESET — %s (%s); starting with no tickets", reason, self.file_path)
        self.load_error = reason
        self._tickets = []

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous use); caller flushes explicitly
            return
        self._flush_task = loop.create_task(self._delayed_flush(), name="ticket-store-flush")

    async def _delayed_flush(self) -> None:
        try:
            await asyncio.sleep(self.debounce)
        except asyncio.CancelledError:
            return
        self._flush_task = None
        await self.flush()

    async def flush(self) -> bool:
        """Write the document now if dirty. Returns False if the write failed."""
        pending = self._flush_task
        if pending is not None and pending is not asyncio.current_task():
            pending.cancel()
            self._flush_task = None

        async with self._write_lock:
            if not self._dirty:
                return True
            self._dirty = False
            document = json.dumps([t.to_document() for t in self._load()], indent=2)
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, _write_atomic, self.file_path, document)
            except PersistenceError:
                logger.exception("Failed to persist tickets to %s", self.file_path)
                self._dirty = True
                return False

        logger.debug("Flushed %d tickets to %s", len(self._load()), self.file_path)
        return True

    async def close(self) -> bool:
        return await self.flush()

    # ── Queries ──────────────────────────────────────────────────────────

    def _find(self, ticket_id: str) -> Ticket | None:
        for ticket in self._load():
            if ticket.id == ticket_id:
                return ticket
        return None

    def _column(self, status: TicketStatus, exclude_id: str | None = None) -> list[Ticket]:
        return sorted(
            (t for t in self._load() if t.status == status and t.id != exclude_id),
            key=lambda t: t.order,
        )

    def _renumber(self, status: TicketStatus) -> None:
        for i, ticket in enumerate(self._column(status)):
            ticket.order = i

    def _max_order(self, status: TicketStatus, exclude_id: str | None = None) -> int:
        column = self._column(status, exclude_id)
        return max((t.order for t in column), default=-1)

    def get_all(self) -> list[Ticket]:
        """All tickets (copies), sorted by column then order."""
        tickets = sorted(self._load(), key=lambda t: (_COLUMN_INDEX[t.status], t.order))
        return [t.model_copy(deep=True) for t in tickets]

    def get(self, ticket_id: str) -> Ticket | None:
        ticket = self._find(ticket_id)
        return ticket.model_copy(deep=True) if ticket else None

    def by_status(self, status: TicketStatus) -> list[Ticket]:
        return [t.model_copy(deep=True) for t in self._column(TicketStatus(status))]

    # ── Mutations ────────────────────────────────────────────────────────

    def create(self, request: CreateTicketRequest) -> Ticket:
        tickets = self._load()
        ticket = Ticket(
            title=request.title,
            description=request.description,
            acceptance_criteria=list(request.acceptance_criteria),
            status=TicketStatus.BACKLOG,
            type=request.type,
            priority=request.priority,
            project_id=request.project_id,
            prd=request.prd.model_copy() if request.prd else None,
            order=self._max_order(TicketStatus.BACKLOG) + 1,
        )
        ticket.record("created")
        ticket.created_at = ticket.updated_at
        tickets.append(ticket)
        self._mark_dirty()
        logger.info("Created ticket %s (%r)", ticket.id, ticket.title)
        return ticket.model_copy(deep=True)

    def update(self, ticket_id: str, updates: UpdateTicketRequest | dict[str, Any]) -> bool:
        ticket = self._find(ticket_id)
        if ticket is None:
            return False

        if isinstance(updates, dict):
            updates = UpdateTicketRequest.model_validate(updates)
        changes = updates.model_dump(exclude_unset=True)
        for field, value in changes.items():
            # null means "leave unchanged" except where the field itself is nullable
            if value is None and field not in _NULLABLE_UPDATE_FIELDS:
                continue
            if field == "acceptance_criteria":
                value = list(value)
            setattr(ticket, field, value)

        ticket.record("updated")
        self._mark_dirty()
        return True

    def delete(self, ticket_id: str) -> bool:
        tickets = self._load()
        ticket = self._find(ticket_id)
        if ticket is None:
            return False
        tickets.remove(ticket)
        self._renumber(ticket.status)
        self._mark_dirty()
        logger.info("Deleted ticket %s", ticket_id)
        return True

    def transition(self, ticket_id: str, new_status: TicketStatus | str) -> bool:
        """Move a ticket along a workflow edge, appending it to the new column.

        Returns False (and changes nothing) for an unknown ticket or an edge
        not present in the transition table.
        """
        ticket = self._find(ticket_id)
        if ticket is None:
            return False
        try:
            target = TicketStatus(new_status)
        except ValueError:
            return False

        source = ticket.status
        if not can_transition(source, target):
            logger.info("Rejected transition %s → %s for ticket %s", source.value, target.value, ticket_id)
            return False

        ticket.order = self._max_order(target, exclude_id=ticket_id) + 1
        ticket.status = target
        self._renumber(source)
        ticket.record("transitioned", source, target)
        self._mark_dirty()
        logger.info("Ticket %s transitioned %s → %s", ticket_id, source.value, target.value)
        return True

    def reorder(
        self, ticket_id: str, target_status: TicketStatus | str, target_index: int
    ) -> ReorderResult:
        """Splice a ticket into a column at ``target_index`` and re-enumerate.

        Cross-column moves must be valid transitions; a rejected move returns
        the unchanged ticket set with ``accepted=False``.
        """
        ticket = self._find(ticket_id)
        if ticket is None:
            logger.warning("Reorder of unknown ticket %s ignored", ticket_id)
            return ReorderResult(self.get_all(), accepted=False)
        try:
            target = TicketStatus(target_status)
        except ValueError:
            return ReorderResult(self.get_all(), accepted=False)

        source = ticket.status
        if source != target and not can_transition(source, target):
            logger.info("Rejected reorder %s → %s for ticket %s", source.value, target.value, ticket_id)
            return ReorderResult(self.get_all(), accepted=False)

        column = self._column(target, exclude_id=ticket_id)
        index = max(0, min(target_index, len(column)))
        column.insert(index, ticket)
        ticket.status = target
        for i, t in enumerate(column):
            t.order = i

        if source != target:
            self._renumber(source)
            ticket.record("transitioned", source, target)
        else:
            ticket.record("reordered")

        self._mark_dirty()
        return ReorderResult(self.get_all(), accepted=True)

    def set_worktree_path(
        self, ticket_id: str, base_path: str | None, full_path: str | None
    ) -> bool:
        """Record the user-chosen base directory and, once provisioned, the full path."""
        ticket = self._find(ticket_id)
        if ticket is None:
            return False
        ticket.worktree_base_path = base_path or None
        ticket.worktree_path = full_path or None
        ticket.record("worktree_set")
        self._mark_dirty()
        return True

    def set_prd(self, ticket_id: str, content: str, approved: bool = False) -> bool:
        ticket = self._find(ticket_id)
        if ticket is None:
            return False
        ticket.prd = PRD(content=content, approved=approved)
        ticket.record("prd_set")
        self._mark_dirty()
        return True

    def approve_prd(self, ticket_id: str, approved: bool) -> bool:
        """Approve or reject the ticket's PRD. False if the ticket has none."""
        ticket = self._find(ticket_id)
        if ticket is None or ticket.prd is None:
            return False
        ticket.prd.approved = approved
        ticket.record("prd_approved" if approved else "prd_rejected")
        self._mark_dirty()
        return True


def _write_atomic(path: Path, document: str) -> None:
    """Write ``document`` to ``path`` via a temp file in the same directory."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".tickets-", suffix=".tmp")
    except OSError as e:
        raise PersistenceError(f"cannot create temp file next to {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(document)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise PersistenceError(f"cannot write {path}: {e}") from e
