"""Status Broadcaster — periodic merge of run status and process activity.

Every ``monitor.interval`` seconds:
1. Query the supervisor for every tracked run (non-blocking)
2. Scan the process table once for all live runs
3. Emit ``run-status-changed`` for runs whose merged signal changed
4. Advance tickets whose run succeeded from ``in_progress`` to ``in_testing``
   through the same validated ``TicketStore.transition`` entry point used by
   user requests, then emit ``ticket-status-changed``

A failing tick is logged and the loop carries on with the next one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ticketflow.models import (
    Notification,
    RunPhase,
    RunStatusChanged,
    TicketStatus,
    TicketStatusChanged,
)
from ticketflow.probe import compute_activity

if TYPE_CHECKING:
    from ticketflow.probe import ActivityProbe
    from ticketflow.store import TicketStore
    from ticketflow.supervisor import ExecutionSupervisor

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class StatusBroadcaster:
    """Periodic background task that fans status changes out to subscribers."""

    def __init__(
        self,
        store: TicketStore,
        supervisor: ExecutionSupervisor,
        probe: ActivityProbe,
        interval: float = 3.0,
        idle_ms: int = 2500,
    ):
        self.store = store
        self.supervisor = supervisor
        self.probe = probe
        self.interval = interval
        self.idle_ms = idle_ms

        self._running = False
        self._task: asyncio.Task | None = None
        self._subscribers: list[asyncio.Queue[Notification]] = []
        self._lock = asyncio.Lock()
        self._last_seen: dict[str, tuple] = {}
        self._settled: dict[str, str] = {}  # ticket id -> run id whose completion was handled

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="status-broadcaster")
        logger.info("Status broadcaster started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Status broadcaster stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Status broadcaster tick failed")

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self) -> list[Notification]:
        """Run one merge pass. Returns the notifications it published."""
        emitted: list[Notification] = []
        ticket_ids = self.supervisor.ticket_ids()

        tracked = self.supervisor.tracked_processes()
        counts = await self.probe.scan(tracked) if tracked else {}
        activity = compute_activity(counts, tracked, idle_ms=self.idle_ms)

        for ticket_id in ticket_ids:
            status = self.supervisor.get_status(ticket_id)
            agents = counts.get(ticket_id, 0)
            key = (
                status.run_id,
                status.alive,
                status.iteration_count,
                status.phase,
                activity.get(ticket_id),
                agents,
            )
            if self._last_seen.get(ticket_id) != key:
                self._last_seen[ticket_id] = key
                event = RunStatusChanged(
                    ticket_id=ticket_id,
                    run_id=status.run_id,
                    alive=status.alive,
                    iteration_count=status.iteration_count,
                    phase=status.phase,
                    agent_processes=agents,
                    activity=activity.get(ticket_id),
                )
                self.publish(event)
                emitted.append(event)

            if (
                status.phase == RunPhase.SUCCEEDED
                and status.run_id is not None
                and self._settled.get(ticket_id) != status.run_id
            ):
                self._settled[ticket_id] = status.run_id
                advanced = self._advance(ticket_id)
                if advanced is not None:
                    emitted.append(advanced)

        # Runs that were cleaned up are no longer tracked
        tracked = set(ticket_ids)
        for ticket_id in set(self._last_seen) - tracked:
            del self._last_seen[ticket_id]
        for ticket_id in set(self._settled) - tracked:
            del self._settled[ticket_id]

        return emitted

    def _advance(self, ticket_id: str) -> TicketStatusChanged | None:
        ticket = self.store.get(ticket_id)
        if ticket is None:
            logger.warning("Run succeeded for unknown ticket %s", ticket_id)
            return None
        if ticket.status != TicketStatus.IN_PROGRESS:
            logger.info(
                "Run for ticket %s succeeded while ticket is %s; not advancing",
                ticket_id,
                ticket.status.value,
            )
            return None
        if not self.store.transition(ticket_id, TicketStatus.IN_TESTING):
            return None

        logger.info("Ticket %s auto-advanced to in_testing after agent completion", ticket_id)
        event = TicketStatusChanged(ticket=self.store.get(ticket_id))
        self.publish(event)
        return event

    # ── Pub/Sub ──────────────────────────────────────────────────────────

    def publish(self, event: Notification) -> None:
        dead: list[asyncio.Queue[Notification]] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead.append(queue)
        # Remove full queues (client disconnected or too slow)
        for q in dead:
            self._subscribers.remove(q)
            logger.warning("Dropped slow notification subscriber")

    async def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue[Notification]:
        queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        async with self._lock:
            self._subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Notification]) -> None:
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
