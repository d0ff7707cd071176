"""ticketflow Server — FastAPI application that ties all components together.

Startup sequence:
1. Load ``config.yaml`` (``TICKETFLOW_CONFIG_DIR`` or ``<root>/.ticketflow``)
2. Build the shared services once: path write locks, port registry,
   worktree provisioner, ticket store, execution supervisor, activity probe
3. Start the status broadcaster
4. Accept commands

Shutdown:
1. Stop the broadcaster
2. Stop every active run (best-effort, no orphaned agent processes)
3. Flush the ticket store
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from ticketflow import __version__
from ticketflow.broadcaster import StatusBroadcaster
from ticketflow.config import TicketFlowConfig, load_config
from ticketflow.errors import RunRejectedError, TicketNotFoundError
from ticketflow.locks import PathWriteLocks
from ticketflow.models import TicketStatus
from ticketflow.ports import PortRegistry
from ticketflow.probe import ActivityProbe, PsProcessTable
from ticketflow.store import TicketStore
from ticketflow.supervisor import ExecutionSupervisor
from ticketflow.worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)


class TicketFlowServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        root: Path | None = None,
        config_dir: Path | None = None,
        config: TicketFlowConfig | None = None,
    ):
        self.root = root or Path.cwd()
        env_dir = os.environ.get("TICKETFLOW_CONFIG_DIR", "").strip()
        self.config_dir = config_dir or (Path(env_dir) if env_dir else self.root / ".ticketflow")
        self.config = config

        # Components (initialized in start())
        self.locks: PathWriteLocks | None = None
        self.ports: PortRegistry | None = None
        self.provisioner: WorktreeProvisioner | None = None
        self.store: TicketStore | None = None
        self.supervisor: ExecutionSupervisor | None = None
        self.probe: ActivityProbe | None = None
        self.broadcaster: StatusBroadcaster | None = None

    def build(self) -> None:
        """Construct every service. Safe to call before ``start()`` (tests)."""
        if self.config is None:
            self.config = load_config(self.config_dir)
        cfg = self.config

        self.locks = PathWriteLocks()
        self.ports = PortRegistry(host=cfg.ports.host)
        self.provisioner = WorktreeProvisioner(self.locks)
        self.store = TicketStore(
            cfg.storage.tickets_path(self.root),
            debounce=cfg.storage.debounce_ms / 1000,
        )
        self.supervisor = ExecutionSupervisor(
            cfg.agent,
            ports=self.ports,
            locks=self.locks,
            provisioner=self.provisioner,
            ports_config=cfg.ports,
        )
        self.probe = ActivityProbe(
            PsProcessTable(timeout=cfg.monitor.ps_timeout),
            process_name=cfg.agent.process_name,
        )
        self.broadcaster = StatusBroadcaster(
            self.store,
            self.supervisor,
            self.probe,
            interval=cfg.monitor.interval,
            idle_ms=cfg.monitor.output_idle_ms,
        )

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("ticketflow server starting (root=%s)", self.root)
        if self.store is None:
            self.build()

        tickets = self.store.get_all()
        if self.store.load_error:
            logger.error("Ticket document could not be loaded: %s", self.store.load_error)
        logger.info("Ticket store ready: %d tickets (%s)", len(tickets), self.store.file_path)

        await self.broadcaster.start()
        logger.info("ticketflow server started")

    async def stop(self) -> None:
        """Graceful shutdown: no agent process outlives the server."""
        logger.info("ticketflow server shutting down")
        if self.broadcaster:
            await self.broadcaster.stop()
        if self.supervisor:
            await self.supervisor.stop_all()
        if self.store:
            if not await self.store.close():
                logger.error("Final ticket flush failed; recent changes may be lost")
        logger.info("ticketflow server stopped")

    # ── Run Orchestration ────────────────────────────────────────────────

    async def launch_run(self, ticket_id: str, worktree_base_path: str | None = None) -> bool:
        """Provision the ticket's worktree (once) and start its agent.

        Raises:
            TicketNotFoundError: unknown ticket id.
            RunRejectedError: no approved PRD, the ticket is not in progress,
                or no base directory chosen.
            ResourceError: worktree provisioning or port allocation failed.
        """
        ticket = self.store.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        if self.supervisor.is_running(ticket_id):
            logger.warning("Ticket %s already has an active run", ticket_id)
            return False
        if ticket.prd is None or not ticket.prd.approved:
            raise RunRejectedError(f"Ticket {ticket_id} has no approved PRD")
        # A successful run advances in_progress → in_testing; elsewhere it would go nowhere
        if ticket.status != TicketStatus.IN_PROGRESS:
            raise RunRejectedError(
                f"Ticket {ticket_id} is {ticket.status.value}; runs start from {TicketStatus.IN_PROGRESS.value}"
            )

        if worktree_base_path and worktree_base_path != ticket.worktree_base_path:
            self.store.set_worktree_path(ticket_id, worktree_base_path, ticket.worktree_path)

        if not ticket.worktree_path or not Path(ticket.worktree_path).is_dir():
            base = worktree_base_path or ticket.worktree_base_path
            if not base:
                raise RunRejectedError(f"Ticket {ticket_id} has no worktree base directory")
            path = await self.provisioner.create(base, ticket)
            self.store.set_worktree_path(ticket_id, base, str(path))

        return await self.supervisor.execute(self.store.get(ticket_id))

    async def cleanup_run(self, ticket_id: str) -> bool:
        """Remove the ticket's worktree and forget it on the ticket record."""
        ticket = self.store.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        if self.supervisor.is_running(ticket_id):
            return False
        cleaned = await self.supervisor.cleanup(ticket_id, ticket.worktree_path)
        if ticket.worktree_path:
            self.store.set_worktree_path(ticket_id, ticket.worktree_base_path, None)
        return cleaned


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(server: TicketFlowServer | None = None) -> FastAPI:
    """Create the FastAPI application around a server instance."""
    from ticketflow.api import router as api_router

    server = server or TicketFlowServer()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="ticketflow",
        version=__version__,
        description="Kanban ticket workflow engine with supervised coding-agent runs",
        lifespan=lifespan,
    )
    app.state.server = server
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        runs = server.supervisor.ticket_ids() if server.supervisor else []
        active = [tid for tid in runs if server.supervisor.is_running(tid)]
        return {
            "status": "ok",
            "version": __version__,
            "tickets": len(server.store.get_all()) if server.store else 0,
            "store_load_error": server.store.load_error if server.store else None,
            "tracked_runs": len(runs),
            "active_runs": len(active),
            "ports": server.ports.snapshot() if server.ports else {},
            "subscribers": server.broadcaster.subscriber_count if server.broadcaster else 0,
        }

    return app
