"""HTTP command surface and SSE notification stream.

Every handler resolves the shared :class:`~ticketflow.server.TicketFlowServer`
from ``app.state``; there are no module-level service singletons.

Error mapping:
- unknown ticket → 404
- invalid request / rejected transition / run preconditions → 400 or 409
- resource conflicts (ports, worktree collisions) → 409
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse

from ticketflow.broadcaster import StatusBroadcaster
from ticketflow.errors import (
    InvalidBaseError,
    ResourceError,
    RunRejectedError,
    TicketFlowError,
    TicketNotFoundError,
)
from ticketflow.models import (
    CreateTicketRequest,
    ExecuteRequest,
    PortRequest,
    ReorderRequest,
    RunStatus,
    SetPRDRequest,
    Ticket,
    TicketStatus,
    TicketStatusChanged,
    TransitionRequest,
    UpdateTicketRequest,
)
from ticketflow.server import TicketFlowServer

logger = logging.getLogger(__name__)

router = APIRouter()

HEARTBEAT_SECONDS = 30.0


def get_server(request: Request) -> TicketFlowServer:
    server = request.app.state.server
    if server.store is None:
        raise HTTPException(status_code=503, detail="Server not started")
    return server


def _http_error(exc: TicketFlowError) -> HTTPException:
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidBaseError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (RunRejectedError, ResourceError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _require_ticket(server: TicketFlowServer, ticket_id: str) -> Ticket:
    ticket = server.store.get(ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return ticket


def _announce(server: TicketFlowServer, ticket_id: str) -> Ticket:
    ticket = server.store.get(ticket_id)
    server.broadcaster.publish(TicketStatusChanged(ticket=ticket))
    return ticket


# ── Tickets ──────────────────────────────────────────────────────────────────


@router.get("/tickets", response_model=list[Ticket])
async def list_tickets(
    status: TicketStatus | None = Query(default=None),
    server: TicketFlowServer = Depends(get_server),
):
    if status is not None:
        return server.store.by_status(status)
    return server.store.get_all()


@router.post("/tickets", response_model=Ticket, status_code=201)
async def create_ticket(body: CreateTicketRequest, server: TicketFlowServer = Depends(get_server)):
    return server.store.create(body)


@router.get("/tickets/{ticket_id}", response_model=Ticket)
async def get_ticket(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    return _require_ticket(server, ticket_id)


@router.patch("/tickets/{ticket_id}", response_model=Ticket)
async def update_ticket(
    ticket_id: str,
    body: UpdateTicketRequest,
    server: TicketFlowServer = Depends(get_server),
):
    if not server.store.update(ticket_id, body):
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return server.store.get(ticket_id)


@router.delete("/tickets/{ticket_id}", status_code=204)
async def delete_ticket(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    if not server.store.delete(ticket_id):
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return Response(status_code=204)


@router.post("/tickets/{ticket_id}/transition", response_model=Ticket)
async def transition_ticket(
    ticket_id: str,
    body: TransitionRequest,
    server: TicketFlowServer = Depends(get_server),
):
    ticket = _require_ticket(server, ticket_id)
    if not server.store.transition(ticket_id, body.status):
        raise HTTPException(
            status_code=409,
            detail=f"Transition {ticket.status.value} → {body.status.value} not allowed",
        )
    return _announce(server, ticket_id)


@router.post("/tickets/{ticket_id}/reorder")
async def reorder_ticket(
    ticket_id: str,
    body: ReorderRequest,
    server: TicketFlowServer = Depends(get_server),
):
    before = _require_ticket(server, ticket_id)
    result = server.store.reorder(ticket_id, body.status, body.index)
    if result.accepted and before.status != body.status:
        _announce(server, ticket_id)
    return {
        "accepted": result.accepted,
        "tickets": [t.model_dump(mode="json", by_alias=True) for t in result],
    }


# ── PRD ──────────────────────────────────────────────────────────────────────


@router.put("/tickets/{ticket_id}/prd", response_model=Ticket)
async def set_prd(ticket_id: str, body: SetPRDRequest, server: TicketFlowServer = Depends(get_server)):
    if not server.store.set_prd(ticket_id, body.content, body.approved):
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return server.store.get(ticket_id)


@router.post("/tickets/{ticket_id}/prd/approve", response_model=Ticket)
async def approve_prd(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    return _set_approval(server, ticket_id, True)


@router.post("/tickets/{ticket_id}/prd/reject", response_model=Ticket)
async def reject_prd(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    return _set_approval(server, ticket_id, False)


def _set_approval(server: TicketFlowServer, ticket_id: str, approved: bool) -> Ticket:
    _require_ticket(server, ticket_id)
    if not server.store.approve_prd(ticket_id, approved):
        raise HTTPException(status_code=409, detail=f"Ticket {ticket_id} has no PRD")
    return server.store.get(ticket_id)


# ── Runs ─────────────────────────────────────────────────────────────────────


@router.post("/tickets/{ticket_id}/run")
async def execute_ticket(
    ticket_id: str,
    body: ExecuteRequest | None = None,
    server: TicketFlowServer = Depends(get_server),
):
    base = body.worktree_base_path if body else None
    try:
        started = await server.launch_run(ticket_id, base)
    except TicketFlowError as e:
        raise _http_error(e) from e
    return {
        "started": started,
        "status": server.supervisor.get_status(ticket_id).model_dump(mode="json"),
    }


@router.get("/tickets/{ticket_id}/run", response_model=RunStatus)
async def run_status(
    ticket_id: str,
    include_log: bool = Query(default=False),
    server: TicketFlowServer = Depends(get_server),
):
    return server.supervisor.get_status(ticket_id, include_log=include_log)


@router.post("/tickets/{ticket_id}/run/stop")
async def stop_run(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    stopped = await server.supervisor.stop(ticket_id)
    return {"stopped": stopped, "status": server.supervisor.get_status(ticket_id).model_dump(mode="json")}


@router.post("/tickets/{ticket_id}/run/cleanup")
async def cleanup_run(ticket_id: str, server: TicketFlowServer = Depends(get_server)):
    if server.supervisor.is_running(ticket_id):
        raise HTTPException(status_code=409, detail="Stop the run before cleaning up")
    try:
        cleaned = await server.cleanup_run(ticket_id)
    except TicketFlowError as e:
        raise _http_error(e) from e
    return {"cleaned": cleaned}


# ── Ports ────────────────────────────────────────────────────────────────────


@router.get("/ports")
async def list_ports(server: TicketFlowServer = Depends(get_server)):
    return {str(port): owner for port, owner in server.ports.snapshot().items()}


@router.get("/ports/available")
async def find_port(
    base: int | None = Query(default=None, ge=1, le=65535),
    max_attempts: int | None = Query(default=None, ge=1),
    server: TicketFlowServer = Depends(get_server),
):
    cfg = server.config.ports
    try:
        port = await server.ports.find_available(base or cfg.base_port, max_attempts or cfg.max_attempts)
    except ResourceError as e:
        raise _http_error(e) from e
    return {"port": port}


@router.post("/ports/register")
async def register_port(body: PortRequest, server: TicketFlowServer = Depends(get_server)):
    if not server.ports.register(body.owner_id, body.port):
        raise HTTPException(
            status_code=409,
            detail=f"Port {body.port} is held by {server.ports.owner_of(body.port)}",
        )
    return {"port": body.port, "owner_id": body.owner_id}


@router.post("/ports/unregister")
async def unregister_port(body: PortRequest, server: TicketFlowServer = Depends(get_server)):
    return {"released": server.ports.unregister(body.owner_id, body.port)}


@router.get("/ports/{port}/owner")
async def port_owner(port: int, server: TicketFlowServer = Depends(get_server)):
    return {"port": port, "owner_id": server.ports.owner_of(port)}


# ── Notifications (SSE) ──────────────────────────────────────────────────────


async def sse_events(
    broadcaster: StatusBroadcaster, heartbeat: float = HEARTBEAT_SECONDS
) -> AsyncIterator[str]:
    """Yield SSE frames for broadcaster notifications, with heartbeats."""
    queue = await broadcaster.subscribe()
    try:
        yield 'event: connected\ndata: {"status": "connected"}\n\n'
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                yield f"event: {event.event_type.value}\ndata: {event.to_sse_data()}\n\n"
            except asyncio.TimeoutError:
                yield "event: heartbeat\ndata: {}\n\n"
    finally:
        await broadcaster.unsubscribe(queue)


@router.get("/events/stream")
async def stream_events(server: TicketFlowServer = Depends(get_server)):
    """Stream ticket-status-changed and run-status-changed notifications.

    Connect with EventSource::

        const es = new EventSource('/events/stream');
        es.addEventListener('run-status-changed', (e) => console.log(JSON.parse(e.data)));
    """
    return StreamingResponse(
        sse_events(server.broadcaster),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
