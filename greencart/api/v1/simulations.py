from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import APIRouter, Depends, Query
from starlette.responses import StreamingResponse

from greencart.api import deps
from greencart.core.simulation.broadcast import ChannelBroadcaster
from greencart.core.simulation.lifecycle import SimulationController
from greencart.schemas.simulation import (
    RunStatusValue,
    SimulationResultsResponse,
    SimulationRunListResponse,
    SimulationRunOut,
    SimulationStatusResponse,
    StartSimulationRequest,
    StartSimulationResponse,
    StopSimulationResponse,
)
from greencart.utils.exceptions import NotFoundException

logger = logging.getLogger(__name__)

router = APIRouter()

_managers = deps.require_roles("admin", "manager")
_viewers = deps.require_roles("admin", "manager", "dispatcher")

SSE_KEEPALIVE_SEC = 15.0


@router.post("/start", response_model=StartSimulationResponse)
async def start_simulation(
    body: StartSimulationRequest,
    actor: deps.Actor = Depends(_managers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    run_id = await controller.start(body, created_by=actor.user_id)
    return StartSimulationResponse(run_id=run_id)


@router.post("/{run_id}/stop", response_model=StopSimulationResponse)
async def stop_simulation(
    run_id: str,
    actor: deps.Actor = Depends(_managers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    stopped = await controller.stop(run_id)
    if not stopped:
        raise NotFoundException(
            "Simulation not found or already stopped",
            details={"run_id": run_id},
        )
    return StopSimulationResponse(stopped=True, message="Simulation stopped successfully")


@router.get("/{run_id}/status", response_model=SimulationStatusResponse, response_model_exclude_none=True)
async def simulation_status(
    run_id: str,
    actor: deps.Actor = Depends(_viewers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    return SimulationStatusResponse(**controller.status(run_id))


@router.get("", response_model=SimulationRunListResponse)
async def list_simulations(
    status: Optional[RunStatusValue] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    created_by: Optional[str] = Query(None, max_length=128),
    limit: int = Query(100, ge=1, le=1000),
    actor: deps.Actor = Depends(_managers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    runs = await controller.list_runs(
        status=status,
        date_from=date_from,
        date_to=date_to,
        created_by=created_by,
        limit=limit,
    )
    filters: dict[str, Any] = {
        "status": status,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
        "created_by": created_by,
        "limit": limit,
    }
    return SimulationRunListResponse(
        simulations=[SimulationRunOut.model_validate(r) for r in runs],
        total=len(runs),
        filters={k: v for k, v in filters.items() if v is not None},
    )


@router.get("/{run_id}", response_model=SimulationRunOut)
async def get_simulation(
    run_id: str,
    actor: deps.Actor = Depends(_managers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    run = await controller.get_run(run_id)
    if run is None:
        raise NotFoundException("Simulation not found", details={"run_id": run_id})
    return SimulationRunOut.model_validate(run)


@router.get("/{run_id}/results", response_model=SimulationResultsResponse)
async def simulation_results(
    run_id: str,
    actor: deps.Actor = Depends(_viewers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    run = await controller.get_run(run_id)
    if run is None:
        raise NotFoundException("Simulation not found", details={"run_id": run_id})
    return SimulationResultsResponse.model_validate(run)


# -----------------------------
# SSE
# -----------------------------


def _sse_format(payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    kind = str(payload.get("kind") or "message")
    return f"event: {kind}\ndata: {data}\n\n"


async def run_events_stream(
    *,
    broadcaster: ChannelBroadcaster,
    run_id: str,
    is_active: Callable[[str], bool],
    keepalive_sec: float = SSE_KEEPALIVE_SEC,
) -> AsyncIterator[str]:
    """Yields SSE frames for `run_id` until `simulationEnd`.

    The channel is joined on first iteration, so a client that goes away before
    the body starts never leaves a subscription behind. Liveness is checked after
    joining; a run that is no longer active yields an empty stream.
    """
    sub = broadcaster.join(run_id)
    try:
        if not is_active(run_id):
            return
        while True:
            try:
                msg = await asyncio.wait_for(sub.queue.get(), timeout=keepalive_sec)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue

            yield _sse_format(msg)
            if msg.get("kind") == "simulationEnd":
                return
    finally:
        broadcaster.leave(run_id, sub)


@router.get("/{run_id}/events")
async def simulation_events(
    run_id: str,
    actor: deps.Actor = Depends(_viewers),
    controller: SimulationController = Depends(deps.get_simulation_controller),
    broadcaster: ChannelBroadcaster = Depends(deps.get_broadcaster),
):
    run = await controller.get_run(run_id)
    if run is None:
        raise NotFoundException("Simulation not found", details={"run_id": run_id})

    stream = run_events_stream(
        broadcaster=broadcaster,
        run_id=run_id,
        is_active=lambda rid: rid in controller.active_run_ids(),
    )
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
