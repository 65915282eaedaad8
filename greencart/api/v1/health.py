from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.engine.url import make_url

from greencart.api import deps
from greencart.config import settings
from greencart.core.simulation.lifecycle import SimulationController


router = APIRouter()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health/db")
async def health_db_check(db: AsyncSession = Depends(deps.get_db)):
    dialect = make_url(settings.DATABASE_URL).get_backend_name()
    try:
        t0 = time.perf_counter()
        await db.execute(text("SELECT 1"))
        latency_ms = int(round((time.perf_counter() - t0) * 1000.0))
        return {
            "status": "ok",
            "db": {"dialect": dialect, "reachable": True, "latency_ms": latency_ms},
            "timestamp": _utc_now_iso(),
        }
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "db": {"dialect": dialect, "reachable": False, "latency_ms": None},
                "details": str(exc),
                "timestamp": _utc_now_iso(),
            },
        )


@router.get("/health/simulations")
async def health_simulations(
    controller: SimulationController = Depends(deps.get_simulation_controller),
):
    active = controller.active_run_ids()
    return {"status": "ok", "active_runs": len(active), "timestamp": _utc_now_iso()}
