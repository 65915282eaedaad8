from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greencart.api.router import api_router
from greencart.config import Settings, settings
from greencart.core.simulation.broadcast import ChannelBroadcaster
from greencart.core.simulation.lifecycle import SimulationController
from greencart.core.simulation.storage import RunStore
from greencart.db.session import AsyncSessionLocal, engine
from greencart.utils.error_codes import ERROR_MESSAGES, ErrorCode
from greencart.utils.exceptions import GreenCartException, InvalidConfiguration


logger = logging.getLogger(__name__)

START_PATH = "/api/v1/simulations/start"


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_settings: Settings = app.state.settings
    logging.getLogger("greencart").setLevel(str(app_settings.LOG_LEVEL).upper())

    store = RunStore(app.state.session_factory)

    # Tick tasks do not survive a restart: runs still 'running' in the store are
    # orphans. Best-effort; must not prevent the server from starting.
    try:
        reconciled = await store.reconcile_stale_runs()
        if reconciled:
            logger.warning("lifespan.simulation_reconcile reconciled=%d stale run(s) on startup", reconciled)
    except Exception:
        logger.exception("lifespan.simulation_reconcile_failed (non-fatal)")

    broadcaster = ChannelBroadcaster(queue_max=int(app_settings.SIMULATION_SUBSCRIBER_QUEUE_MAX))
    app.state.simulation_broadcaster = broadcaster
    app.state.simulation_controller = SimulationController(
        store=store,
        broadcaster=broadcaster,
        settings=app_settings,
    )

    try:
        yield
    finally:
        try:
            await app.state.simulation_controller.shutdown()
        except Exception:
            logger.exception("simulation.controller.shutdown_failed")

        # Ensure DB connections/threads are cleaned up when the app shuts down
        # (important for pytest TestClient runs + aiosqlite).
        if app.state.session_factory is AsyncSessionLocal:
            try:
                await engine.dispose()
            except Exception:
                logger.exception("db.engine.dispose_failed")


async def request_id_middleware(request: Request, call_next):
    from greencart.utils.request_id import request_id_var, resolve_request_id

    rid = resolve_request_id(request.headers.get("X-Request-ID"))
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)

    response.headers["X-Request-ID"] = rid
    return response


async def metrics_middleware(request: Request, call_next):
    app_settings = getattr(request.app.state, "settings", settings)
    if not getattr(app_settings, "METRICS_ENABLED", True):
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed_s = time.perf_counter() - start

    from greencart.utils.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION_SECONDS

    route = request.scope.get("route")
    # Keep label cardinality low: route template when matched, a fixed label otherwise.
    route_path = getattr(route, "path", None)
    path_label = route_path if isinstance(route_path, str) and route_path else "__unmatched__"
    method = request.method
    status = str(getattr(response, "status_code", 0))

    HTTP_REQUESTS_TOTAL.labels(method=method, path=path_label, status=status).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_label).observe(elapsed_s)
    return response


async def greencart_exception_handler(request: Request, exc: GreenCartException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    path = str(getattr(request.url, "path", "") or "")

    # A malformed start request is a configuration error of the run, not a generic input error.
    if path == START_PATH:
        err = InvalidConfiguration("Missing or invalid simulation parameters", details={"errors": errors})
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": ErrorCode.E001.value,
                "message": ERROR_MESSAGES[ErrorCode.E001],
                "details": {"errors": errors},
            }
        },
    )


_START_TIME = time.time()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _best_effort_version() -> str:
    v = (os.getenv("GREENCART_APP_VERSION") or os.getenv("APP_VERSION") or "").strip()
    return v or "dev"


async def health_check():
    return {
        "status": "ok",
        "version": _best_effort_version(),
        "uptime_seconds": int(max(0.0, time.time() - _START_TIME)),
        "timestamp": _utc_now_iso(),
    }


async def healthz_check():
    return {"status": "ok"}


async def metrics():
    from greencart.utils.metrics import render_metrics

    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)


def create_app(
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    app_settings = app_settings or settings

    app = FastAPI(title="GreenCart Simulation Backend", debug=app_settings.DEBUG, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.session_factory = session_factory or AsyncSessionLocal

    # CORS for local dev servers on any port, localhost only.
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(metrics_middleware)

    app.add_exception_handler(GreenCartException, greencart_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

    app.include_router(api_router, prefix="/api/v1")

    app.add_api_route("/health", health_check, methods=["GET"])
    app.add_api_route("/healthz", healthz_check, methods=["GET"])
    if getattr(app_settings, "METRICS_ENABLED", True):
        app.add_api_route("/metrics", metrics, methods=["GET"])
    return app


app = create_app()
