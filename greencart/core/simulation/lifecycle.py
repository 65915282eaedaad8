from __future__ import annotations

import asyncio
import copy
import logging
import random
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from greencart.config import Settings, settings as default_settings
from greencart.core.simulation.accumulator import Accumulator
from greencart.core.simulation.broadcast import ChannelBroadcaster
from greencart.core.simulation.results import calculate_final_results
from greencart.core.simulation.storage import RunStore
from greencart.core.simulation.tick_generator import RandomSource, SimulationTuning, TickGenerator
from greencart.db.models.simulation_run import SimulationRun
from greencart.schemas.simulation import SimulationEndMessage, StartSimulationRequest
from greencart.utils.exceptions import InvalidConfiguration, PersistenceFailure
from greencart.utils.metrics import SIMULATION_FINALIZE_DURATION_SECONDS, SIMULATION_RUNS_TOTAL
from greencart.utils.observability import log_duration

logger = logging.getLogger(__name__)


END_MESSAGES = {
    "completed": "Simulation completed.",
    "stopped": "Simulation stopped.",
    "failed": "Simulation failed.",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_run_id() -> str:
    ts = _utc_now().strftime("%Y%m%d%H%M%S")
    return f"sim-{ts}-{secrets.token_hex(4)}"


@dataclass
class RunHandle:
    """Live state of one active run, owned by the controller's registry."""

    run_id: str
    name: str
    duration: int
    settings: dict[str, Any]
    created_by: str
    start_time: datetime
    accumulator: Accumulator
    generator: TickGenerator
    task: Optional["asyncio.Task[None]"] = None


class SimulationController:
    """Starts, stops and finalizes simulation runs.

    The registry of active runs lives on the instance. Stop requests and natural
    exhaustion both go through `_finalize`, which removes the handle under the
    registry lock before doing anything else, so each run is finalized at most once.
    """

    def __init__(
        self,
        *,
        store: RunStore,
        broadcaster: ChannelBroadcaster,
        settings: Settings = default_settings,
        rng_factory: Callable[[str], RandomSource] = random.Random,
        utc_now: Callable[[], datetime] = _utc_now,
        new_run_id: Callable[[], str] = _new_run_id,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._settings = settings
        self._rng_factory = rng_factory
        self._utc_now = utc_now
        self._new_run_id = new_run_id

        self._lock = threading.RLock()
        self._runs: dict[str, RunHandle] = {}

    # -----------------------------
    # Start
    # -----------------------------

    def _validate(self, request: Union[StartSimulationRequest, Mapping[str, Any]]) -> StartSimulationRequest:
        if isinstance(request, StartSimulationRequest):
            config = request
        else:
            try:
                config = StartSimulationRequest.model_validate(request)
            except ValidationError as exc:
                raise InvalidConfiguration(
                    "Missing or invalid simulation parameters",
                    details={"errors": exc.errors(include_url=False, include_context=False)},
                ) from exc

        max_minutes = int(self._settings.SIMULATION_MAX_DURATION_MINUTES)
        if config.duration > max_minutes:
            raise InvalidConfiguration(
                "Simulation duration is too long",
                details={"duration": config.duration, "max_duration": max_minutes},
            )
        return config

    async def start(
        self,
        request: Union[StartSimulationRequest, Mapping[str, Any]],
        *,
        created_by: str,
    ) -> str:
        config = self._validate(request)
        tuning = SimulationTuning.from_params(config.params, self._settings)

        run_id = self._new_run_id()
        start_time = self._utc_now()
        params = config.params.model_dump(mode="json") if config.params is not None else {}
        run_settings = {
            "driver_ids": list(config.driver_ids),
            "order_ids": list(config.order_ids),
            "params": params,
        }
        creator = str(created_by or "system")

        # Nothing is registered until the record exists.
        await self._store.create(
            run_id=run_id,
            name=config.name,
            duration=config.duration,
            start_time=start_time,
            settings=run_settings,
            created_by=creator,
        )

        accumulator = Accumulator()
        generator = TickGenerator(
            run_id=run_id,
            driver_ids=config.driver_ids,
            order_ids=config.order_ids,
            accumulator=accumulator,
            rng=self._rng_factory(run_id),
            publish=self._broadcaster.publish,
            tuning=tuning,
            max_ticks=config.duration * int(self._settings.SIMULATION_TICKS_PER_MINUTE),
            progress_log_every=int(self._settings.SIMULATION_PROGRESS_LOG_EVERY_TICKS),
            utc_now=self._utc_now,
        )
        handle = RunHandle(
            run_id=run_id,
            name=config.name,
            duration=config.duration,
            settings=run_settings,
            created_by=creator,
            start_time=start_time,
            accumulator=accumulator,
            generator=generator,
        )

        with self._lock:
            self._runs[run_id] = handle
        handle.task = asyncio.create_task(self._drive(handle), name=f"simulation-ticks:{run_id}")

        SIMULATION_RUNS_TOTAL.labels(status="running").inc()
        logger.info(
            "simulation.started run_id=%s duration=%d drivers=%d orders=%d created_by=%s",
            run_id,
            config.duration,
            len(config.driver_ids),
            len(config.order_ids),
            creator,
        )
        return run_id

    async def _drive(self, handle: RunHandle) -> None:
        try:
            await handle.generator.run(
                interval=float(self._settings.SIMULATION_TICK_INTERVAL_SEC),
                on_exhausted=lambda: self._complete(handle.run_id),
                on_tick=self._on_tick,
            )
        except Exception:
            logger.exception("simulation.tick_failed run_id=%s tick=%d", handle.run_id, handle.generator.tick_index)
            try:
                await self._finalize(handle.run_id, "failed")
            except Exception:
                # Nothing awaits this task; the failure must end up in the log.
                logger.exception("simulation.fail_finalize_failed run_id=%s", handle.run_id)

    async def _complete(self, run_id: str) -> None:
        try:
            await self._finalize(run_id, "completed")
        except PersistenceFailure:
            # Registry and timer are already cleared; the store logged the cause.
            logger.error("simulation.complete_persist_failed run_id=%s", run_id)

    async def _on_tick(self, generator: TickGenerator) -> None:
        every = int(self._settings.SIMULATION_PERSIST_COUNTS_EVERY_TICKS)
        if every <= 0 or generator.tick_index % every != 0:
            return
        await self._store.update_counts(
            generator.run_id,
            telemetry_count=generator.accumulator.telemetry_count,
            events_count=generator.accumulator.events_count,
        )

    # -----------------------------
    # Stop / finalize
    # -----------------------------

    async def stop(self, run_id: str) -> bool:
        """Stops an active run. Returns False when there is nothing to stop."""
        stopped = await self._finalize(run_id, "stopped")
        if not stopped:
            logger.info("simulation.stop_noop run_id=%s (not active)", run_id)
        return stopped

    async def _finalize(self, run_id: str, status: str) -> bool:
        with self._lock:
            handle = self._runs.pop(run_id, None)
        if handle is None:
            return False

        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if status != "completed":
            handle.generator.cancel()

        snapshot = handle.accumulator.snapshot()
        results = calculate_final_results(
            snapshot,
            handle.duration,
            revenue_per_delivery=float(self._settings.SIMULATION_REVENUE_PER_DELIVERY),
            cost_per_km=float(self._settings.SIMULATION_COST_PER_KM),
        )
        end_message = SimulationEndMessage(
            run_id=run_id,
            message=END_MESSAGES[status],
            results=results,
        ).model_dump(mode="json")

        try:
            with log_duration(logger, "simulation.finalize", run_id=run_id, status=status):
                with SIMULATION_FINALIZE_DURATION_SECONDS.labels(status=status).time():
                    await self._store.finalize(
                        run_id,
                        status=status,
                        end_time=self._utc_now(),
                        results=results,
                        telemetry_count=snapshot["telemetry_count"],
                        events_count=snapshot["events_count"],
                    )
        finally:
            # Subscribers always learn the run is over, even if the write failed.
            self._broadcaster.publish(run_id, end_message)
            SIMULATION_RUNS_TOTAL.labels(status=status).inc()

        logger.info(
            "simulation.%s run_id=%s ticks=%d/%d telemetry=%d events=%d deliveries=%d",
            status,
            run_id,
            handle.generator.tick_index,
            handle.generator.max_ticks,
            snapshot["telemetry_count"],
            snapshot["events_count"],
            snapshot["deliveries"]["total"],
        )
        return True

    async def shutdown(self) -> None:
        """Stops every active run (application shutdown)."""
        for run_id in self.active_run_ids():
            try:
                await self._finalize(run_id, "stopped")
            except PersistenceFailure:
                logger.error("simulation.shutdown_persist_failed run_id=%s", run_id)

    # -----------------------------
    # Queries
    # -----------------------------

    def active_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs.keys())

    def status(self, run_id: str) -> dict[str, Any]:
        """Live state from the in-memory registry only."""
        with self._lock:
            handle = self._runs.get(run_id)
        if handle is None:
            return {"status": "not-found"}

        generator = handle.generator
        return {
            "status": "running",
            "run_id": handle.run_id,
            "name": handle.name,
            "duration": handle.duration,
            "settings": copy.deepcopy(handle.settings),
            "created_by": handle.created_by,
            "start_time": handle.start_time,
            "tick": generator.tick_index,
            "max_ticks": generator.max_ticks,
            "accumulator": handle.accumulator.snapshot(),
        }

    async def list_runs(
        self,
        *,
        status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        created_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SimulationRun]:
        return await self._store.list_runs(
            status=status,
            date_from=date_from,
            date_to=date_to,
            created_by=created_by,
            limit=limit,
        )

    async def get_run(self, run_id: str) -> Optional[SimulationRun]:
        return await self._store.get(run_id)
