from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol, Sequence

from greencart.config import Settings
from greencart.core.simulation.accumulator import Accumulator, EventType, FuelType
from greencart.schemas.simulation import (
    SimulationEventMessage,
    SimulationEventPayload,
    SimulationParams,
    TelemetryMessage,
)

logger = logging.getLogger(__name__)


# Reference coordinate for synthetic telemetry (New York City).
REFERENCE_LAT = 40.7128
REFERENCE_LON = -74.0060
COORD_JITTER = 0.05

SPEED_MIN_KMH = 20.0
SPEED_SPREAD_KMH = 30.0

# Cost per unit of (speed / 100) by fuel type.
FUEL_RATES: dict[str, float] = {"electric": 0.10, "petrol": 0.15, "diesel": 0.12}
# Cumulative thresholds on one uniform draw: 30% electric, 35% petrol, 35% diesel.
FUEL_THRESHOLDS: tuple[tuple[float, FuelType], ...] = ((0.30, "electric"), (0.65, "petrol"), (1.0, "diesel"))

EVENT_MESSAGES: dict[str, str] = {
    "driverBreakdown": "Vehicle breakdown",
    "reroute": "Route changed due to traffic",
}

TickState = Literal["scheduled", "ticking", "exhausted", "cancelled"]


class RandomSource(Protocol):
    def random(self) -> float: ...

    def uniform(self, a: float, b: float) -> float: ...

    def randint(self, a: int, b: int) -> int: ...

    def choice(self, seq: Sequence[Any]) -> Any: ...


@dataclass(frozen=True)
class SimulationTuning:
    delivery_probability: float = 0.05
    on_time_probability: float = 0.7
    event_probability: float = 0.01
    breakdown_share: float = 0.3
    speed_variance: float = 1.0
    traffic_factor: float = 1.0

    @classmethod
    def from_params(cls, params: Optional[SimulationParams], settings: Settings) -> "SimulationTuning":
        """Resolve run params against configured defaults.

        Params are validated by the request model; this only merges them.
        """
        params = params or SimulationParams()
        breakdown_share = float(settings.SIMULATION_BREAKDOWN_SHARE)
        bp = params.breakdown_probability
        rp = params.reroute_probability
        if bp is not None or rp is not None:
            # A lone weight is a share; the other event takes the remainder.
            bp = (1.0 - rp) if bp is None else bp
            rp = (1.0 - bp) if rp is None else rp
            weight = bp + rp
            breakdown_share = bp / weight if weight > 0 else 0.0

        return cls(
            delivery_probability=float(settings.SIMULATION_DELIVERY_PROBABILITY),
            on_time_probability=float(settings.SIMULATION_ON_TIME_PROBABILITY),
            event_probability=float(settings.SIMULATION_EVENT_PROBABILITY),
            breakdown_share=breakdown_share,
            speed_variance=float(params.speed_variance),
            traffic_factor=float(params.traffic_factor),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TickGenerator:
    """Produces the synthetic telemetry and events of one run.

    State machine: scheduled -> ticking -> exhausted | cancelled. All mutation
    goes to the run's accumulator; messages go out through `publish`.
    """

    def __init__(
        self,
        *,
        run_id: str,
        driver_ids: Sequence[str],
        order_ids: Sequence[str],
        accumulator: Accumulator,
        rng: RandomSource,
        publish: Callable[[str, dict[str, Any]], Any],
        tuning: SimulationTuning,
        max_ticks: int,
        progress_log_every: int = 10,
        utc_now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.run_id = run_id
        self.driver_ids = tuple(driver_ids)
        self.order_ids = tuple(order_ids)
        self.accumulator = accumulator
        self.rng = rng
        self.tuning = tuning
        self.max_ticks = int(max_ticks)
        self.tick_index = 0
        self.state: TickState = "scheduled"
        self._publish = publish
        self._progress_log_every = max(0, int(progress_log_every))
        self._utc_now = utc_now

    @property
    def is_done(self) -> bool:
        return self.state in ("exhausted", "cancelled")

    def cancel(self) -> None:
        if self.state != "exhausted":
            self.state = "cancelled"

    def tick(self) -> bool:
        """Runs one tick. Returns False (and does nothing) once the run is exhausted or cancelled."""
        if self.is_done:
            return False
        if self.tick_index >= self.max_ticks:
            self.state = "exhausted"
            return False

        self.state = "ticking"
        self.tick_index += 1
        now = self._utc_now()

        for driver_id in self.driver_ids:
            self._emit_telemetry(driver_id, now)

        self._maybe_record_delivery()
        self._maybe_emit_event(now)

        if self._progress_log_every and self.tick_index % self._progress_log_every == 0:
            logger.info(
                "simulation.tick run_id=%s tick=%d/%d telemetry=%d events=%d",
                self.run_id,
                self.tick_index,
                self.max_ticks,
                self.accumulator.telemetry_count,
                self.accumulator.events_count,
            )
        return True

    def _emit_telemetry(self, driver_id: str, now: datetime) -> None:
        rng = self.rng
        lat = REFERENCE_LAT + rng.uniform(-COORD_JITTER, COORD_JITTER)
        lon = REFERENCE_LON + rng.uniform(-COORD_JITTER, COORD_JITTER)
        spread = rng.uniform(0.0, SPEED_SPREAD_KMH) * self.tuning.speed_variance
        speed = (SPEED_MIN_KMH + spread) / self.tuning.traffic_factor

        roll = rng.random()
        fuel_type: FuelType = "diesel"
        for threshold, kind in FUEL_THRESHOLDS:
            if roll < threshold:
                fuel_type = kind
                break
        fuel_cost = (speed / 100.0) * FUEL_RATES[fuel_type]

        message = TelemetryMessage(
            run_id=self.run_id,
            driver_id=driver_id,
            timestamp=now,
            lat=lat,
            lon=lon,
            speed=speed,
            heading=rng.randint(0, 359),
            battery_pct=rng.randint(0, 99),
            order_id=rng.choice(self.order_ids),
        ).model_dump(mode="json")

        self.accumulator.record_telemetry(
            distance_km=speed / 60.0,
            fuel_type=fuel_type,
            fuel_cost=fuel_cost,
        )
        self._publish(self.run_id, message)

    def _maybe_record_delivery(self) -> None:
        if self.rng.random() >= self.tuning.delivery_probability:
            return
        on_time = self.rng.random() < self.tuning.on_time_probability
        self.accumulator.record_delivery(on_time=on_time)

    def _maybe_emit_event(self, now: datetime) -> None:
        if self.rng.random() >= self.tuning.event_probability:
            return
        event_type: EventType = (
            "driverBreakdown" if self.rng.random() < self.tuning.breakdown_share else "reroute"
        )
        self.accumulator.record_event(event_type)

        message = SimulationEventMessage(
            run_id=self.run_id,
            type=event_type,
            payload=SimulationEventPayload(
                driver_id=self.rng.choice(self.driver_ids),
                message=EVENT_MESSAGES[event_type],
            ),
            timestamp=now,
        ).model_dump(mode="json")
        self._publish(self.run_id, message)

    async def run(
        self,
        *,
        interval: float,
        on_exhausted: Callable[[], Awaitable[None]],
        on_tick: Optional[Callable[["TickGenerator"], Awaitable[None]]] = None,
    ) -> None:
        """Fixed-cadence loop; cancellation of the owning task is the only way to stop early."""
        try:
            while True:
                await asyncio.sleep(interval)
                if not self.tick():
                    break
                if on_tick is not None:
                    await on_tick(self)
        except asyncio.CancelledError:
            self.cancel()
            return

        if self.state == "exhausted":
            await on_exhausted()
