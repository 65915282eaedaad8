from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Literal


FuelType = Literal["diesel", "petrol", "electric"]
EventType = Literal["driverBreakdown", "reroute"]


@dataclass
class DeliveryCounters:
    total: int = 0
    on_time: int = 0
    late: int = 0


@dataclass
class FuelCosts:
    total: float = 0.0
    breakdown: dict[str, float] = field(
        default_factory=lambda: {"diesel": 0.0, "petrol": 0.0, "electric": 0.0}
    )


@dataclass
class SampleTotals:
    total: float = 0.0
    count: int = 0


@dataclass
class Accumulator:
    """Running totals for one active run.

    Owned by the lifecycle controller; mutated only by the run's tick generator.
    Invariants: ``deliveries.on_time + deliveries.late == deliveries.total`` and
    the fuel breakdown sums to ``fuel_costs.total``.
    """

    telemetry_count: int = 0
    events_count: int = 0
    deliveries: DeliveryCounters = field(default_factory=DeliveryCounters)
    fuel_costs: FuelCosts = field(default_factory=FuelCosts)
    distance: SampleTotals = field(default_factory=SampleTotals)
    time: SampleTotals = field(default_factory=SampleTotals)
    breakdowns: int = 0
    reroutes: int = 0

    def record_telemetry(
        self,
        *,
        distance_km: float,
        fuel_type: FuelType,
        fuel_cost: float,
        seconds: float = 1.0,
    ) -> None:
        self.telemetry_count += 1
        self.distance.total += distance_km
        self.distance.count += 1
        self.time.total += seconds
        self.time.count += 1
        self.fuel_costs.total += fuel_cost
        self.fuel_costs.breakdown[fuel_type] += fuel_cost

    def record_delivery(self, *, on_time: bool) -> None:
        self.deliveries.total += 1
        if on_time:
            self.deliveries.on_time += 1
        else:
            self.deliveries.late += 1

    def record_event(self, event_type: EventType) -> None:
        self.events_count += 1
        if event_type == "driverBreakdown":
            self.breakdowns += 1
        else:
            self.reroutes += 1

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict deep copy; safe to hand to the finalizer or an API response."""
        return {
            "telemetry_count": self.telemetry_count,
            "events_count": self.events_count,
            "deliveries": {
                "total": self.deliveries.total,
                "on_time": self.deliveries.on_time,
                "late": self.deliveries.late,
            },
            "fuel_costs": {
                "total": self.fuel_costs.total,
                "breakdown": copy.deepcopy(self.fuel_costs.breakdown),
            },
            "distance": {"total": self.distance.total, "count": self.distance.count},
            "time": {"total": self.time.total, "count": self.time.count},
            "breakdowns": self.breakdowns,
            "reroutes": self.reroutes,
        }
