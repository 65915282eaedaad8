"""Final statistics for a finished run.

Pure functions over an accumulator snapshot; no settings or clock are read here,
so the same snapshot always produces the same summary.
"""

from __future__ import annotations

import math
from typing import Any, Mapping


def _round2(value: float) -> float:
    return round(float(value), 2)


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def delivery_score(total_deliveries: int, planned_duration: float) -> float:
    if total_deliveries <= 0:
        return 0.0
    # Reference pace: one delivery per 10 planned minutes.
    expected = max(1.0, float(planned_duration) / 10.0)
    return _clamp(total_deliveries / expected * 100.0)


def reliability_score(breakdowns: int, time_samples: int) -> float:
    if time_samples <= 0:
        return 100.0
    return _clamp(100.0 - (breakdowns / time_samples) * 1000.0)


def fuel_score(fuel_total: float, distance_total: float) -> float:
    if distance_total <= 0:
        return 100.0
    return _clamp(100.0 - (fuel_total / distance_total) * 100.0)


def calculate_final_results(
    snapshot: Mapping[str, Any],
    planned_duration: float,
    *,
    revenue_per_delivery: float,
    cost_per_km: float,
) -> dict[str, Any]:
    deliveries = snapshot["deliveries"]
    fuel = snapshot["fuel_costs"]
    distance = snapshot["distance"]
    elapsed = snapshot["time"]

    total = int(deliveries["total"])
    on_time = int(deliveries["on_time"])
    on_time_pct = (on_time / total) * 100.0 if total > 0 else 0.0

    scores = (
        delivery_score(total, planned_duration),
        reliability_score(int(snapshot["breakdowns"]), int(elapsed["count"])),
        fuel_score(float(fuel["total"]), float(distance["total"])),
    )
    efficiency = sum(scores) / len(scores)
    efficiency_score = int(_clamp(round(efficiency))) if math.isfinite(efficiency) else 0

    revenue = total * revenue_per_delivery
    costs = float(distance["total"]) * cost_per_km + float(fuel["total"])

    distance_avg = float(distance["total"]) / distance["count"] if distance["count"] > 0 else 0.0
    time_avg = round(float(elapsed["total"]) / elapsed["count"]) if elapsed["count"] > 0 else 0

    return {
        "total_profit": _round2(revenue - costs),
        "efficiency_score": efficiency_score,
        "deliveries": {
            "total": total,
            "on_time": on_time,
            "late": int(deliveries["late"]),
            "on_time_percentage": _round2(on_time_pct),
        },
        "fuel_costs": {
            "total": _round2(fuel["total"]),
            "breakdown": {
                kind: _round2(fuel["breakdown"].get(kind, 0.0))
                for kind in ("diesel", "petrol", "electric")
            },
        },
        "distance": {
            "total": _round2(distance["total"]),
            "average": _round2(distance_avg),
        },
        "time": {
            "total": elapsed["total"],
            "average": time_avg,
        },
        "breakdowns": int(snapshot["breakdowns"]),
        "reroutes": int(snapshot["reroutes"]),
        "telemetry_count": int(snapshot["telemetry_count"]),
        "events_count": int(snapshot["events_count"]),
    }
