from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


RunStatusValue = Literal["running", "completed", "stopped", "failed"]
SimulationEventType = Literal["driverBreakdown", "reroute"]


class SimulationParams(BaseModel):
    """Per-run tuning knobs. Omitted values fall back to neutral defaults."""

    # Multiplier on the random speed spread (1.0 = unchanged).
    speed_variance: float = Field(default=1.0, gt=0, le=10, alias="speedVariance")
    # Divides sampled speed (1.0 = free-flowing traffic).
    traffic_factor: float = Field(default=1.0, gt=0, le=10, alias="trafficFactor")
    # When set, replace the default breakdown/reroute split weights. Given alone,
    # either one is the share of its event and the other gets 1 - value.
    breakdown_probability: Optional[float] = Field(default=None, ge=0, le=1, alias="breakdownProbability")
    reroute_probability: Optional[float] = Field(default=None, ge=0, le=1, alias="rerouteProbability")

    model_config = ConfigDict(extra="forbid", populate_by_name=True, allow_inf_nan=False)


class StartSimulationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    # Planned length in minutes.
    duration: int = Field(gt=0)
    driver_ids: List[str] = Field(min_length=1, alias="driverIds")
    order_ids: List[str] = Field(min_length=1, alias="orderIds")
    params: Optional[SimulationParams] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StartSimulationResponse(BaseModel):
    message: str = "Simulation started"
    run_id: str
    status: Literal["started"] = "started"


class StopSimulationResponse(BaseModel):
    stopped: bool
    message: str


# -----------------------------
# Channel messages
# -----------------------------


class TelemetryMessage(BaseModel):
    kind: Literal["telemetry"] = "telemetry"
    run_id: str
    driver_id: str
    timestamp: datetime
    lat: float
    lon: float
    speed: float
    heading: int
    battery_pct: int
    order_id: str

    model_config = ConfigDict(extra="forbid")


class SimulationEventPayload(BaseModel):
    driver_id: str
    message: str


class SimulationEventMessage(BaseModel):
    kind: Literal["event"] = "event"
    run_id: str
    type: SimulationEventType
    payload: SimulationEventPayload
    timestamp: datetime

    model_config = ConfigDict(extra="forbid")


class SimulationEndMessage(BaseModel):
    kind: Literal["simulationEnd"] = "simulationEnd"
    run_id: str
    message: str
    results: Dict[str, Any]

    model_config = ConfigDict(extra="forbid")


# -----------------------------
# Run records
# -----------------------------


class SimulationRunOut(BaseModel):
    run_id: str
    name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: int
    status: RunStatusValue
    settings: Dict[str, Any]
    results: Optional[Dict[str, Any]] = None
    telemetry_count: int = 0
    events_count: int = 0
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class SimulationRunListResponse(BaseModel):
    simulations: List[SimulationRunOut]
    total: int
    filters: Dict[str, Any]


class SimulationResultsResponse(BaseModel):
    run_id: str
    name: str
    status: RunStatusValue
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: int
    results: Optional[Dict[str, Any]] = None
    telemetry_count: int = 0
    events_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class SimulationStatusResponse(BaseModel):
    """Live state of an active run, or ``{"status": "not-found"}``."""

    status: Literal["running", "not-found"]
    run_id: Optional[str] = None
    name: Optional[str] = None
    duration: Optional[int] = None
    settings: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    start_time: Optional[datetime] = None
    tick: Optional[int] = None
    max_ticks: Optional[int] = None
    accumulator: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")
