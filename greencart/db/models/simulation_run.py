from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, JSON, String, func
from sqlalchemy.orm import Mapped, mapped_column

from greencart.db.base import Base


RUN_STATUSES = ("running", "completed", "stopped", "failed")
TERMINAL_STATUSES = ("completed", "stopped", "failed")


class SimulationRun(Base):
    __tablename__ = "simulation_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Planned length in minutes.
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")

    # {"driver_ids": [...], "order_ids": [...], "params": {...}}; written once at creation.
    settings: Mapped[dict] = mapped_column(JSON, nullable=False)
    results: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    telemetry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Opaque reference into the external user store.
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('running','completed','stopped','failed')",
            name="chk_simulation_runs_status",
        ),
        CheckConstraint("duration > 0", name="chk_simulation_runs_duration"),
        CheckConstraint("telemetry_count >= 0", name="chk_simulation_runs_telemetry_count"),
        CheckConstraint("events_count >= 0", name="chk_simulation_runs_events_count"),
        Index("ix_simulation_runs_start_time", "start_time"),
        Index("ix_simulation_runs_status", "status"),
        Index("ix_simulation_runs_created_by", "created_by"),
    )

