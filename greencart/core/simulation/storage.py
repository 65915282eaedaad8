from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update as sql_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greencart.db.models.simulation_run import RUN_STATUSES, TERMINAL_STATUSES, SimulationRun
from greencart.utils.exceptions import PersistenceFailure
from greencart.utils.metrics import SIMULATION_PERSISTENCE_FAILURES_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100


def _as_utc(value: datetime) -> datetime:
    # Timestamps are stored as UTC; SQLite keeps only the wall clock, so every bound and write is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RunStore:
    """Data access for persisted simulation runs.

    No lifecycle logic lives here beyond refusing to move a run that is already
    terminal: every status write is conditional on ``status = 'running'``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _failure(self, op: str, run_id: str | None, exc: Exception) -> PersistenceFailure:
        SIMULATION_PERSISTENCE_FAILURES_TOTAL.labels(op=op).inc()
        logger.exception("simulation.storage.%s_failed run_id=%s", op, run_id or "")
        return PersistenceFailure(
            f"Simulation store {op} failed",
            details={"op": op, "run_id": run_id, "exc": type(exc).__name__},
        )

    async def create(
        self,
        *,
        run_id: str,
        name: str,
        duration: int,
        start_time: datetime,
        settings: dict[str, Any],
        created_by: str,
    ) -> SimulationRun:
        row = SimulationRun(
            run_id=run_id,
            name=name,
            duration=int(duration),
            start_time=_as_utc(start_time),
            status="running",
            settings=settings,
            results=None,
            telemetry_count=0,
            events_count=0,
            created_by=created_by,
        )
        try:
            async with self._session_factory() as session:
                try:
                    session.add(row)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except SQLAlchemyError as exc:
            raise self._failure("create", run_id, exc) from exc
        return row

    async def update_counts(self, run_id: str, *, telemetry_count: int, events_count: int) -> bool:
        """Best-effort mirror of running counters; failures are logged, not raised."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sql_update(SimulationRun)
                    .where(SimulationRun.run_id == run_id, SimulationRun.status == "running")
                    .values(telemetry_count=int(telemetry_count), events_count=int(events_count))
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError:
            SIMULATION_PERSISTENCE_FAILURES_TOTAL.labels(op="update_counts").inc()
            logger.warning("simulation.storage.update_counts_failed run_id=%s", run_id, exc_info=True)
            return False

    async def finalize(
        self,
        run_id: str,
        *,
        status: str,
        end_time: datetime,
        results: dict[str, Any],
        telemetry_count: int,
        events_count: int,
    ) -> bool:
        """Moves a running record to `status`. Returns False if the record was not running."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status!r}")
        try:
            async with self._session_factory() as session:
                try:
                    result = await session.execute(
                        sql_update(SimulationRun)
                        .where(SimulationRun.run_id == run_id, SimulationRun.status == "running")
                        .values(
                            status=status,
                            end_time=_as_utc(end_time),
                            results=results,
                            telemetry_count=int(telemetry_count),
                            events_count=int(events_count),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except SQLAlchemyError as exc:
            raise self._failure("finalize", run_id, exc) from exc

        updated = bool(result.rowcount)
        if not updated:
            logger.warning(
                "simulation.storage.finalize_skipped run_id=%s status=%s (record missing or not running)",
                run_id,
                status,
            )
        return updated

    async def get(self, run_id: str) -> Optional[SimulationRun]:
        try:
            async with self._session_factory() as session:
                return (
                    await session.execute(select(SimulationRun).where(SimulationRun.run_id == run_id))
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise self._failure("get", run_id, exc) from exc

    async def list_runs(
        self,
        *,
        status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        created_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SimulationRun]:
        if status is not None and status not in RUN_STATUSES:
            return []

        stmt = select(SimulationRun)
        if status is not None:
            stmt = stmt.where(SimulationRun.status == status)
        if date_from is not None:
            stmt = stmt.where(SimulationRun.start_time >= _as_utc(date_from))
        if date_to is not None:
            stmt = stmt.where(SimulationRun.start_time <= _as_utc(date_to))
        if created_by is not None:
            stmt = stmt.where(SimulationRun.created_by == created_by)

        stmt = stmt.order_by(SimulationRun.start_time.desc(), SimulationRun.run_id.desc())
        stmt = stmt.limit(max(1, int(limit or DEFAULT_LIST_LIMIT)))

        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise self._failure("list", None, exc) from exc

    async def reconcile_stale_runs(self) -> int:
        """Marks runs left 'running' by a previous process as 'failed'.

        Called once at startup: no tick task survives a restart, so such runs can
        never finish. Returns the number of reconciled runs.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sql_update(SimulationRun)
                    .where(SimulationRun.status == "running")
                    .values(status="failed", end_time=now)
                    .execution_options(synchronize_session=False)
                )
                count: int = result.rowcount if result.rowcount is not None else 0
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._failure("reconcile", None, exc) from exc

        if count:
            logger.warning("simulation.reconcile stale_runs=%d marked as failed (reason: server_restart)", count)
        else:
            logger.info("simulation.reconcile no stale runs found at startup")
        return count
