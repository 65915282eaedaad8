import asyncio
from unittest.mock import AsyncMock

import pytest

from greencart.core.simulation.broadcast import ChannelBroadcaster, Subscription
from greencart.core.simulation.lifecycle import SimulationController
from greencart.core.simulation.storage import RunStore
from greencart.schemas.simulation import StartSimulationRequest
from greencart.utils.exceptions import InvalidConfiguration, PersistenceFailure


async def _collect_until_end(sub: Subscription, timeout: float = 5.0) -> list[dict]:
    messages: list[dict] = []

    async def _drain() -> None:
        while True:
            msg = await sub.queue.get()
            messages.append(msg)
            if msg["kind"] == "simulationEnd":
                return

    await asyncio.wait_for(_drain(), timeout)
    return messages


class FailingFinalizeStore(RunStore):
    async def finalize(self, run_id, **kwargs):
        raise PersistenceFailure("Simulation store finalize failed", details={"op": "finalize", "run_id": run_id})


class CountingStore(RunStore):
    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.count_updates: list[tuple[int, int]] = []

    async def update_counts(self, run_id, *, telemetry_count, events_count):
        self.count_updates.append((telemetry_count, events_count))
        return await super().update_counts(run_id, telemetry_count=telemetry_count, events_count=events_count)


class ExplodingRandom:
    def random(self) -> float:
        raise RuntimeError("rng exploded")

    def uniform(self, a, b):
        raise RuntimeError("rng exploded")

    def randint(self, a, b):
        raise RuntimeError("rng exploded")

    def choice(self, seq):
        raise RuntimeError("rng exploded")


@pytest.mark.asyncio
async def test_status_right_after_start_is_running_with_zero_counters(make_controller, start_body) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)

    run_id = await controller.start(start_body(), created_by="manager-1")

    assert run_id.startswith("sim-")
    status = controller.status(run_id)
    assert status["status"] == "running"
    assert status["run_id"] == run_id
    assert status["created_by"] == "manager-1"
    assert status["tick"] == 0
    assert status["max_ticks"] == 60
    acc = status["accumulator"]
    assert acc["telemetry_count"] == 0
    assert acc["events_count"] == 0
    assert acc["deliveries"] == {"total": 0, "on_time": 0, "late": 0}
    assert acc["fuel_costs"]["total"] == 0.0
    assert controller.active_run_ids() == [run_id]


@pytest.mark.asyncio
async def test_start_persists_running_record_with_settings_snapshot(make_controller, start_body, store) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    body = start_body(params={"speedVariance": 1.5, "trafficFactor": 1.3})

    run_id = await controller.start(body, created_by="manager-1")

    row = await store.get(run_id)
    assert row.status == "running"
    assert row.duration == 1
    assert row.created_by == "manager-1"
    assert row.settings["driver_ids"] == ["driver-1"]
    assert row.settings["order_ids"] == ["order-1", "order-2"]
    assert row.settings["params"]["speed_variance"] == 1.5
    assert row.settings["params"]["traffic_factor"] == 1.3

    # The live settings are a copy; callers cannot mutate the run through status().
    status = controller.status(run_id)
    status["settings"]["driver_ids"].append("intruder")
    assert controller.status(run_id)["settings"]["driver_ids"] == ["driver-1"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"driver_ids": []},
        {"order_ids": []},
        {"duration": 0},
        {"duration": -5},
        {"duration": 100_000},
        {"name": ""},
        {"params": {"speedVariance": -1}},
        {"params": {"trafficFactor": 0}},
        {"params": {"breakdownProbability": 1.5}},
        {"params": {"warpDrive": True}},
        {"unexpected": "field"},
    ],
)
async def test_invalid_configuration_is_rejected_before_anything_exists(
    make_controller, start_body, store, overrides
) -> None:
    controller = make_controller()

    with pytest.raises(InvalidConfiguration) as exc_info:
        await controller.start(start_body(**overrides), created_by="manager-1")

    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "E002"
    assert controller.active_run_ids() == []
    assert await store.list_runs() == []


@pytest.mark.asyncio
async def test_start_accepts_validated_request_model(make_controller, start_body) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    request = StartSimulationRequest.model_validate(start_body())

    run_id = await controller.start(request, created_by="manager-1")

    assert controller.status(run_id)["status"] == "running"


@pytest.mark.asyncio
async def test_stop_unknown_run_returns_false_without_store_write(make_controller) -> None:
    store = AsyncMock(spec=RunStore)
    controller = make_controller(store_override=store)

    assert await controller.stop("sim-does-not-exist") is False
    assert store.finalize.await_count == 0


@pytest.mark.asyncio
async def test_stop_finalizes_once_and_publishes_end(make_controller, start_body, store, broadcaster) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    run_id = await controller.start(start_body(), created_by="manager-1")
    sub = broadcaster.join(run_id)

    assert await controller.stop(run_id) is True
    assert await controller.stop(run_id) is False

    messages = await _collect_until_end(sub, timeout=1.0)
    end = messages[-1]
    assert end["kind"] == "simulationEnd"
    assert end["message"] == "Simulation stopped."
    assert end["run_id"] == run_id
    assert end["results"]["telemetry_count"] == 0

    row = await store.get(run_id)
    assert row.status == "stopped"
    assert row.end_time is not None
    assert row.results["efficiency_score"] == end["results"]["efficiency_score"]
    assert controller.status(run_id) == {"status": "not-found"}
    assert controller.active_run_ids() == []


@pytest.mark.asyncio
async def test_concurrent_stops_finalize_exactly_once(make_controller, start_body, store, broadcaster) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    run_id = await controller.start(start_body(), created_by="manager-1")
    sub = broadcaster.join(run_id)

    outcomes = await asyncio.gather(controller.stop(run_id), controller.stop(run_id))

    assert sorted(outcomes) == [False, True]
    await _collect_until_end(sub, timeout=1.0)
    assert sub.queue.empty()
    assert (await store.get(run_id)).status == "stopped"


@pytest.mark.asyncio
async def test_natural_completion_persists_results_and_ends_channel(
    make_controller, start_body, store, broadcaster
) -> None:
    # r=0.0: every tick delivers on time and breaks down; 20 km/h on electric.
    controller = make_controller(r=0.0)
    run_id = await controller.start(start_body(duration=1), created_by="manager-1")
    sub = broadcaster.join(run_id)

    messages = await _collect_until_end(sub)

    kinds = [m["kind"] for m in messages]
    assert kinds.count("telemetry") == 60
    assert kinds.count("event") == 60
    assert kinds[-1] == "simulationEnd"
    assert messages[-1]["message"] == "Simulation completed."

    results = messages[-1]["results"]
    assert results["telemetry_count"] == 60
    assert results["events_count"] == 60
    assert results["deliveries"] == {"total": 60, "on_time": 60, "late": 0, "on_time_percentage": 100.0}
    assert results["breakdowns"] == 60
    assert results["reroutes"] == 0
    assert results["distance"]["total"] == 20.0
    assert results["fuel_costs"]["total"] == 1.2
    assert results["fuel_costs"]["breakdown"]["electric"] == 1.2
    assert results["time"] == {"total": 60.0, "average": 1}
    # 60*50 - (20*0.5 + 1.2)
    assert results["total_profit"] == 2988.8
    # delivery 100, reliability 0, fuel 94
    assert results["efficiency_score"] == 65

    row = await store.get(run_id)
    assert row.status == "completed"
    assert row.end_time is not None
    assert row.results == results
    assert row.telemetry_count == 60
    assert controller.active_run_ids() == []

    # Nothing arrives after the end message.
    await asyncio.sleep(0.05)
    assert sub.queue.empty()


@pytest.mark.asyncio
async def test_stop_after_completion_is_a_noop(make_controller, start_body, store, broadcaster) -> None:
    controller = make_controller(r=0.99)
    run_id = await controller.start(start_body(duration=1), created_by="manager-1")
    sub = broadcaster.join(run_id)
    await _collect_until_end(sub)

    assert await controller.stop(run_id) is False
    assert (await store.get(run_id)).status == "completed"


@pytest.mark.asyncio
async def test_runs_are_isolated(make_controller, start_body, broadcaster) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    run_a = await controller.start(start_body(name="A"), created_by="manager-1")
    run_b = await controller.start(start_body(name="B"), created_by="manager-2")
    sub_b = broadcaster.join(run_b)

    assert run_a != run_b
    assert await controller.stop(run_a) is True

    assert sub_b.queue.empty()
    assert controller.status(run_b)["status"] == "running"
    assert controller.active_run_ids() == [run_b]


@pytest.mark.asyncio
async def test_create_failure_leaves_no_active_run(make_controller, start_body, tmp_path) -> None:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'no_tables.db'}", poolclass=NullPool)
    try:
        broken = RunStore(async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False))
        controller = make_controller(store_override=broken)

        with pytest.raises(PersistenceFailure):
            await controller.start(start_body(), created_by="manager-1")

        assert controller.active_run_ids() == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_finalize_failure_still_clears_registry_and_ends_channel(
    make_controller, start_body, session_factory, broadcaster
) -> None:
    controller = make_controller(
        store_override=FailingFinalizeStore(session_factory),
        SIMULATION_TICK_INTERVAL_SEC=10.0,
    )
    run_id = await controller.start(start_body(), created_by="manager-1")
    sub = broadcaster.join(run_id)

    with pytest.raises(PersistenceFailure):
        await controller.stop(run_id)

    assert controller.active_run_ids() == []
    assert controller.status(run_id) == {"status": "not-found"}
    messages = await _collect_until_end(sub, timeout=1.0)
    assert messages[-1]["kind"] == "simulationEnd"
    assert await controller.stop(run_id) is False


@pytest.mark.asyncio
async def test_finalize_failure_on_completion_is_contained(
    make_controller, start_body, session_factory, broadcaster, caplog: pytest.LogCaptureFixture
) -> None:
    controller = make_controller(store_override=FailingFinalizeStore(session_factory), r=0.99)

    with caplog.at_level("ERROR", logger="greencart.core.simulation.lifecycle"):
        run_id = await controller.start(start_body(duration=1), created_by="manager-1")
        sub = broadcaster.join(run_id)
        await _collect_until_end(sub)

    assert controller.active_run_ids() == []
    assert any("simulation.complete_persist_failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_tick_error_marks_run_failed(store, broadcaster, settings_factory, start_body) -> None:
    controller = SimulationController(
        store=store,
        broadcaster=broadcaster,
        settings=settings_factory(),
        rng_factory=lambda _run_id: ExplodingRandom(),
    )
    run_id = await controller.start(start_body(), created_by="manager-1")
    sub = broadcaster.join(run_id)

    messages = await _collect_until_end(sub)

    assert messages[-1]["message"] == "Simulation failed."
    assert (await store.get(run_id)).status == "failed"
    assert controller.active_run_ids() == []


@pytest.mark.asyncio
async def test_running_counts_are_mirrored_every_n_ticks(make_controller, start_body, session_factory, broadcaster) -> None:
    counting = CountingStore(session_factory)
    controller = make_controller(store_override=counting, r=0.99, SIMULATION_PERSIST_COUNTS_EVERY_TICKS=10)
    run_id = await controller.start(start_body(duration=1, driver_ids=["d1", "d2"]), created_by="manager-1")
    sub = broadcaster.join(run_id)

    await _collect_until_end(sub)

    assert [t for t, _ in counting.count_updates] == [20, 40, 60, 80, 100, 120]
    assert (await counting.get(run_id)).telemetry_count == 120


@pytest.mark.asyncio
async def test_shutdown_stops_every_active_run(make_controller, start_body, store) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    run_ids = [await controller.start(start_body(name=f"run {i}"), created_by="manager-1") for i in range(3)]

    await controller.shutdown()

    assert controller.active_run_ids() == []
    for run_id in run_ids:
        assert (await store.get(run_id)).status == "stopped"


@pytest.mark.asyncio
async def test_list_and_get_delegate_to_store(make_controller, start_body) -> None:
    controller = make_controller(SIMULATION_TICK_INTERVAL_SEC=10.0)
    run_id = await controller.start(start_body(), created_by="manager-1")
    await controller.stop(run_id)

    runs = await controller.list_runs(status="stopped")
    assert [r.run_id for r in runs] == [run_id]
    assert (await controller.get_run(run_id)).status == "stopped"
    assert await controller.get_run("sim-missing") is None
