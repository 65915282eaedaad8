"""
GreenCart: pytest fixtures.

Provides:
- Isolated SQLite (aiosqlite) database per test
- Run store / broadcaster / controller wired to it
- Deterministic random sources
- Auth headers for HTTP tests
"""
from typing import Any, Callable, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greencart.config import Settings
from greencart.core.simulation.broadcast import ChannelBroadcaster
from greencart.core.simulation.lifecycle import SimulationController
from greencart.core.simulation.storage import RunStore
from greencart.db.models import Base
from greencart.db.session import build_engine, build_session_factory
from greencart.utils.security import create_access_token


class StubRandom:
    """Random source returning the same draw `r` for every call.

    r=0.0 -> every tick delivers on time and breaks down, electric fuel, minimum speed.
    r=0.99 -> no deliveries and no events, diesel fuel.
    """

    def __init__(self, r: float = 0.0) -> None:
        self.r = r

    def random(self) -> float:
        return self.r

    def uniform(self, a: float, b: float) -> float:
        return a + (b - a) * self.r

    def randint(self, a: int, b: int) -> int:
        return a

    def choice(self, seq: Sequence[Any]) -> Any:
        return seq[0]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ENV": "test",
        "RATE_LIMIT_ENABLED": False,
        "SIMULATION_TICK_INTERVAL_SEC": 0.0,
        "SIMULATION_PERSIST_COUNTS_EVERY_TICKS": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def stub_random() -> type[StubRandom]:
    return StubRandom


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", make_settings())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> RunStore:
    return RunStore(session_factory)


@pytest.fixture
def broadcaster() -> ChannelBroadcaster:
    return ChannelBroadcaster(queue_max=1000)


@pytest_asyncio.fixture
async def make_controller(store: RunStore, broadcaster: ChannelBroadcaster):
    """Builds controllers over the test store; stops whatever they left running."""
    created: list[SimulationController] = []

    def _make(*, r: float = 0.0, store_override: Any = None, **setting_overrides: Any) -> SimulationController:
        controller = SimulationController(
            store=store_override or store,
            broadcaster=broadcaster,
            settings=make_settings(**setting_overrides),
            rng_factory=lambda _run_id: StubRandom(r),
        )
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        await controller.shutdown()


def start_request(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": "Morning Peak Delivery Test",
        "duration": 1,
        "driver_ids": ["driver-1"],
        "order_ids": ["order-1", "order-2"],
    }
    body.update(overrides)
    return body


@pytest.fixture
def start_body() -> Callable[..., dict[str, Any]]:
    return start_request


@pytest.fixture
def admin_headers() -> dict[str, str]:
    from greencart.config import settings

    return {"X-Admin-Token": settings.ADMIN_TOKEN}


@pytest.fixture
def auth_headers() -> Callable[[str, str], dict[str, str]]:
    def _headers(user_id: str = "user-1", role: str = "manager") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}

    return _headers


# =============================================================================
# Application
# =============================================================================
@pytest_asyncio.fixture
async def app(session_factory):
    """FastAPI app over the test database, lifespan entered (controller ready)."""
    from greencart.main import create_app

    application = create_app(
        session_factory=session_factory,
        app_settings=make_settings(SIMULATION_TICK_INTERVAL_SEC=10.0),
    )
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app):
    import httpx

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
