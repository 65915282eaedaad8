import asyncio
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Awaitable

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from greencart.config import settings
from greencart.core.simulation.broadcast import ChannelBroadcaster
from greencart.core.simulation.lifecycle import SimulationController
from greencart.db.session import get_db_session
from greencart.utils.exceptions import (
    ForbiddenException,
    TooManyRequestsException,
    UnauthorizedException,
)
from greencart.utils.security import ROLES, decode_token

# Tokens are issued by the external user service; only verification happens here.
optional_bearer = HTTPBearer(auto_error=False)


_rate_limit_lock = asyncio.Lock()
_rate_limit_counters: dict[tuple[int, str], int] = {}


async def rate_limit(request: Request) -> None:
    app_settings = getattr(request.app.state, "settings", settings)
    if not app_settings.RATE_LIMIT_ENABLED:
        return

    client_host = (request.client.host if request.client else None) or "unknown"
    window_seconds = max(1, int(app_settings.RATE_LIMIT_WINDOW_SECONDS))
    limit = max(1, int(app_settings.RATE_LIMIT_REQUESTS_PER_WINDOW))
    bucket = int(time.monotonic() // window_seconds)
    key = (bucket, client_host)

    async with _rate_limit_lock:
        current = _rate_limit_counters.get(key, 0) + 1
        _rate_limit_counters[key] = current

        # Best-effort cleanup of previous window for the same host
        _rate_limit_counters.pop((bucket - 1, client_host), None)

    if current > limit:
        raise TooManyRequestsException(
            details={
                "window_seconds": window_seconds,
                "limit": limit,
            }
        )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        async for session in get_db_session():
            yield session
        return
    async with factory() as session:
        yield session


def get_simulation_controller(request: Request) -> SimulationController:
    return request.app.state.simulation_controller


def get_broadcaster(request: Request) -> ChannelBroadcaster:
    return request.app.state.simulation_broadcaster


# ---------------------------------------------------------------------------
# Actor: identity handed to the simulation core as `created_by`
# ---------------------------------------------------------------------------


@dataclass
class Actor:
    user_id: str
    role: str


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> Actor:
    """Resolve the caller.

    Priority:
    1. X-Admin-Token -> admin
    2. Authorization: Bearer JWT with a `role` claim
    3. -> 401
    """
    if x_admin_token is not None:
        if x_admin_token != settings.ADMIN_TOKEN:
            raise ForbiddenException("Admin token required")
        return Actor(user_id="admin", role="admin")

    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Could not validate credentials")

    payload = decode_token(credentials.credentials)
    if not payload:
        raise UnauthorizedException("Could not validate credentials")

    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or role not in ROLES:
        raise UnauthorizedException("Could not validate credentials")
    return Actor(user_id=str(sub), role=str(role))


def require_roles(*roles: str) -> Callable[..., Awaitable[Actor]]:
    allowed = frozenset(roles)

    async def _dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            raise ForbiddenException(
                "Insufficient permissions",
                details={"role": actor.role, "required": sorted(allowed)},
            )
        return actor

    return _dependency
