from fastapi import APIRouter, Depends

from greencart.api import deps
from greencart.api.v1 import health, simulations, websocket

api_router = APIRouter()

_http_deps = [Depends(deps.rate_limit)]

api_router.include_router(simulations.router, prefix="/simulations", tags=["Simulations"], dependencies=_http_deps)
api_router.include_router(health.router, tags=["Health"], dependencies=_http_deps)
api_router.include_router(websocket.router, tags=["WebSocket"])
