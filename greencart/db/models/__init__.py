from greencart.db.base import Base
from .simulation_run import SimulationRun

__all__ = [
    "Base",
    "SimulationRun",
]
