"""
FleetWarden: Orchestrator

Independent periodic ticks with per-service fault isolation.
"""

from fleetwarden.systems.orchestrator.service import Orchestrator, TickReport
from fleetwarden.systems.orchestrator.ticker import PeriodicTick, TickState

__all__ = [
    "Orchestrator",
    "PeriodicTick",
    "TickReport",
    "TickState",
]
