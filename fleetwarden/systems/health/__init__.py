"""
FleetWarden: Health

Derives a multi-level health status from each probe and records it.
"""

from fleetwarden.systems.health.derivation import derive_status, is_stale
from fleetwarden.systems.health.monitor import HealthMonitor, HealthObservation

__all__ = [
    "HealthMonitor",
    "HealthObservation",
    "derive_status",
    "is_stale",
]
