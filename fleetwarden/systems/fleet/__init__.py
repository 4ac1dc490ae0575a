"""
FleetWarden: Fleet

The registry model of managed services and the persistence boundary.
"""

from fleetwarden.systems.fleet.store import (
    FleetStore,
    InMemoryFleetStore,
    PersistenceError,
    persist_with_retry,
)
from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    HealthStatus,
    ManagedServiceState,
    MetricsSnapshot,
    ProbeKind,
    RiskSample,
    RiskSource,
    RiskTrend,
    ServiceDescriptor,
    ServiceKind,
)

__all__ = [
    "FleetStore",
    "HealthProbeRecord",
    "HealthStatus",
    "InMemoryFleetStore",
    "ManagedServiceState",
    "MetricsSnapshot",
    "PersistenceError",
    "ProbeKind",
    "RiskSample",
    "RiskSource",
    "RiskTrend",
    "ServiceDescriptor",
    "ServiceKind",
    "persist_with_retry",
]
