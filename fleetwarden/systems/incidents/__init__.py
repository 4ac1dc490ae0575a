"""
FleetWarden: Incidents

At most one active incident per service. Health transitions and analyzer
anomalies open or escalate it; a return to HEALTHY resolves it.
"""

from fleetwarden.systems.incidents.service import IncidentManager
from fleetwarden.systems.incidents.state_machine import (
    HealthDecision,
    IncidentNotFoundError,
    InvalidTransitionError,
    decide_on_health,
    severity_for_anomaly,
    severity_for_health,
)
from fleetwarden.systems.incidents.types import (
    AUTO_RESOLUTION_NOTE,
    SYSTEM_PRINCIPAL,
    DetectionSource,
    Incident,
    IncidentSeverity,
    IncidentStatus,
)

__all__ = [
    "AUTO_RESOLUTION_NOTE",
    "DetectionSource",
    "HealthDecision",
    "Incident",
    "IncidentManager",
    "IncidentNotFoundError",
    "IncidentSeverity",
    "IncidentStatus",
    "InvalidTransitionError",
    "SYSTEM_PRINCIPAL",
    "decide_on_health",
    "severity_for_anomaly",
    "severity_for_health",
]
