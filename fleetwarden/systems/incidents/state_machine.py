"""
FleetWarden: Incident State Machine

  OPEN ──acknowledge──▶ INVESTIGATING
   │                        │
   └──────resolve───────────┴──▶ RESOLVED ──close──▶ CLOSED (terminal)

Every function here is a pure decision over the current record. Each
returns an updated copy, or the same object when the call is an
idempotent no-op. Illegal transitions raise InvalidTransitionError.
Persistence and ordering belong to IncidentManager.
"""

from __future__ import annotations

import enum
from datetime import datetime

from fleetwarden.systems.fleet.types import HealthStatus
from fleetwarden.systems.incidents.types import (
    Incident,
    IncidentSeverity,
    IncidentStatus,
)


class IncidentNotFoundError(Exception):
    """No incident exists with the given id."""


class InvalidTransitionError(Exception):
    """The requested transition is not legal from the incident's current status."""

    def __init__(self, incident: Incident, operation: str) -> None:
        self.incident_id = incident.id
        self.status = incident.status
        self.operation = operation
        super().__init__(
            f"cannot {operation} incident {incident.id} in status {incident.status.value}"
        )


class HealthDecision(enum.StrEnum):
    OPEN = "open"
    ESCALATE = "escalate"
    AUTO_RESOLVE = "auto_resolve"
    NONE = "none"


# ─── Severity Mapping ─────────────────────────────────────────────


_HEALTH_SEVERITY: dict[HealthStatus, IncidentSeverity] = {
    HealthStatus.DEGRADED: IncidentSeverity.MEDIUM,
    HealthStatus.CRITICAL: IncidentSeverity.CRITICAL,
    HealthStatus.DOWN: IncidentSeverity.CRITICAL,
}

_ANOMALY_SEVERITY: dict[str, IncidentSeverity] = {
    "CPU_SATURATION": IncidentSeverity.HIGH,
    "ERROR_SPIKE": IncidentSeverity.HIGH,
    "MEMORY_LEAK": IncidentSeverity.MEDIUM,
}


def severity_for_health(status: HealthStatus) -> IncidentSeverity:
    return _HEALTH_SEVERITY.get(status, IncidentSeverity.LOW)


def severity_for_anomaly(anomaly_type: str | None) -> IncidentSeverity:
    if anomaly_type is None:
        return IncidentSeverity.LOW
    return _ANOMALY_SEVERITY.get(anomaly_type.upper(), IncidentSeverity.LOW)


# ─── Decisions ────────────────────────────────────────────────────


def decide_on_health(
    previous: HealthStatus,
    current: HealthStatus,
    active: Incident | None,
) -> HealthDecision:
    """
    What a newly derived health status means for the service's incident.

    HEALTHY resolves whatever is active. An unhealthy status escalates the
    active incident, or opens one when the service has just left
    HEALTHY/UNKNOWN. Moving between two unhealthy statuses with nothing
    active opens nothing. UNKNOWN never acts.
    """
    if current == HealthStatus.HEALTHY:
        return HealthDecision.AUTO_RESOLVE if active is not None else HealthDecision.NONE
    if not current.is_unhealthy:
        return HealthDecision.NONE
    if active is not None:
        return HealthDecision.ESCALATE
    if previous in (HealthStatus.HEALTHY, HealthStatus.UNKNOWN):
        return HealthDecision.OPEN
    return HealthDecision.NONE


# ─── Transitions ──────────────────────────────────────────────────


def escalate(incident: Incident, severity: IncidentSeverity, now: datetime) -> Incident:
    """Fold a new signal into an active incident. Severity only ever rises."""
    if not incident.is_active:
        raise InvalidTransitionError(incident, "escalate")
    new_severity = IncidentSeverity.max(incident.severity, severity)
    raised = new_severity != incident.severity
    return incident.model_copy(update={
        "severity": new_severity,
        "escalation_count": incident.escalation_count + (1 if raised else 0),
        "signal_count": incident.signal_count + 1,
        "updated_at": now,
    })


def acknowledge(incident: Incident, acknowledged_by: str, now: datetime) -> Incident:
    if incident.status == IncidentStatus.INVESTIGATING:
        return incident
    if incident.status != IncidentStatus.OPEN:
        raise InvalidTransitionError(incident, "acknowledge")
    return incident.model_copy(update={
        "status": IncidentStatus.INVESTIGATING,
        "acknowledged_at": now,
        "acknowledged_by": acknowledged_by,
        "updated_at": now,
    })


def resolve(incident: Incident, resolution: str, resolved_by: str, now: datetime) -> Incident:
    if not resolution or not resolution.strip():
        raise ValueError("resolution text is required")
    if not resolved_by or not resolved_by.strip():
        raise ValueError("resolver identity is required")
    if not incident.is_active:
        raise InvalidTransitionError(incident, "resolve")
    return incident.model_copy(update={
        "status": IncidentStatus.RESOLVED,
        "resolution": resolution,
        "resolved_by": resolved_by,
        "resolved_at": now,
        "updated_at": now,
    })


def close(incident: Incident, now: datetime) -> Incident:
    if incident.status != IncidentStatus.RESOLVED:
        raise InvalidTransitionError(incident, "close")
    return incident.model_copy(update={
        "status": IncidentStatus.CLOSED,
        "closed_at": now,
        "updated_at": now,
    })
