"""
FleetWarden: Incident Type Definitions

An Incident is the engine's record of "something is wrong with this
service". At most one incident per service is active (OPEN or
INVESTIGATING) at any time; further signals escalate it instead of
opening a duplicate. CLOSED is terminal.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from fleetwarden.primitives.common import FleetBaseModel, new_id, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class IncidentSeverity(enum.StrEnum):
    """How bad is it? Ordered: LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def max(cls, a: IncidentSeverity, b: IncidentSeverity) -> IncidentSeverity:
        return a if a.rank >= b.rank else b


_SEVERITY_RANK: dict[IncidentSeverity, int] = {
    IncidentSeverity.LOW: 0,
    IncidentSeverity.MEDIUM: 1,
    IncidentSeverity.HIGH: 2,
    IncidentSeverity.CRITICAL: 3,
}


class IncidentStatus(enum.StrEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"  # Terminal, archival only


ACTIVE_STATUSES: frozenset[IncidentStatus] = frozenset({
    IncidentStatus.OPEN,
    IncidentStatus.INVESTIGATING,
})


class DetectionSource(enum.StrEnum):
    HEALTH_CHECK = "health_check"
    ANOMALY = "anomaly"
    MANUAL = "manual"


SYSTEM_PRINCIPAL = "SYSTEM"
AUTO_RESOLUTION_NOTE = "Auto-resolved: service returned to healthy state"


# ─── Incident ────────────────────────────────────────────────────


class Incident(FleetBaseModel):
    id: str = Field(default_factory=new_id)
    service_id: str
    service_name: str = ""

    title: str
    description: str = ""
    severity: IncidentSeverity
    status: IncidentStatus = IncidentStatus.OPEN
    detection_source: DetectionSource

    # ── Signals ──
    anomaly_type: str | None = None
    escalation_count: int = 0
    signal_count: int = 1

    # ── Analyzer context ──
    analyzer_summary: str | None = None
    analyzer_recommendation: str | None = None
    analyzer_confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    # ── Metrics captured when the incident opened ──
    cpu_at_incident: float | None = None
    memory_at_incident: float | None = None
    error_rate_at_incident: float | None = None
    response_time_at_incident: float | None = None

    # ── Timeline ──
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def time_to_resolve_s(self) -> float | None:
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.created_at).total_seconds()
