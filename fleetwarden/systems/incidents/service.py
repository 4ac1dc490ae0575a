"""
FleetWarden: Incident Manager

Applies state machine decisions to stored incidents. Every transition for
a service runs under that service's lock, so the decisions see health
observations in the order they were derived and a service never ends up
with two active incidents.

Persistence goes through persist_with_retry. A write that still fails
raises PersistenceError to the caller with the transition already logged.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from fleetwarden.primitives.common import utc_now
from fleetwarden.systems.events.types import DomainEvent, DomainEventType
from fleetwarden.systems.fleet.store import persist_with_retry
from fleetwarden.systems.fleet.types import HealthStatus, ManagedServiceState
from fleetwarden.systems.incidents import state_machine
from fleetwarden.systems.incidents.state_machine import (
    HealthDecision,
    IncidentNotFoundError,
)
from fleetwarden.systems.incidents.types import (
    AUTO_RESOLUTION_NOTE,
    SYSTEM_PRINCIPAL,
    DetectionSource,
    Incident,
    IncidentSeverity,
)

if TYPE_CHECKING:
    from fleetwarden.systems.events.event_bus import EventBus
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.scoring.types import AnalyzerVerdict

logger = structlog.get_logger()


class IncidentManager:
    def __init__(
        self,
        store: FleetStore,
        event_bus: EventBus | None = None,
        persist_attempts: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._bus = event_bus
        self._persist_attempts = persist_attempts
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._logger = logger.bind(system="incidents", component="incident_manager")

        self._total_opened: int = 0
        self._total_escalated: int = 0
        self._total_auto_resolved: int = 0

    # ─── Automatic Signals ───────────────────────────────────────────

    async def observe_health(
        self,
        state: ManagedServiceState,
        previous: HealthStatus,
        current: HealthStatus,
    ) -> Incident | None:
        """
        React to a derived health status.

        Returns the incident that was opened, escalated or auto-resolved,
        or None when the observation changed nothing.
        """
        async with self._locks[state.id]:
            active = await self._active_for(state.id)
            decision = state_machine.decide_on_health(previous, current, active)

            if decision == HealthDecision.OPEN:
                incident = Incident(
                    service_id=state.id,
                    service_name=state.name,
                    title=f"{state.name} transitioned from {previous.value.upper()} to {current.value.upper()}",
                    description=(
                        f"Service {state.name} ({state.kind.value}) health status changed from "
                        f"{previous.value.upper()} to {current.value.upper()}. "
                        f"Environment: {state.descriptor.environment}. "
                        f"Last health check at: {state.last_health_check}"
                    ),
                    severity=state_machine.severity_for_health(current),
                    detection_source=DetectionSource.HEALTH_CHECK,
                    created_at=self._clock(),
                    updated_at=self._clock(),
                    **_metrics_at_incident(state),
                )
                return await self._open(incident)

            if decision == HealthDecision.ESCALATE and active is not None:
                return await self._escalate(active, state_machine.severity_for_health(current), f"health:{current.value}")

            if decision == HealthDecision.AUTO_RESOLVE:
                return await self._auto_resolve(state)

            return None

    async def observe_anomaly(self, state: ManagedServiceState, verdict: AnalyzerVerdict) -> Incident | None:
        """Open (or escalate) an incident for an analyzer-flagged anomaly."""
        if not verdict.anomaly_detected:
            return None
        severity = state_machine.severity_for_anomaly(verdict.anomaly_type)
        async with self._locks[state.id]:
            active = await self._active_for(state.id)
            if active is not None:
                return await self._escalate(active, severity, f"anomaly:{verdict.anomaly_type}")

            now = self._clock()
            incident = Incident(
                service_id=state.id,
                service_name=state.name,
                title=f"Anomaly detected: {verdict.anomaly_type} on {state.name}",
                description=verdict.anomaly_description or verdict.summary,
                severity=severity,
                detection_source=DetectionSource.ANOMALY,
                anomaly_type=verdict.anomaly_type,
                analyzer_summary=verdict.summary or None,
                analyzer_recommendation=verdict.top_recommendation,
                analyzer_confidence=verdict.confidence,
                created_at=now,
                updated_at=now,
                **_metrics_at_incident(state),
            )
            return await self._open(incident)

    # ─── Manual Operations ───────────────────────────────────────────

    async def open_manual(
        self,
        state: ManagedServiceState,
        title: str,
        description: str = "",
        severity: IncidentSeverity = IncidentSeverity.MEDIUM,
    ) -> Incident:
        """Operator-reported incident. Folds into the active one if there is one."""
        if not title.strip():
            raise ValueError("incident title is required")
        async with self._locks[state.id]:
            active = await self._active_for(state.id)
            if active is not None:
                return await self._escalate(active, severity, "manual")
            now = self._clock()
            incident = Incident(
                service_id=state.id,
                service_name=state.name,
                title=title,
                description=description,
                severity=severity,
                detection_source=DetectionSource.MANUAL,
                created_at=now,
                updated_at=now,
                **_metrics_at_incident(state),
            )
            return await self._open(incident)

    async def acknowledge(self, incident_id: str, acknowledged_by: str) -> Incident:
        incident = await self._require(incident_id)
        async with self._locks[incident.service_id]:
            current = await self._require(incident_id)
            updated = state_machine.acknowledge(current, acknowledged_by, self._clock())
            if updated is current:
                return current
            await self._save(updated)
            self._logger.info(
                "incident_acknowledged",
                incident_id=updated.id,
                service_id=updated.service_id,
                acknowledged_by=acknowledged_by,
            )
            await self._emit(DomainEventType.INCIDENT_ACKNOWLEDGED, updated)
            return updated

    async def resolve(self, incident_id: str, resolution: str, resolved_by: str) -> Incident:
        incident = await self._require(incident_id)
        async with self._locks[incident.service_id]:
            current = await self._require(incident_id)
            updated = state_machine.resolve(current, resolution, resolved_by, self._clock())
            await self._save(updated)
            self._logger.info(
                "incident_resolved",
                incident_id=updated.id,
                service_id=updated.service_id,
                resolved_by=resolved_by,
            )
            await self._emit(DomainEventType.INCIDENT_RESOLVED, updated)
            return updated

    async def close(self, incident_id: str) -> Incident:
        incident = await self._require(incident_id)
        async with self._locks[incident.service_id]:
            current = await self._require(incident_id)
            updated = state_machine.close(current, self._clock())
            await self._save(updated)
            self._logger.info("incident_closed", incident_id=updated.id, service_id=updated.service_id)
            await self._emit(DomainEventType.INCIDENT_CLOSED, updated)
            return updated

    # ─── Queries ─────────────────────────────────────────────────────

    async def get(self, incident_id: str) -> Incident:
        return await self._require(incident_id)

    async def active(self, service_id: str) -> Incident | None:
        return await self._active_for(service_id)

    async def for_service(self, service_id: str, since: datetime | None = None) -> list[Incident]:
        incidents = await self._store.incidents_for(service_id, since=since)
        return sorted(incidents, key=lambda i: i.created_at, reverse=True)

    async def count_active(self) -> int:
        return len(await self._store.active_incidents())

    async def count_since(self, service_id: str, since: datetime) -> int:
        return len(await self._store.incidents_for(service_id, since=since))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_opened": self._total_opened,
            "total_escalated": self._total_escalated,
            "total_auto_resolved": self._total_auto_resolved,
        }

    # ─── Internals ───────────────────────────────────────────────────

    async def _open(self, incident: Incident) -> Incident:
        await self._save(incident)
        self._total_opened += 1
        self._logger.warning(
            "incident_opened",
            incident_id=incident.id,
            service=incident.service_name,
            severity=incident.severity.value,
            source=incident.detection_source.value,
            title=incident.title,
        )
        await self._emit(DomainEventType.INCIDENT_OPENED, incident)
        return incident

    async def _escalate(self, active: Incident, severity: IncidentSeverity, signal: str) -> Incident:
        updated = state_machine.escalate(active, severity, self._clock())
        await self._save(updated)
        if updated.severity != active.severity:
            self._total_escalated += 1
            self._logger.warning(
                "incident_escalated",
                incident_id=updated.id,
                service=updated.service_name,
                from_severity=active.severity.value,
                to_severity=updated.severity.value,
                signal=signal,
            )
            await self._emit(DomainEventType.INCIDENT_ESCALATED, updated)
        else:
            self._logger.debug(
                "incident_signal_folded",
                incident_id=updated.id,
                severity=updated.severity.value,
                signal=signal,
            )
        return updated

    async def _auto_resolve(self, state: ManagedServiceState) -> Incident | None:
        resolved: Incident | None = None
        for incident in await self._store.active_incidents(state.id):
            resolved = state_machine.resolve(incident, AUTO_RESOLUTION_NOTE, SYSTEM_PRINCIPAL, self._clock())
            await self._save(resolved)
            self._total_auto_resolved += 1
            self._logger.info(
                "incident_auto_resolved",
                incident_id=resolved.id,
                service=state.name,
                time_to_resolve_s=resolved.time_to_resolve_s,
            )
            await self._emit(DomainEventType.INCIDENT_RESOLVED, resolved)
        return resolved

    async def _active_for(self, service_id: str) -> Incident | None:
        active = await self._store.active_incidents(service_id)
        if not active:
            return None
        if len(active) > 1:
            self._logger.error(
                "multiple_active_incidents",
                service_id=service_id,
                incident_ids=[i.id for i in active],
            )
        return min(active, key=lambda i: i.created_at)

    async def _require(self, incident_id: str) -> Incident:
        incident = await self._store.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(f"incident {incident_id} not found")
        return incident

    async def _save(self, incident: Incident) -> None:
        await persist_with_retry(
            lambda: self._store.save_incident(incident),
            attempts=self._persist_attempts,
            what="save_incident",
            service_id=incident.service_id,
            incident_id=incident.id,
            status=incident.status.value,
        )

    async def _emit(self, event_type: DomainEventType, incident: Incident) -> None:
        if self._bus is None:
            return
        await self._bus.emit(DomainEvent(
            event_type=event_type,
            service_id=incident.service_id,
            data={
                "incident_id": incident.id,
                "title": incident.title,
                "severity": incident.severity.value,
                "status": incident.status.value,
                "detection_source": incident.detection_source.value,
            },
        ))


def _metrics_at_incident(state: ManagedServiceState) -> dict[str, float | None]:
    return {
        "cpu_at_incident": state.cpu_usage,
        "memory_at_incident": state.memory_usage,
        "error_rate_at_incident": state.error_rate,
        "response_time_at_incident": state.response_time_ms,
    }
