"""
FleetWarden: Fleet Store

The persistence boundary. The engine reads and writes through FleetStore
only; storage technology is somebody else's concern. InMemoryFleetStore is
the default implementation and keeps every collection keyed by service id.

Writes that fail raise PersistenceError. Callers wrap their persist step in
persist_with_retry(), which retries within the current unit of work and
never lets a failure disappear without a log line.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    ManagedServiceState,
    MetricsSnapshot,
    RiskSample,
    ServiceKind,
)

if TYPE_CHECKING:
    from fleetwarden.systems.incidents.types import Incident
    from fleetwarden.systems.lifecycle.types import AuditRecord, LifecycleAction

logger = structlog.get_logger()

T = TypeVar("T")


class PersistenceError(Exception):
    """A store operation failed."""


class FleetStore(ABC):
    """Abstract persistence for services, records, incidents and audits."""

    # ── Services ──

    @abstractmethod
    async def get_service(self, service_id: str) -> ManagedServiceState | None: ...

    @abstractmethod
    async def list_services(
        self,
        kind: ServiceKind | None = None,
        enabled_only: bool = True,
    ) -> list[ManagedServiceState]: ...

    @abstractmethod
    async def save_service(self, state: ManagedServiceState) -> None: ...

    # ── Health probe records ──

    @abstractmethod
    async def append_health_record(self, record: HealthProbeRecord) -> None: ...

    @abstractmethod
    async def health_records(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[HealthProbeRecord]: ...

    @abstractmethod
    async def delete_health_records_before(self, cutoff: datetime) -> int: ...

    # ── Metrics ──

    @abstractmethod
    async def append_metrics(self, snapshot: MetricsSnapshot) -> None: ...

    @abstractmethod
    async def metrics(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[MetricsSnapshot]: ...

    @abstractmethod
    async def delete_metrics_before(self, cutoff: datetime) -> int: ...

    # ── Risk history ──

    @abstractmethod
    async def append_risk_sample(self, sample: RiskSample) -> None: ...

    @abstractmethod
    async def risk_samples(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[RiskSample]: ...

    @abstractmethod
    async def delete_risk_samples_before(self, cutoff: datetime) -> int: ...

    # ── Incidents ──

    @abstractmethod
    async def save_incident(self, incident: Incident) -> None: ...

    @abstractmethod
    async def get_incident(self, incident_id: str) -> Incident | None: ...

    @abstractmethod
    async def incidents_for(
        self,
        service_id: str,
        since: datetime | None = None,
    ) -> list[Incident]: ...

    @abstractmethod
    async def active_incidents(self, service_id: str | None = None) -> list[Incident]: ...

    # ── Audit ──

    @abstractmethod
    async def append_audit(self, record: AuditRecord) -> None: ...

    @abstractmethod
    async def audit_records(
        self,
        service_id: str,
        since: datetime | None = None,
        action: LifecycleAction | None = None,
    ) -> list[AuditRecord]: ...


class InMemoryFleetStore(FleetStore):
    """
    Process-local store. Every collection is an explicit dict keyed by
    service id; append-only collections are lists kept in timestamp order
    of arrival.

    Each method completes without awaiting anything, so under asyncio a
    single call is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._services: dict[str, ManagedServiceState] = {}
        self._health: dict[str, list[HealthProbeRecord]] = defaultdict(list)
        self._metrics: dict[str, list[MetricsSnapshot]] = defaultdict(list)
        self._risk: dict[str, list[RiskSample]] = defaultdict(list)
        self._incidents: dict[str, Incident] = {}
        self._incidents_by_service: dict[str, list[str]] = defaultdict(list)
        self._audit: dict[str, list[AuditRecord]] = defaultdict(list)

    # ── Services ──

    async def get_service(self, service_id: str) -> ManagedServiceState | None:
        return self._services.get(service_id)

    async def list_services(
        self,
        kind: ServiceKind | None = None,
        enabled_only: bool = True,
    ) -> list[ManagedServiceState]:
        return [
            s for s in self._services.values()
            if (kind is None or s.kind == kind) and (s.enabled or not enabled_only)
        ]

    async def save_service(self, state: ManagedServiceState) -> None:
        self._services[state.id] = state

    # ── Health probe records ──

    async def append_health_record(self, record: HealthProbeRecord) -> None:
        self._health[record.service_id].append(record)

    async def health_records(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[HealthProbeRecord]:
        return _between(self._health.get(service_id, []), since, until)

    async def delete_health_records_before(self, cutoff: datetime) -> int:
        return _purge(self._health, cutoff)

    # ── Metrics ──

    async def append_metrics(self, snapshot: MetricsSnapshot) -> None:
        self._metrics[snapshot.service_id].append(snapshot)

    async def metrics(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[MetricsSnapshot]:
        return _between(self._metrics.get(service_id, []), since, until)

    async def delete_metrics_before(self, cutoff: datetime) -> int:
        return _purge(self._metrics, cutoff)

    # ── Risk history ──

    async def append_risk_sample(self, sample: RiskSample) -> None:
        self._risk[sample.service_id].append(sample)

    async def risk_samples(
        self,
        service_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[RiskSample]:
        return _between(self._risk.get(service_id, []), since, until)

    async def delete_risk_samples_before(self, cutoff: datetime) -> int:
        return _purge(self._risk, cutoff)

    # ── Incidents ──

    async def save_incident(self, incident: Incident) -> None:
        if incident.id not in self._incidents:
            self._incidents_by_service[incident.service_id].append(incident.id)
        self._incidents[incident.id] = incident

    async def get_incident(self, incident_id: str) -> Incident | None:
        return self._incidents.get(incident_id)

    async def incidents_for(
        self,
        service_id: str,
        since: datetime | None = None,
    ) -> list[Incident]:
        incidents = [self._incidents[i] for i in self._incidents_by_service.get(service_id, [])]
        if since is not None:
            incidents = [i for i in incidents if i.created_at >= since]
        return incidents

    async def active_incidents(self, service_id: str | None = None) -> list[Incident]:
        if service_id is None:
            candidates = list(self._incidents.values())
        else:
            candidates = [self._incidents[i] for i in self._incidents_by_service.get(service_id, [])]
        return [i for i in candidates if i.is_active]

    # ── Audit ──

    async def append_audit(self, record: AuditRecord) -> None:
        self._audit[record.service_id].append(record)

    async def audit_records(
        self,
        service_id: str,
        since: datetime | None = None,
        action: LifecycleAction | None = None,
    ) -> list[AuditRecord]:
        return [
            r for r in self._audit.get(service_id, [])
            if (since is None or r.started_at >= since) and (action is None or r.action == action)
        ]


def _between(records: list[Any], since: datetime, until: datetime | None) -> list[Any]:
    return [
        r for r in records
        if r.timestamp >= since and (until is None or r.timestamp < until)
    ]


def _purge(collection: dict[str, list[Any]], cutoff: datetime) -> int:
    deleted = 0
    for service_id, records in collection.items():
        kept = [r for r in records if r.timestamp >= cutoff]
        deleted += len(records) - len(kept)
        collection[service_id] = kept
    return deleted


async def persist_with_retry(
    op: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    what: str,
    **context: Any,
) -> T:
    """
    Run a store operation, retrying on failure.

    Raises PersistenceError once every attempt has failed. Each failed
    attempt is logged with the supplied context.
    """
    last_exc: Exception | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return await op()
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "persist_attempt_failed",
                what=what,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
                **context,
            )
    logger.error("persist_failed", what=what, error=str(last_exc), **context)
    raise PersistenceError(f"{what} failed after {attempts} attempt(s): {last_exc}") from last_exc
