"""
FleetWarden: Metrics Aggregator

Stores periodic resource/usage snapshots per service and summarises them
over trailing windows for scoring.

Snapshots are append-only; retention is a time-bounded delete, so a purge
running alongside ingestion can only ever remove records older than the
horizon and never touches a snapshot being written now.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from fleetwarden.primitives.common import FleetBaseModel, utc_now
from fleetwarden.systems.fleet.store import persist_with_retry
from fleetwarden.systems.fleet.types import ManagedServiceState, MetricsSnapshot

if TYPE_CHECKING:
    from fleetwarden.config import MetricsConfig
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.probe.client import ProbeClient

logger = structlog.get_logger()

_SNAPSHOT_FIELDS: frozenset[str] = frozenset(MetricsSnapshot.model_fields) - {
    "id", "service_id", "timestamp", "extra",
}
_INTEGER_FIELDS: frozenset[str] = frozenset({
    "requests_total", "errors_total", "thread_count", "gc_pause_count",
})


class WindowStats(FleetBaseModel):
    """Averages over one trailing window. None when no sample carried the metric."""

    service_id: str
    window_s: float
    sample_count: int = 0
    avg_cpu: float | None = None
    avg_memory: float | None = None
    avg_error_rate: float | None = None
    avg_latency: float | None = None
    p95_latency: float | None = None
    max_cpu: float | None = None


def summarise(service_id: str, window: timedelta, snapshots: Sequence[MetricsSnapshot]) -> WindowStats:
    """Pure summary of a list of snapshots."""
    cpu = [s.cpu_usage for s in snapshots if s.cpu_usage is not None]
    memory = [s.memory_usage for s in snapshots if s.memory_usage is not None]
    errors = [s.error_rate for s in snapshots if s.error_rate is not None]
    latency = [s.latency_avg_ms for s in snapshots if s.latency_avg_ms is not None]
    return WindowStats(
        service_id=service_id,
        window_s=window.total_seconds(),
        sample_count=len(snapshots),
        avg_cpu=_mean(cpu),
        avg_memory=_mean(memory),
        avg_error_rate=_mean(errors),
        avg_latency=_mean(latency),
        p95_latency=percentile(latency, 95.0),
        max_cpu=max(cpu) if cpu else None,
    )


def percentile(values: Sequence[float], pct: float) -> float | None:
    """Nearest-rank percentile."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


def snapshot_from_counters(
    service_id: str,
    counters: dict[str, float],
    timestamp: datetime,
) -> MetricsSnapshot:
    """Map a probe client's counter bag onto a snapshot; unknown keys go to extra."""
    fields: dict[str, Any] = {}
    extra: dict[str, float] = {}
    for key, value in counters.items():
        if key in _SNAPSHOT_FIELDS:
            fields[key] = int(value) if key in _INTEGER_FIELDS else value
        else:
            extra[key] = value
    return MetricsSnapshot(service_id=service_id, timestamp=timestamp, extra=extra, **fields)


class MetricsAggregator:
    def __init__(
        self,
        config: MetricsConfig,
        store: FleetStore,
        probe_client: ProbeClient | None = None,
        probe_timeout_s: float = 10.0,
        persist_attempts: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._probe = probe_client
        self._probe_timeout_s = probe_timeout_s
        self._persist_attempts = persist_attempts
        self._clock = clock
        self._logger = logger.bind(system="metrics", component="aggregator")

        self._total_ingested: int = 0
        self._total_purged: int = 0

    # ─── Ingestion ───────────────────────────────────────────────────

    async def collect(self, state: ManagedServiceState) -> MetricsSnapshot:
        """Pull one round of counters from the service and ingest them."""
        if self._probe is None:
            raise RuntimeError("MetricsAggregator has no probe client to collect with")
        counters = await self._probe.collect_metrics(state, self._probe_timeout_s)
        snapshot = snapshot_from_counters(state.id, counters, self._clock())
        await self.ingest(snapshot, state)
        return snapshot

    async def ingest(self, snapshot: MetricsSnapshot, state: ManagedServiceState | None = None) -> None:
        """Append a snapshot and refresh the service's resource snapshot."""
        await persist_with_retry(
            lambda: self._store.append_metrics(snapshot),
            attempts=self._persist_attempts,
            what="append_metrics",
            service_id=snapshot.service_id,
        )
        self._total_ingested += 1

        if state is None:
            state = await self._store.get_service(snapshot.service_id)
        if state is None:
            return

        if snapshot.cpu_usage is not None:
            state.cpu_usage = snapshot.cpu_usage
        if snapshot.memory_usage is not None:
            state.memory_usage = snapshot.memory_usage
        if snapshot.error_rate is not None:
            state.error_rate = snapshot.error_rate
        if snapshot.latency_avg_ms is not None:
            state.response_time_ms = snapshot.latency_avg_ms
        state.last_metrics_collection = snapshot.timestamp

        await persist_with_retry(
            lambda: self._store.save_service(state),
            attempts=self._persist_attempts,
            what="save_service",
            service_id=state.id,
        )

    # ─── Reads ───────────────────────────────────────────────────────

    async def window_stats(
        self,
        service_id: str,
        window: timedelta,
        now: datetime | None = None,
    ) -> WindowStats:
        """Averages over the trailing window ending at now."""
        end = now or self._clock()
        snapshots = await self._store.metrics(service_id, since=end - window, until=end + timedelta(microseconds=1))
        return summarise(service_id, window, snapshots)

    async def short_window(self, service_id: str, now: datetime | None = None) -> WindowStats:
        return await self.window_stats(service_id, timedelta(seconds=self._config.short_window_s), now)

    async def long_window(self, service_id: str, now: datetime | None = None) -> WindowStats:
        return await self.window_stats(service_id, timedelta(seconds=self._config.long_window_s), now)

    async def latest(self, service_id: str, window: timedelta | None = None) -> MetricsSnapshot | None:
        end = self._clock()
        span = window or timedelta(seconds=self._config.short_window_s)
        snapshots = await self._store.metrics(service_id, since=end - span)
        return snapshots[-1] if snapshots else None

    # ─── Retention ───────────────────────────────────────────────────

    async def purge(self, now: datetime | None = None) -> int:
        """
        Delete snapshots, probe records and risk samples older than the
        retention horizon.

        Idempotent: a second pass over the same horizon deletes nothing.
        Audit records are never purged.
        """
        cutoff = (now or self._clock()) - timedelta(days=self._config.retention_days)
        metrics_deleted = await self._store.delete_metrics_before(cutoff)
        health_deleted = await self._store.delete_health_records_before(cutoff)
        risk_deleted = await self._store.delete_risk_samples_before(cutoff)
        deleted = metrics_deleted + health_deleted + risk_deleted
        self._total_purged += deleted
        self._logger.info(
            "retention_purge_completed",
            cutoff=cutoff.isoformat(),
            metrics_deleted=metrics_deleted,
            health_records_deleted=health_deleted,
            risk_samples_deleted=risk_deleted,
        )
        return deleted

    @property
    def stats(self) -> dict[str, int]:
        return {"total_ingested": self._total_ingested, "total_purged": self._total_purged}


def _mean(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None
