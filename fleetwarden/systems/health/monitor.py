"""
FleetWarden: Health Monitor

Runs one probe for one service, derives its status, and records the result:
state snapshot updated, one HealthProbeRecord appended. A failed or timed
out probe is a DOWN observation, not an error. Only persistence failures
escape, as PersistenceError, after the configured retries.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from fleetwarden.primitives.common import FleetBaseModel, utc_now
from fleetwarden.systems.fleet.store import persist_with_retry
from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    HealthStatus,
    ManagedServiceState,
)
from fleetwarden.systems.health.derivation import derive_status, is_stale
from fleetwarden.systems.probe.types import (
    ProbeFailure,
    ProbeFailureKind,
    ProbeOutcome,
)

if TYPE_CHECKING:
    from fleetwarden.config import HealthConfig, ProbeConfig
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.probe.client import ProbeClient

logger = structlog.get_logger()


class HealthObservation(FleetBaseModel):
    """What one health pass saw for one service."""

    service_id: str
    previous: HealthStatus
    current: HealthStatus
    record: HealthProbeRecord | None = None

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class HealthMonitor:
    def __init__(
        self,
        health_config: HealthConfig,
        probe_config: ProbeConfig,
        store: FleetStore,
        probe_client: ProbeClient,
        persist_attempts: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = health_config
        self._probe_config = probe_config
        self._store = store
        self._probe = probe_client
        self._persist_attempts = persist_attempts
        self._clock = clock
        self._logger = logger.bind(system="health", component="health_monitor")

        self._total_checks: int = 0
        self._total_down: int = 0

    async def check(self, state: ManagedServiceState) -> HealthObservation:
        """Probe the service under the configured timeout and record the outcome."""
        timeout = self._probe_config.timeout_s
        t0 = time.monotonic()
        outcome: ProbeOutcome
        try:
            outcome = await asyncio.wait_for(self._probe.probe(state, timeout), timeout=timeout)
        except TimeoutError:
            outcome = ProbeFailure.timeout(elapsed_ms=(time.monotonic() - t0) * 1000.0)
        except Exception as exc:
            # A misbehaving probe client still yields an observation
            outcome = ProbeFailure(
                kind=ProbeFailureKind.UNREACHABLE,
                message=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
            )
        return await self.observe(state, outcome)

    async def observe(self, state: ManagedServiceState, outcome: ProbeOutcome) -> HealthObservation:
        """Derive, update state, append the probe record, persist."""
        now = self._clock()
        thresholds = state.descriptor.thresholds or self._config.thresholds
        status = derive_status(
            outcome,
            thresholds,
            critical_components=self._config.critical_components,
            staleness_s=self._config.staleness_s,
            now=now,
        )
        result = outcome.to_result() if isinstance(outcome, ProbeFailure) else outcome

        record = HealthProbeRecord(
            service_id=state.id,
            timestamp=now,
            status=status,
            probe_kind=result.probe_kind,
            response_time_ms=result.response_time_ms,
            reachable=result.reachable,
            http_status=result.http_status,
            reported_status=result.reported_status,
            components=dict(result.components),
            error_message=result.error_message,
            error_type=result.error_type,
        )

        previous = state.health_status
        state.health_status = status
        state.last_health_check = now
        state.is_running = status != HealthStatus.DOWN
        if result.response_time_ms is not None:
            state.response_time_ms = result.response_time_ms
        if result.error_rate is not None:
            state.error_rate = result.error_rate
        if result.cpu_usage is not None:
            state.cpu_usage = result.cpu_usage
        if result.memory_usage is not None:
            state.memory_usage = result.memory_usage

        self._total_checks += 1
        if status == HealthStatus.DOWN:
            self._total_down += 1

        await persist_with_retry(
            lambda: self._store.append_health_record(record),
            attempts=self._persist_attempts,
            what="append_health_record",
            service_id=state.id,
        )
        await persist_with_retry(
            lambda: self._store.save_service(state),
            attempts=self._persist_attempts,
            what="save_service",
            service_id=state.id,
        )

        if previous != status:
            self._logger.info(
                "health_status_changed",
                service=state.name,
                previous=previous.value,
                current=status.value,
                error=record.error_message,
            )
        return HealthObservation(service_id=state.id, previous=previous, current=status, record=record)

    async def expire_stale(self, state: ManagedServiceState) -> HealthObservation | None:
        """Mark a service UNKNOWN when no probe has completed within the staleness window."""
        now = self._clock()
        if state.health_status == HealthStatus.UNKNOWN:
            return None
        if not is_stale(state.last_health_check, self._config.staleness_s, now):
            return None

        previous = state.health_status
        state.health_status = HealthStatus.UNKNOWN
        await persist_with_retry(
            lambda: self._store.save_service(state),
            attempts=self._persist_attempts,
            what="save_service",
            service_id=state.id,
        )
        self._logger.warning(
            "health_status_stale",
            service=state.name,
            previous=previous.value,
            last_check=state.last_health_check.isoformat() if state.last_health_check else None,
        )
        return HealthObservation(service_id=state.id, previous=previous, current=HealthStatus.UNKNOWN)

    @property
    def stats(self) -> dict[str, int]:
        return {"total_checks": self._total_checks, "total_down": self._total_down}
