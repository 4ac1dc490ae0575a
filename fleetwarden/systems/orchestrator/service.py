"""
FleetWarden: Orchestrator

Drives the engine through seven independent periodic ticks:

  backend_health    probe BACKEND services, feed incidents
  frontend_health   probe FRONTEND services, feed incidents
  metrics           collect a snapshot per service
  anomaly           risk score per service, analyzer anomalies → incidents
  stability         recompute stability per service
  retention         purge expired metrics and probe records
  status            expire stale health to UNKNOWN, broadcast a summary

Within a tick, per-service units run on a bounded pool (asyncio.Semaphore)
and each unit has its own timeout. A unit that fails, times out or cannot
persist is logged and skipped; it never stops the other services in the
same tick.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from fleetwarden.primitives.common import FleetBaseModel
from fleetwarden.systems.events.types import DomainEvent, DomainEventType
from fleetwarden.systems.fleet.types import HealthStatus, ManagedServiceState, ServiceKind
from fleetwarden.systems.orchestrator.ticker import PeriodicTick

if TYPE_CHECKING:
    from fleetwarden.config import MonitoringConfig
    from fleetwarden.systems.events.event_bus import EventBus
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.health.monitor import HealthMonitor
    from fleetwarden.systems.incidents.service import IncidentManager
    from fleetwarden.systems.metrics.aggregator import MetricsAggregator
    from fleetwarden.systems.scoring.scorer import RiskScorer

logger = structlog.get_logger()

ServiceUnit = Callable[[ManagedServiceState], Awaitable[Any]]


class TickReport(FleetBaseModel):
    """What one pass of a tick did."""

    tick: str
    processed: int = 0
    failed: int = 0
    timed_out: int = 0


class Orchestrator:
    def __init__(
        self,
        config: MonitoringConfig,
        store: FleetStore,
        health: HealthMonitor,
        metrics: MetricsAggregator,
        scorer: RiskScorer,
        incidents: IncidentManager,
        event_bus: EventBus,
    ) -> None:
        self._config = config
        self._store = store
        self._health = health
        self._metrics = metrics
        self._scorer = scorer
        self._incidents = incidents
        self._bus = event_bus
        self._logger = logger.bind(system="orchestrator", component="orchestrator")

        self._ticks: dict[str, PeriodicTick] = {
            "backend_health": PeriodicTick(
                "backend_health", config.health_check_interval_s, self.run_backend_health,
            ),
            "frontend_health": PeriodicTick(
                "frontend_health", config.frontend_check_interval_s, self.run_frontend_health,
            ),
            "metrics": PeriodicTick("metrics", config.metrics_poll_interval_s, self.run_metrics),
            "anomaly": PeriodicTick("anomaly", config.anomaly_interval_s, self.run_anomaly),
            "stability": PeriodicTick("stability", config.stability_interval_s, self.run_stability),
            "retention": PeriodicTick(
                "retention", config.retention_interval_s, self.run_retention,
                initial_delay_s=config.retention_interval_s,
            ),
            "status": PeriodicTick("status", config.status_broadcast_interval_s, self.run_status),
        }
        self._started = False

    @property
    def ticks(self) -> dict[str, PeriodicTick]:
        return dict(self._ticks)

    # ─── Control ─────────────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            raise RuntimeError("Orchestrator is already running")
        self._started = True
        for tick in self._ticks.values():
            tick.start()
        self._logger.info(
            "orchestrator_started",
            ticks={name: t.interval_s for name, t in self._ticks.items()},
            max_concurrency=self._config.max_concurrency,
        )

    async def stop(self) -> None:
        """Cancel every tick. In-flight units are abandoned; each unit's writes stand alone."""
        await asyncio.gather(*(t.stop() for t in self._ticks.values()))
        self._started = False
        self._logger.info("orchestrator_stopped", ticks=self.stats["ticks"])

    # ─── Tick Bodies ─────────────────────────────────────────────────

    async def run_backend_health(self) -> TickReport:
        services = await self._store.list_services(kind=ServiceKind.BACKEND)
        return await self._fan_out("backend_health", services, self._health_unit)

    async def run_frontend_health(self) -> TickReport:
        services = await self._store.list_services(kind=ServiceKind.FRONTEND)
        return await self._fan_out("frontend_health", services, self._health_unit)

    async def run_metrics(self) -> TickReport:
        services = await self._store.list_services()
        return await self._fan_out("metrics", services, self._metrics.collect)

    async def run_anomaly(self) -> TickReport:
        services = await self._store.list_services()
        return await self._fan_out("anomaly", services, self._anomaly_unit)

    async def run_stability(self) -> TickReport:
        services = await self._store.list_services()
        return await self._fan_out("stability", services, self._scorer.recompute_stability)

    async def run_retention(self) -> TickReport:
        report = TickReport(tick="retention")
        try:
            await self._metrics.purge()
            report.processed = 1
        except Exception as exc:
            report.failed = 1
            self._logger.error("retention_failed", error=str(exc))
        return report

    async def run_status(self) -> TickReport:
        services = await self._store.list_services()
        report = await self._fan_out("status", services, self._expire_unit)

        counts = Counter(s.health_status.value for s in services)
        active = await self._incidents.count_active()
        await self._bus.emit(DomainEvent(
            event_type=DomainEventType.STATUS_SUMMARY,
            data={
                "total_services": len(services),
                "by_status": {status.value: counts.get(status.value, 0) for status in HealthStatus},
                "running": sum(1 for s in services if s.is_running),
                "active_incidents": active,
                "average_stability": (
                    round(sum(s.stability_score for s in services) / len(services), 1)
                    if services else None
                ),
            },
        ))
        return report

    # ─── Units ───────────────────────────────────────────────────────

    async def _health_unit(self, state: ManagedServiceState) -> None:
        observation = await self._health.check(state)
        if observation.changed:
            await self._bus.emit(DomainEvent(
                event_type=DomainEventType.HEALTH_CHANGED,
                service_id=state.id,
                data={
                    "service": state.name,
                    "previous": observation.previous.value,
                    "current": observation.current.value,
                    "error": observation.record.error_message if observation.record else None,
                },
            ))
        if observation.changed or observation.current == HealthStatus.HEALTHY:
            await self._incidents.observe_health(state, observation.previous, observation.current)

    async def _anomaly_unit(self, state: ManagedServiceState) -> None:
        result = await self._scorer.score(state)
        if result.verdict is not None and result.verdict.anomaly_detected:
            await self._incidents.observe_anomaly(state, result.verdict)
        await self._bus.emit(DomainEvent(
            event_type=DomainEventType.SCORES_UPDATED,
            service_id=state.id,
            data={
                "risk_score": result.risk_score,
                "risk_trend": result.risk_trend.value,
                "source": result.source.value,
                "stability_score": state.stability_score,
            },
        ))

    async def _expire_unit(self, state: ManagedServiceState) -> None:
        observation = await self._health.expire_stale(state)
        if observation is None:
            return
        await self._bus.emit(DomainEvent(
            event_type=DomainEventType.HEALTH_CHANGED,
            service_id=state.id,
            data={
                "service": state.name,
                "previous": observation.previous.value,
                "current": observation.current.value,
                "error": "stale",
            },
        ))

    # ─── Fan-out ─────────────────────────────────────────────────────

    async def _fan_out(
        self,
        tick: str,
        services: Sequence[ManagedServiceState],
        unit: ServiceUnit,
    ) -> TickReport:
        report = TickReport(tick=tick)
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def guarded(state: ManagedServiceState) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(unit(state), timeout=self._config.unit_timeout_s)
                    report.processed += 1
                except TimeoutError:
                    report.timed_out += 1
                    self._logger.warning(
                        "unit_timed_out",
                        tick=tick,
                        service=state.name,
                        timeout_s=self._config.unit_timeout_s,
                    )
                except Exception as exc:
                    report.failed += 1
                    self._logger.error(
                        "unit_failed",
                        tick=tick,
                        service=state.name,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )

        await asyncio.gather(*(guarded(s) for s in services))
        if report.failed or report.timed_out:
            self._logger.info(
                "tick_completed_with_errors",
                tick=tick,
                processed=report.processed,
                failed=report.failed,
                timed_out=report.timed_out,
            )
        return report

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "ticks": {name: t.stats for name, t in self._ticks.items()},
            "health": self._health.stats,
            "metrics": self._metrics.stats,
            "scoring": self._scorer.stats,
            "incidents": self._incidents.stats,
            "events": self._bus.stats,
        }
