"""
FleetWarden: Entry Point

Loads configuration, sets up logging, seeds the in-memory registry from
the configured services, and runs the orchestrator against them with the
HTTP probe client until interrupted.

  python -m fleetwarden.main --config config/default.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from fleetwarden.config import FleetWardenConfig, load_config
from fleetwarden.systems.events.event_bus import EventBus
from fleetwarden.systems.fleet.store import FleetStore, InMemoryFleetStore
from fleetwarden.systems.fleet.types import ManagedServiceState
from fleetwarden.systems.health.monitor import HealthMonitor
from fleetwarden.systems.incidents.service import IncidentManager
from fleetwarden.systems.lifecycle.controller import LifecycleController
from fleetwarden.systems.lifecycle.executor import LifecycleExecutor, LoggingExecutor
from fleetwarden.systems.metrics.aggregator import MetricsAggregator
from fleetwarden.systems.orchestrator.service import Orchestrator
from fleetwarden.systems.probe.client import HttpProbeClient, ProbeClient
from fleetwarden.systems.scoring.analyzer import AnomalyAnalyzer, RuleBasedAnalyzer
from fleetwarden.systems.scoring.scorer import RiskScorer
from fleetwarden.telemetry.logging import setup_logging

if TYPE_CHECKING:
    from fleetwarden.systems.events.types import EventSink

logger = structlog.get_logger()


@dataclass
class Engine:
    """Every long-lived component, wired together."""

    config: FleetWardenConfig
    store: FleetStore
    probe_client: ProbeClient
    event_bus: EventBus
    health: HealthMonitor
    metrics: MetricsAggregator
    scorer: RiskScorer
    incidents: IncidentManager
    lifecycle: LifecycleController
    orchestrator: Orchestrator


def build_engine(
    config: FleetWardenConfig,
    store: FleetStore,
    probe_client: ProbeClient,
    analyzer: AnomalyAnalyzer | None = None,
    executor: LifecycleExecutor | None = None,
    sink: EventSink | None = None,
) -> Engine:
    attempts = config.monitoring.persist_attempts
    bus = EventBus(sink=sink)
    health = HealthMonitor(config.health, config.probe, store, probe_client, persist_attempts=attempts)
    metrics = MetricsAggregator(
        config.metrics, store, probe_client,
        probe_timeout_s=config.probe.timeout_s,
        persist_attempts=attempts,
    )
    scorer = RiskScorer(config.scoring, config.analyzer, store, analyzer, persist_attempts=attempts)
    incidents = IncidentManager(store, bus, persist_attempts=attempts)
    lifecycle = LifecycleController(
        config.lifecycle, store, executor or LoggingExecutor(), bus, persist_attempts=attempts,
    )
    orchestrator = Orchestrator(config.monitoring, store, health, metrics, scorer, incidents, bus)
    return Engine(
        config=config,
        store=store,
        probe_client=probe_client,
        event_bus=bus,
        health=health,
        metrics=metrics,
        scorer=scorer,
        incidents=incidents,
        lifecycle=lifecycle,
        orchestrator=orchestrator,
    )


async def seed_registry(config: FleetWardenConfig, store: FleetStore) -> list[ManagedServiceState]:
    seeded: list[ManagedServiceState] = []
    for registration in config.services:
        state = ManagedServiceState.from_registration(registration)
        await store.save_service(state)
        seeded.append(state)
        logger.info(
            "service_registered",
            service=state.name,
            kind=state.kind.value,
            url=state.descriptor.full_url,
            enabled=state.enabled,
        )
    return seeded


async def run(config: FleetWardenConfig) -> None:
    store = InMemoryFleetStore()
    await seed_registry(config, store)

    probe_client = HttpProbeClient(config.probe)
    analyzer = RuleBasedAnalyzer(store) if config.analyzer.enabled else None
    engine = build_engine(config, store, probe_client, analyzer=analyzer)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    engine.orchestrator.start()
    logger.info("fleetwarden_started", instance_id=config.instance_id, services=len(config.services))
    try:
        await stop_event.wait()
    finally:
        logger.info("fleetwarden_shutting_down")
        await engine.orchestrator.stop()
        await probe_client.close()
        logger.info("fleetwarden_shutdown_complete", stats=engine.orchestrator.stats["ticks"])


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="fleetwarden", description="Health & lifecycle safety engine")
    parser.add_argument(
        "--config",
        default=os.environ.get("FLEETWARDEN_CONFIG_PATH", "config/default.yaml"),
        help="Path to the YAML configuration file",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info("fleetwarden_starting", instance_id=config.instance_id, config_path=args.config)
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
