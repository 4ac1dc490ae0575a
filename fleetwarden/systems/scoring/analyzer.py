"""
FleetWarden: Anomaly Analyzers

An analyzer looks at one service's recent window and says whether it
sees an anomaly, how risky the service looks (risk_hint, 0-100), and how
much it trusts that judgement (confidence, 0-1).

Analyzers are optional and advisory. RiskScorer calls them under its own
timeout and falls back to the deterministic model whenever they are
slow, unavailable, or wrong-footed by an exception.

RuleBasedAnalyzer is the in-process default: fixed rules over the latest
snapshot plus a memory-growth pattern check.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from fleetwarden.primitives.common import utc_now
from fleetwarden.systems.fleet.types import MetricsSnapshot
from fleetwarden.systems.scoring.types import (
    AnalyzerUnavailable,
    AnalyzerVerdict,
    Recommendation,
)

if TYPE_CHECKING:
    from fleetwarden.systems.fleet.store import FleetStore

logger = structlog.get_logger()

# Rule bounds
_HIGH_CPU = 80.0
_SATURATED_CPU = 90.0
_HIGH_MEMORY = 85.0
_ELEVATED_ERROR_RATE = 5.0
_ERROR_SPIKE = 10.0
_SLOW_RESPONSE_MS = 2_000.0

# How many consecutive snapshots must grow before it counts as a leak
_LEAK_RUN = 5

_RULE_CONFIDENCE = 0.7


class AnomalyAnalyzer(ABC):
    """Abstract interface for anomaly analysis of one service."""

    @abstractmethod
    async def analyze(self, service_id: str, window: timedelta) -> AnalyzerVerdict:
        """
        Analyse the trailing window for one service.

        Raises AnalyzerUnavailable when no answer can be given.
        """
        ...

    async def close(self) -> None:
        """Clean up resources."""


class RuleBasedAnalyzer(AnomalyAnalyzer):
    """
    Threshold rules over stored metrics.

      cpu > 80                       → +30 risk; > 90 is CPU_SATURATION
      memory > 85                    → +25 risk; strictly growing over the
                                       last five samples is MEMORY_LEAK
      error rate > 5                 → +35 risk; > 10 is ERROR_SPIKE
      average latency > 2000 ms      → +20 risk, recommend SCALE_UP
    """

    def __init__(self, store: FleetStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger.bind(system="scoring", component="rule_analyzer")

    async def analyze(self, service_id: str, window: timedelta) -> AnalyzerVerdict:
        now = self._clock()
        snapshots = await self._store.metrics(service_id, since=now - window)
        if not snapshots:
            raise AnalyzerUnavailable(f"no metrics for service {service_id} in window")
        verdict = evaluate_rules(snapshots)
        self._logger.debug(
            "rule_analysis_completed",
            service_id=service_id,
            samples=len(snapshots),
            risk_hint=verdict.risk_hint,
            anomaly_type=verdict.anomaly_type,
        )
        return verdict


def evaluate_rules(snapshots: Sequence[MetricsSnapshot]) -> AnalyzerVerdict:
    """Pure rule evaluation. Snapshots must be in chronological order."""
    latest = snapshots[-1]
    risk = 0.0
    factors: list[str] = []
    recommendations: list[Recommendation] = []
    anomaly_type: str | None = None
    anomaly_description: str | None = None

    cpu = latest.cpu_usage
    if cpu is not None and cpu > _HIGH_CPU:
        risk += 30
        factors.append(f"High CPU usage: {cpu:.1f}%")
        if cpu > _SATURATED_CPU:
            anomaly_type = "CPU_SATURATION"
            anomaly_description = "CPU usage critically high"
            recommendations.append(Recommendation(
                action="INVESTIGATE",
                reason="CPU usage is above 90%, indicating potential saturation",
                priority="HIGH",
            ))

    memory = latest.memory_usage
    if memory is not None and memory > _HIGH_MEMORY:
        risk += 25
        factors.append(f"High memory usage: {memory:.1f}%")
        if _memory_growing(snapshots):
            anomaly_type = "MEMORY_LEAK"
            anomaly_description = "Memory usage consistently increasing - possible memory leak"
            recommendations.append(Recommendation(
                action="RESTART",
                reason="Memory leak detected. Recommend restart during low traffic window.",
                priority="MEDIUM",
            ))

    errors = latest.error_rate
    if errors is not None and errors > _ELEVATED_ERROR_RATE:
        risk += 35
        factors.append(f"Elevated error rate: {errors:.2f}%")
        if errors > _ERROR_SPIKE:
            anomaly_type = "ERROR_SPIKE"
            anomaly_description = "Error rate significantly above normal"
            recommendations.append(Recommendation(
                action="INVESTIGATE_LOGS",
                reason="Error rate exceeds 10%. Check logs for root cause.",
                priority="HIGH",
            ))

    latency = latest.latency_avg_ms
    if latency is not None and latency > _SLOW_RESPONSE_MS:
        risk += 20
        factors.append(f"High response time: {latency:.0f}ms")
        recommendations.append(Recommendation(
            action="SCALE_UP",
            reason="Response time elevated. Consider scaling up instances.",
            priority="MEDIUM",
        ))

    return AnalyzerVerdict(
        anomaly_detected=anomaly_type is not None,
        anomaly_type=anomaly_type,
        anomaly_description=anomaly_description,
        risk_hint=min(100.0, risk),
        confidence=_RULE_CONFIDENCE,
        summary="; ".join(factors) if factors else "No risk factors observed",
        recommendations=recommendations,
    )


def _memory_growing(snapshots: Sequence[MetricsSnapshot]) -> bool:
    if len(snapshots) <= _LEAK_RUN:
        return False
    run = [s.memory_usage for s in snapshots[-_LEAK_RUN:]]
    if any(v is None for v in run):
        return False
    return all(a < b for a, b in zip(run[:-1], run[1:], strict=True))  # type: ignore[operator]
