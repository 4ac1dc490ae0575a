"""
FleetWarden: Risk & Stability Scoring

Stability (0-100) looks backwards: how smooth has the service been over
the trailing stability window?

  start at 100
  walk the health records oldest → newest:
    DEGRADED −2, CRITICAL −5, DOWN −10
    every unbroken run of N HEALTHY records +1 (never above 100)
  −10 per incident opened inside the window
  clamp to [0, 100]

Risk (0-100) looks forwards. The deterministic fallback blends how fast
error rate, latency and cpu are climbing (least-squares slope per hour,
normalised against reference slopes) with how high they already are:

  fallback = w · slope_component + (1 − w) · level_component

When an analyzer answers inside its timeout its hint is weighted by its
own confidence:

  risk = confidence · risk_hint + (1 − confidence) · fallback

Trend compares the mean risk sample of the current trend window against
the window before it.

Every compute_* function is pure: the same history yields the same score.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from fleetwarden.primitives.common import clamp, utc_now
from fleetwarden.systems.fleet.store import persist_with_retry
from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    HealthStatus,
    ManagedServiceState,
    MetricsSnapshot,
    RiskSample,
    RiskSource,
    RiskTrend,
)
from fleetwarden.systems.scoring.types import (
    AnalyzerUnavailable,
    AnalyzerVerdict,
    ScoreResult,
)

if TYPE_CHECKING:
    from fleetwarden.config import AnalyzerConfig, ScoringConfig
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.scoring.analyzer import AnomalyAnalyzer

logger = structlog.get_logger()

_EPSILON = timedelta(microseconds=1)

# Level component bounds and weights
_LEVEL_RULES: tuple[tuple[str, float, float], ...] = (
    ("cpu_usage", 80.0, 30.0),
    ("memory_usage", 85.0, 25.0),
    ("error_rate", 5.0, 35.0),
    ("latency_avg_ms", 2_000.0, 20.0),
)

# Slope component weights (error rate, latency, cpu)
_SLOPE_WEIGHTS: tuple[float, float, float] = (0.4, 0.3, 0.3)


# ─── Pure Functions ───────────────────────────────────────────────


def compute_stability(
    records: Sequence[HealthProbeRecord],
    incidents_opened: int,
    config: ScoringConfig,
) -> int:
    """Stability score for a chronologically ordered run of health records."""
    penalties = {
        HealthStatus.DEGRADED: config.degraded_penalty,
        HealthStatus.CRITICAL: config.critical_penalty,
        HealthStatus.DOWN: config.down_penalty,
    }
    score = 100.0
    streak = 0
    for record in records:
        if record.status == HealthStatus.HEALTHY:
            streak += 1
            if streak % config.healthy_streak_length == 0:
                score = min(100.0, score + config.healthy_streak_bonus)
            continue
        streak = 0
        score -= penalties.get(record.status, 0.0)

    score -= config.incident_penalty * max(0, incidents_opened)
    return int(round(clamp(score)))


def slope_per_hour(points: Sequence[tuple[datetime, float]]) -> float:
    """Least-squares slope of value over time, in units per hour. 0 when undefined."""
    if len(points) < 2:
        return 0.0
    origin = points[0][0]
    xs = [(t - origin).total_seconds() / 3600.0 for t, _ in points]
    ys = [v for _, v in points]
    n = len(points)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    denom = sum((x - mean_x) ** 2 for x in xs)
    if denom == 0:
        return 0.0
    return sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys, strict=True)) / denom


def compute_fallback_risk(snapshots: Sequence[MetricsSnapshot], config: ScoringConfig) -> int:
    """Deterministic risk from metric slopes and current levels."""
    if not snapshots:
        return 0

    def series(attr: str) -> list[tuple[datetime, float]]:
        return [(s.timestamp, v) for s in snapshots if (v := getattr(s, attr)) is not None]

    slopes = (
        slope_per_hour(series("error_rate")) / config.error_rate_slope_ref,
        slope_per_hour(series("latency_avg_ms")) / config.latency_slope_ref_ms,
        slope_per_hour(series("cpu_usage")) / config.cpu_slope_ref,
    )
    slope_component = 100.0 * sum(
        weight * clamp(normalised, 0.0, 1.0)
        for weight, normalised in zip(_SLOPE_WEIGHTS, slopes, strict=True)
    )

    latest = snapshots[-1]
    level_component = 0.0
    for attr, bound, weight in _LEVEL_RULES:
        value = getattr(latest, attr)
        if value is not None and value > bound:
            level_component += weight
    level_component = min(100.0, level_component)

    w = config.slope_weight
    return int(round(clamp(w * slope_component + (1.0 - w) * level_component)))


def blend_risk(fallback: int, verdict: AnalyzerVerdict | None) -> int:
    """Confidence-weighted blend of an analyzer hint with the fallback."""
    if verdict is None:
        return int(clamp(fallback))
    c = verdict.confidence
    return int(round(clamp(c * verdict.risk_hint + (1.0 - c) * fallback)))


def compute_trend(
    current: Sequence[RiskSample],
    previous: Sequence[RiskSample],
    delta: float,
) -> RiskTrend:
    """Compare mean risk of two windows. Missing history means STABLE."""
    if not current or not previous:
        return RiskTrend.STABLE
    cur = sum(s.score for s in current) / len(current)
    prev = sum(s.score for s in previous) / len(previous)
    if cur > prev + delta:
        return RiskTrend.DEGRADING
    if cur < prev - delta:
        return RiskTrend.IMPROVING
    return RiskTrend.STABLE


# ─── Risk Scorer ──────────────────────────────────────────────────


class RiskScorer:
    """
    Runs one scoring pass per service: fetch history, ask the analyzer
    (bounded by its timeout), fall back when it cannot answer, record a
    RiskSample, and write the scores back onto the service.

    Never blocks on the analyzer beyond AnalyzerConfig.timeout_s and never
    leaves risk_score stale past one pass.
    """

    def __init__(
        self,
        config: ScoringConfig,
        analyzer_config: AnalyzerConfig,
        store: FleetStore,
        analyzer: AnomalyAnalyzer | None = None,
        persist_attempts: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._analyzer_config = analyzer_config
        self._store = store
        self._analyzer = analyzer
        self._persist_attempts = persist_attempts
        self._clock = clock
        self._logger = logger.bind(system="scoring", component="risk_scorer")

        self._total_scored: int = 0
        self._total_fallbacks: int = 0

    async def score(self, state: ManagedServiceState, now: datetime | None = None) -> ScoreResult:
        now = now or self._clock()
        window = timedelta(seconds=self._config.risk_window_s)

        snapshots = await self._store.metrics(state.id, since=now - window, until=now + _EPSILON)
        fallback = compute_fallback_risk(snapshots, self._config)

        verdict = await self._consult_analyzer(state, window)
        risk = blend_risk(fallback, verdict)
        source = RiskSource.ANALYZER if verdict is not None else RiskSource.FALLBACK
        if verdict is None:
            self._total_fallbacks += 1

        sample = RiskSample(service_id=state.id, timestamp=now, score=risk, source=source)
        await persist_with_retry(
            lambda: self._store.append_risk_sample(sample),
            attempts=self._persist_attempts,
            what="append_risk_sample",
            service_id=state.id,
        )

        trend_window = timedelta(seconds=self._config.trend_window_s)
        current = await self._store.risk_samples(
            state.id, since=now - trend_window, until=now + _EPSILON,
        )
        previous = await self._store.risk_samples(
            state.id, since=now - 2 * trend_window, until=now - trend_window,
        )
        trend = compute_trend(current, previous, self._config.trend_delta)

        state.risk_score = risk
        state.risk_trend = trend
        await persist_with_retry(
            lambda: self._store.save_service(state),
            attempts=self._persist_attempts,
            what="save_service",
            service_id=state.id,
        )
        self._total_scored += 1

        self._logger.debug(
            "risk_scored",
            service=state.name,
            risk=risk,
            fallback=fallback,
            source=source.value,
            trend=trend.value,
        )
        return ScoreResult(
            service_id=state.id,
            risk_score=risk,
            risk_trend=trend,
            source=source,
            fallback_score=fallback,
            verdict=verdict,
        )

    async def recompute_stability(self, state: ManagedServiceState, now: datetime | None = None) -> int:
        now = now or self._clock()
        window = timedelta(seconds=self._config.stability_window_s)
        records = await self._store.health_records(state.id, since=now - window, until=now + _EPSILON)
        incidents = await self._store.incidents_for(state.id, since=now - window)
        opened = sum(1 for i in incidents if i.created_at <= now)

        stability = compute_stability(records, opened, self._config)
        state.stability_score = stability
        await persist_with_retry(
            lambda: self._store.save_service(state),
            attempts=self._persist_attempts,
            what="save_service",
            service_id=state.id,
        )
        self._logger.debug(
            "stability_recomputed",
            service=state.name,
            stability=stability,
            records=len(records),
            incidents=opened,
        )
        return stability

    async def _consult_analyzer(
        self,
        state: ManagedServiceState,
        window: timedelta,
    ) -> AnalyzerVerdict | None:
        if self._analyzer is None or not self._analyzer_config.enabled:
            return None
        try:
            return await asyncio.wait_for(
                self._analyzer.analyze(state.id, window),
                timeout=self._analyzer_config.timeout_s,
            )
        except AnalyzerUnavailable as exc:
            self._logger.debug("analyzer_unavailable", service=state.name, reason=str(exc))
        except TimeoutError:
            self._logger.warning(
                "analyzer_timeout",
                service=state.name,
                timeout_s=self._analyzer_config.timeout_s,
            )
        except Exception as exc:
            self._logger.warning("analyzer_failed", service=state.name, error=str(exc))
        return None

    @property
    def stats(self) -> dict[str, int]:
        return {"total_scored": self._total_scored, "total_fallbacks": self._total_fallbacks}
