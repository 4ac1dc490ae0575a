"""
Unit tests for risk and stability scoring.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetwarden.config import AnalyzerConfig, ScoringConfig
from fleetwarden.systems.fleet.store import InMemoryFleetStore
from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    HealthStatus,
    ManagedServiceState,
    MetricsSnapshot,
    ProbeKind,
    RiskSample,
    RiskSource,
    RiskTrend,
    ServiceKind,
)
from fleetwarden.systems.incidents.types import DetectionSource, Incident, IncidentSeverity
from fleetwarden.systems.scoring.scorer import (
    RiskScorer,
    blend_risk,
    compute_fallback_risk,
    compute_stability,
    compute_trend,
    slope_per_hour,
)
from fleetwarden.systems.scoring.types import AnalyzerUnavailable, AnalyzerVerdict

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CONFIG = ScoringConfig()


def _make_service() -> ManagedServiceState:
    return ManagedServiceState.register(name="orders-api", kind=ServiceKind.BACKEND, host="localhost", port=8080)


def _records(*statuses: HealthStatus) -> list[HealthProbeRecord]:
    return [
        HealthProbeRecord(
            service_id="svc",
            timestamp=NOW - timedelta(minutes=len(statuses) - i),
            status=status,
            probe_kind=ProbeKind.HTTP,
        )
        for i, status in enumerate(statuses)
    ]


def _snapshots(values: list[tuple[int, dict]]) -> list[MetricsSnapshot]:
    return [
        MetricsSnapshot(service_id="svc", timestamp=NOW - timedelta(minutes=m), **fields)
        for m, fields in values
    ]


def _sample(score: int, minutes_ago: float) -> RiskSample:
    return RiskSample(
        service_id="svc", timestamp=NOW - timedelta(minutes=minutes_ago), score=score, source=RiskSource.FALLBACK,
    )


# ─── Tests: Stability ─────────────────────────────────────────────


class TestComputeStability:
    def test_no_history_is_perfect(self):
        assert compute_stability([], 0, CONFIG) == 100

    def test_penalties_per_status(self):
        records = _records(HealthStatus.DEGRADED, HealthStatus.CRITICAL, HealthStatus.DOWN)
        assert compute_stability(records, 0, CONFIG) == 100 - 2 - 5 - 10

    def test_incident_penalty(self):
        assert compute_stability([], 2, CONFIG) == 80

    def test_healthy_streak_recovers_but_caps_at_100(self):
        records = _records(HealthStatus.DOWN, *([HealthStatus.HEALTHY] * 20))
        assert compute_stability(records, 0, CONFIG) == 92
        assert compute_stability(_records(*([HealthStatus.HEALTHY] * 50)), 0, CONFIG) == 100

    def test_broken_streak_restarts_count(self):
        records = _records(*([HealthStatus.HEALTHY] * 9), HealthStatus.DEGRADED, *([HealthStatus.HEALTHY] * 9))
        assert compute_stability(records, 0, CONFIG) == 98

    def test_floor_is_zero(self):
        records = _records(*([HealthStatus.DOWN] * 50))
        assert compute_stability(records, 5, CONFIG) == 0

    def test_always_in_bounds_for_random_histories(self):
        rng = random.Random(7)
        for _ in range(200):
            statuses = [rng.choice(list(HealthStatus)) for _ in range(rng.randint(0, 80))]
            score = compute_stability(_records(*statuses), rng.randint(0, 12), CONFIG)
            assert 0 <= score <= 100


# ─── Tests: Risk ──────────────────────────────────────────────────


class TestFallbackRisk:
    def test_no_metrics_is_zero(self):
        assert compute_fallback_risk([], CONFIG) == 0

    def test_flat_healthy_metrics_are_low_risk(self):
        snaps = _snapshots([(m, {"cpu_usage": 20.0, "error_rate": 0.1, "latency_avg_ms": 100.0}) for m in (50, 30, 10)])
        assert compute_fallback_risk(snaps, CONFIG) == 0

    def test_climbing_error_rate_raises_risk(self):
        flat = _snapshots([(m, {"error_rate": 1.0}) for m in (50, 30, 10)])
        rising = _snapshots([(50, {"error_rate": 1.0}), (30, {"error_rate": 3.0}), (10, {"error_rate": 4.5})])
        assert compute_fallback_risk(rising, CONFIG) > compute_fallback_risk(flat, CONFIG)

    def test_high_levels_without_slope(self):
        snaps = _snapshots([(m, {"cpu_usage": 92.0, "error_rate": 8.0}) for m in (50, 30, 10)])
        # (30 + 35) level points, weighted by 1 - slope_weight
        assert compute_fallback_risk(snaps, CONFIG) == round(0.4 * 65)

    def test_same_history_same_score(self):
        snaps = _snapshots([(50, {"cpu_usage": 40.0}), (20, {"cpu_usage": 70.0}), (5, {"cpu_usage": 88.0})])
        assert compute_fallback_risk(snaps, CONFIG) == compute_fallback_risk(list(snaps), CONFIG)

    def test_always_in_bounds_for_random_histories(self):
        rng = random.Random(11)
        for _ in range(200):
            snaps = _snapshots([
                (m, {
                    "cpu_usage": rng.uniform(0, 100),
                    "memory_usage": rng.uniform(0, 100),
                    "error_rate": rng.uniform(0, 100),
                    "latency_avg_ms": rng.uniform(0, 60_000),
                })
                for m in sorted(rng.sample(range(60), rng.randint(1, 20)), reverse=True)
            ])
            assert 0 <= compute_fallback_risk(snaps, CONFIG) <= 100

    def test_slope_per_hour(self):
        points = [(NOW, 0.0), (NOW + timedelta(minutes=30), 5.0), (NOW + timedelta(hours=1), 10.0)]
        assert slope_per_hour(points) == pytest.approx(10.0)
        assert slope_per_hour(points[:1]) == 0.0


class TestBlendAndTrend:
    def test_blend_weights_by_confidence(self):
        verdict = AnalyzerVerdict(risk_hint=80.0, confidence=0.5)
        assert blend_risk(20, verdict) == 50

    def test_blend_without_verdict_is_fallback(self):
        assert blend_risk(37, None) == 37

    def test_full_confidence_is_hint(self):
        assert blend_risk(0, AnalyzerVerdict(risk_hint=90.0, confidence=1.0)) == 90

    def test_trend_degrading(self):
        trend = compute_trend([_sample(60, 10)], [_sample(40, 70)], delta=5)
        assert trend == RiskTrend.DEGRADING

    def test_trend_improving(self):
        trend = compute_trend([_sample(10, 10)], [_sample(40, 70)], delta=5)
        assert trend == RiskTrend.IMPROVING

    def test_trend_stable_within_delta(self):
        assert compute_trend([_sample(43, 10)], [_sample(40, 70)], delta=5) == RiskTrend.STABLE

    def test_trend_without_history_is_stable(self):
        assert compute_trend([_sample(90, 10)], [], delta=5) == RiskTrend.STABLE


# ─── Tests: RiskScorer ────────────────────────────────────────────


def _make_scorer(store, analyzer=None, timeout_s: float = 0.05) -> RiskScorer:
    return RiskScorer(
        CONFIG, AnalyzerConfig(enabled=True, timeout_s=timeout_s), store, analyzer, clock=lambda: NOW,
    )


def _make_analyzer(verdict=None, side_effect=None) -> MagicMock:
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=verdict, side_effect=side_effect)
    return analyzer


class TestRiskScorer:
    @pytest.mark.asyncio
    async def test_uses_analyzer_when_it_answers(self):
        store = InMemoryFleetStore()
        state = _make_service()
        scorer = _make_scorer(store, _make_analyzer(AnalyzerVerdict(risk_hint=60.0, confidence=1.0)))

        result = await scorer.score(state)

        assert result.source == RiskSource.ANALYZER
        assert state.risk_score == 60
        samples = await store.risk_samples(state.id, since=NOW - timedelta(hours=1), until=NOW + timedelta(seconds=1))
        assert [s.score for s in samples] == [60]

    @pytest.mark.asyncio
    async def test_falls_back_when_analyzer_times_out(self):
        async def slow(service_id, window):
            await asyncio.sleep(5)

        store = InMemoryFleetStore()
        state = _make_service()
        state.risk_score = 77
        scorer = _make_scorer(store, _make_analyzer(side_effect=slow), timeout_s=0.05)

        result = await asyncio.wait_for(scorer.score(state), timeout=1.0)

        assert result.source == RiskSource.FALLBACK
        assert state.risk_score == result.fallback_score == 0
        assert scorer.stats["total_fallbacks"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [AnalyzerUnavailable("offline"), RuntimeError("bad json")])
    async def test_falls_back_when_analyzer_fails(self, error):
        store = InMemoryFleetStore()
        state = _make_service()
        scorer = _make_scorer(store, _make_analyzer(side_effect=error))

        result = await scorer.score(state)

        assert result.source == RiskSource.FALLBACK
        assert result.verdict is None

    @pytest.mark.asyncio
    async def test_disabled_analyzer_is_never_called(self):
        store = InMemoryFleetStore()
        analyzer = _make_analyzer(AnalyzerVerdict(risk_hint=90.0, confidence=1.0))
        scorer = RiskScorer(CONFIG, AnalyzerConfig(enabled=False), store, analyzer, clock=lambda: NOW)

        result = await scorer.score(_make_service())

        assert result.source == RiskSource.FALLBACK
        analyzer.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trend_uses_previous_window(self):
        store = InMemoryFleetStore()
        state = _make_service()
        await store.append_risk_sample(RiskSample(
            service_id=state.id, timestamp=NOW - timedelta(minutes=90), score=10, source=RiskSource.FALLBACK,
        ))
        scorer = _make_scorer(store, _make_analyzer(AnalyzerVerdict(risk_hint=70.0, confidence=1.0)))

        result = await scorer.score(state)

        assert result.risk_trend == RiskTrend.DEGRADING
        assert state.risk_trend == RiskTrend.DEGRADING

    @pytest.mark.asyncio
    async def test_recompute_stability_counts_records_and_incidents(self):
        store = InMemoryFleetStore()
        state = _make_service()
        for minutes in (30, 20):
            await store.append_health_record(HealthProbeRecord(
                service_id=state.id, timestamp=NOW - timedelta(minutes=minutes),
                status=HealthStatus.DOWN, probe_kind=ProbeKind.HTTP,
            ))
        await store.save_incident(Incident(
            service_id=state.id, title="down", severity=IncidentSeverity.CRITICAL,
            detection_source=DetectionSource.HEALTH_CHECK, created_at=NOW - timedelta(minutes=25),
        ))

        stability = await _make_scorer(store).recompute_stability(state)

        assert stability == 100 - 10 - 10 - 10
        assert state.stability_score == stability
