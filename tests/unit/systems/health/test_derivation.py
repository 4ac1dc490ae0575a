"""
Unit tests for health derivation rules.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleetwarden.config import HealthThresholds
from fleetwarden.systems.fleet.types import HealthStatus, ProbeKind
from fleetwarden.systems.health.derivation import derive_status, is_stale
from fleetwarden.systems.probe.types import ProbeFailure, ProbeFailureKind, ProbeResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
THRESHOLDS = HealthThresholds()


def _make_result(**kwargs) -> ProbeResult:
    defaults = {
        "probe_kind": ProbeKind.ACTUATOR,
        "completed_at": NOW,
        "reachable": True,
        "http_status": 200,
        "response_time_ms": 50.0,
        "reported_status": "UP",
    }
    return ProbeResult(**{**defaults, **kwargs})


def _derive(probe, **kwargs) -> HealthStatus:
    return derive_status(probe, THRESHOLDS, now=NOW, **kwargs)


class TestDown:
    @pytest.mark.parametrize("latency", [None, 1.0, 99_999.0])
    def test_unreachable_is_always_down(self, latency):
        probe = _make_result(reachable=False, response_time_ms=latency, components={"db": "DOWN"})
        assert _derive(probe) == HealthStatus.DOWN

    def test_timed_out_is_down(self):
        assert _derive(_make_result(timed_out=True)) == HealthStatus.DOWN

    @pytest.mark.parametrize("kind", list(ProbeFailureKind))
    def test_every_probe_failure_is_down(self, kind):
        assert _derive(ProbeFailure(kind=kind, message="x")) == HealthStatus.DOWN

    def test_server_error_is_down(self):
        assert _derive(_make_result(http_status=503)) == HealthStatus.DOWN

    def test_reported_out_of_service_is_down(self):
        assert _derive(_make_result(reported_status="OUT_OF_SERVICE")) == HealthStatus.DOWN


class TestCritical:
    @pytest.mark.parametrize("name", ["db", "datastore", "Database"])
    @pytest.mark.parametrize("latency", [1.0, 100.0, 60_000.0])
    def test_failed_critical_component_is_critical_regardless_of_latency(self, name, latency):
        probe = _make_result(components={name: "DOWN", "diskSpace": "UP"}, response_time_ms=latency)
        assert _derive(probe) == HealthStatus.CRITICAL

    def test_http_200_with_datastore_down(self):
        probe = _make_result(http_status=200, reported_status="DOWN", components={"datastore": "DOWN"})
        assert _derive(probe) == HealthStatus.CRITICAL

    def test_critical_error_rate(self):
        assert _derive(_make_result(error_rate=12.0)) == HealthStatus.CRITICAL

    def test_critical_latency(self):
        assert _derive(_make_result(response_time_ms=20_000.0)) == HealthStatus.CRITICAL

    def test_custom_critical_components(self):
        probe = _make_result(components={"broker": "DOWN"})
        assert _derive(probe, critical_components=["broker"]) == HealthStatus.CRITICAL


class TestDegraded:
    def test_non_critical_component_down(self):
        assert _derive(_make_result(components={"diskSpace": "DOWN"})) == HealthStatus.DEGRADED

    def test_non_2xx_response(self):
        assert _derive(_make_result(http_status=404, reported_status=None)) == HealthStatus.DEGRADED

    def test_unexpected_reported_status(self):
        assert _derive(_make_result(reported_status="WARMING_UP")) == HealthStatus.DEGRADED

    def test_warning_cpu(self):
        assert _derive(_make_result(cpu_usage=85.0)) == HealthStatus.DEGRADED


class TestUnknownAndHealthy:
    def test_stale_result_is_unknown(self):
        probe = _make_result(completed_at=NOW - timedelta(minutes=10))
        assert _derive(probe, staleness_s=120) == HealthStatus.UNKNOWN

    def test_reported_unknown(self):
        assert _derive(_make_result(reported_status="UNKNOWN")) == HealthStatus.UNKNOWN

    def test_clean_result_is_healthy(self):
        probe = _make_result(components={"db": "UP", "diskSpace": "UP"}, cpu_usage=10.0, error_rate=0.1)
        assert _derive(probe, staleness_s=120) == HealthStatus.HEALTHY

    def test_plain_http_200_is_healthy(self):
        probe = _make_result(probe_kind=ProbeKind.HTTP, reported_status=None)
        assert _derive(probe) == HealthStatus.HEALTHY


class TestIsStale:
    def test_never_checked_is_stale(self):
        assert is_stale(None, 120, NOW) is True

    def test_within_window(self):
        assert is_stale(NOW - timedelta(seconds=60), 120, NOW) is False

    def test_outside_window(self):
        assert is_stale(NOW - timedelta(seconds=121), 120, NOW) is True
