"""
FleetWarden: Health Derivation

Turns one probe outcome into one HealthStatus. Rules are evaluated in order
and the first match wins:

  1. Unreachable, timed out, typed probe failure, or HTTP 5xx      → DOWN
  2. A critical sub-component (datastore, …) reports failed/down   → CRITICAL
     The service itself reports DOWN / OUT_OF_SERVICE              → DOWN
  3. Error rate, latency, cpu or memory above the critical bound   → CRITICAL
  4. A non-critical sub-component not UP, a non-2xx answer, a
     reported status other than UP, or a warning bound exceeded    → DEGRADED
  5. The result is older than the staleness window, or the
     service reports UNKNOWN                                       → UNKNOWN
  6. Otherwise                                                     → HEALTHY

Everything here is pure. Side effects live in HealthMonitor.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from fleetwarden.config import HealthThresholds
from fleetwarden.primitives.common import utc_now
from fleetwarden.systems.fleet.types import HealthStatus
from fleetwarden.systems.probe.types import ProbeFailure, ProbeOutcome, ProbeResult

_UP_STATUSES: frozenset[str] = frozenset({"UP", "HEALTHY", "OK", "PASS"})
_FAILED_STATUSES: frozenset[str] = frozenset({"DOWN", "OUT_OF_SERVICE", "FAILED", "FAIL", "ERROR"})


def derive_status(
    probe: ProbeOutcome,
    thresholds: HealthThresholds,
    critical_components: Iterable[str] = ("db", "datastore", "database"),
    staleness_s: float | None = None,
    now: datetime | None = None,
) -> HealthStatus:
    """Derive the health status for a single probe outcome."""
    # Rule 1: no usable answer
    if isinstance(probe, ProbeFailure):
        return HealthStatus.DOWN
    if not probe.reachable or probe.timed_out:
        return HealthStatus.DOWN
    if probe.http_status is not None and probe.http_status >= 500:
        return HealthStatus.DOWN

    critical_names = {c.lower() for c in critical_components}
    components = {name: status.upper() for name, status in probe.components.items()}

    # Rule 2: a critical dependency is gone
    for name, status in components.items():
        if name.lower() in critical_names and status in _FAILED_STATUSES:
            return HealthStatus.CRITICAL
    reported = probe.reported_status.upper() if probe.reported_status else None
    if reported in ("DOWN", "OUT_OF_SERVICE"):
        return HealthStatus.DOWN

    # Rule 3: critical thresholds
    if _exceeds(probe, thresholds, critical=True):
        return HealthStatus.CRITICAL

    # Rule 4: something is off but the service still answers
    for name, status in components.items():
        if name.lower() not in critical_names and status not in _UP_STATUSES:
            return HealthStatus.DEGRADED
    if probe.http_status is not None and not 200 <= probe.http_status < 300:
        return HealthStatus.DEGRADED
    if reported is not None and reported not in _UP_STATUSES and reported != "UNKNOWN":
        return HealthStatus.DEGRADED
    if _exceeds(probe, thresholds, critical=False):
        return HealthStatus.DEGRADED

    # Rule 5: nothing fresh to go on
    if staleness_s is not None:
        age_s = ((now or utc_now()) - probe.completed_at).total_seconds()
        if age_s > staleness_s:
            return HealthStatus.UNKNOWN
    if reported == "UNKNOWN":
        return HealthStatus.UNKNOWN

    return HealthStatus.HEALTHY


def is_stale(last_check: datetime | None, staleness_s: float, now: datetime) -> bool:
    """True when no probe has completed within the staleness window."""
    if last_check is None:
        return True
    return (now - last_check).total_seconds() > staleness_s


def _exceeds(probe: ProbeResult, t: HealthThresholds, *, critical: bool) -> bool:
    checks = (
        (probe.error_rate, t.critical_error_rate if critical else t.warning_error_rate),
        (probe.response_time_ms, t.critical_latency_ms if critical else t.warning_latency_ms),
        (probe.cpu_usage, t.critical_cpu if critical else t.warning_cpu),
        (probe.memory_usage, t.critical_memory if critical else t.warning_memory),
    )
    return any(value is not None and value > bound for value, bound in checks)
