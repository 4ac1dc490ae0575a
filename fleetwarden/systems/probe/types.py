"""
FleetWarden: Probe Type Definitions

The result contract between the probe client and health derivation. A
probe either completes (ProbeResult, whatever the service said) or fails
outright (ProbeFailure). Neither is an exception.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from fleetwarden.primitives.common import FrozenRecord, utc_now
from fleetwarden.systems.fleet.types import ProbeKind


class ProbeFailureKind(enum.StrEnum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    BAD_STATUS = "bad_status"


class ProbeResult(FrozenRecord):
    """Raw signals from one completed probe."""

    probe_kind: ProbeKind
    completed_at: datetime = Field(default_factory=utc_now)
    reachable: bool = True
    timed_out: bool = False
    http_status: int | None = None
    response_time_ms: float | None = None
    # Overall status string reported by the service, e.g. "UP", "DOWN"
    reported_status: str | None = None
    # Sub-component name → reported status, e.g. {"db": "UP", "diskSpace": "UP"}
    components: dict[str, str] = Field(default_factory=dict)
    error_rate: float | None = None
    cpu_usage: float | None = None
    memory_usage: float | None = None
    error_message: str | None = None
    error_type: str | None = None


class ProbeFailure(FrozenRecord):
    """A probe that never produced a usable answer."""

    kind: ProbeFailureKind
    message: str
    probe_kind: ProbeKind = ProbeKind.HTTP
    completed_at: datetime = Field(default_factory=utc_now)
    http_status: int | None = None
    response_time_ms: float | None = None
    error_type: str | None = None

    @classmethod
    def timeout(cls, probe_kind: ProbeKind = ProbeKind.HTTP, elapsed_ms: float | None = None) -> ProbeFailure:
        return cls(
            kind=ProbeFailureKind.TIMEOUT,
            message="timeout",
            probe_kind=probe_kind,
            response_time_ms=elapsed_ms,
            error_type="TimeoutError",
        )

    def to_result(self) -> ProbeResult:
        """Normalise into a ProbeResult so derivation has a single input shape."""
        return ProbeResult(
            probe_kind=self.probe_kind,
            completed_at=self.completed_at,
            reachable=self.kind != ProbeFailureKind.UNREACHABLE and self.kind != ProbeFailureKind.TIMEOUT,
            timed_out=self.kind == ProbeFailureKind.TIMEOUT,
            http_status=self.http_status,
            response_time_ms=self.response_time_ms,
            error_message=self.message,
            error_type=self.error_type or self.kind.value,
        )


ProbeOutcome = ProbeResult | ProbeFailure
