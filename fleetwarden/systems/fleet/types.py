"""
FleetWarden: Fleet Type Definitions

The registry's view of a managed service and the append-only records the
engine writes about it: health probe records, metrics snapshots, and risk
samples.

ManagedServiceState is owned by the engine. Only health derivation, scoring
and the lifecycle controller mutate it.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from fleetwarden.config import HealthThresholds, ServiceRegistration
from fleetwarden.primitives.common import (
    FleetBaseModel,
    FrozenRecord,
    new_id,
    utc_now,
)


# ─── Enums ────────────────────────────────────────────────────────


class ServiceKind(enum.StrEnum):
    BACKEND = "backend"
    FRONTEND = "frontend"


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    DOWN = "down"
    UNKNOWN = "unknown"

    @property
    def is_unhealthy(self) -> bool:
        return self in (HealthStatus.DEGRADED, HealthStatus.CRITICAL, HealthStatus.DOWN)


class RiskTrend(enum.StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class ProbeKind(enum.StrEnum):
    ACTUATOR = "actuator"  # Structured /health document with components
    HTTP = "http"  # Plain GET against the service's health URL
    PING = "ping"  # Fallback GET against the base URL


class RiskSource(enum.StrEnum):
    ANALYZER = "analyzer"  # Blended with an analyzer verdict
    FALLBACK = "fallback"  # Deterministic slope/level model only


# ─── Service ──────────────────────────────────────────────────────


class ServiceDescriptor(FleetBaseModel):
    """How to reach a service. Consumed by the probe client and executor."""

    host: str
    port: int = Field(ge=1, le=65_535)
    base_url: str | None = None
    health_path: str | None = None
    metrics_path: str | None = None
    actuator_path: str | None = None
    environment: str = "DEV"  # DEV | STAGING | PROD
    # Per-service override of the global health thresholds
    thresholds: HealthThresholds | None = None

    @property
    def full_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"http://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        if self.health_path:
            return self.full_url + self.health_path
        return self.full_url

    def actuator_url(self, default_path: str = "/actuator") -> str:
        return self.full_url + (self.actuator_path or default_path)


class ManagedServiceState(FleetBaseModel):
    """
    One registered service, as the engine sees it.

    Never deleted by the engine. Registration and removal belong to the
    external registry; the engine only reads and updates.
    """

    id: str = Field(default_factory=new_id)
    name: str
    descriptor: ServiceDescriptor
    kind: ServiceKind
    enabled: bool = True
    is_running: bool = False
    instance_count: int = Field(1, ge=1)

    health_status: HealthStatus = HealthStatus.UNKNOWN

    # ── Resource snapshot (latest observation) ──
    cpu_usage: float | None = None
    memory_usage: float | None = None
    response_time_ms: float | None = None
    error_rate: float | None = None

    # ── Scores ──
    stability_score: int = Field(100, ge=0, le=100)
    risk_score: int = Field(0, ge=0, le=100)
    risk_trend: RiskTrend = RiskTrend.STABLE

    # ── Timeline ──
    created_at: datetime = Field(default_factory=utc_now)
    last_health_check: datetime | None = None
    last_metrics_collection: datetime | None = None
    last_restart_at: datetime | None = None

    @model_validator(mode="after")
    def _name_present(self) -> ManagedServiceState:
        if not self.name.strip():
            raise ValueError("service name must not be empty")
        return self

    @classmethod
    def register(
        cls,
        name: str,
        kind: ServiceKind | str,
        host: str,
        port: int,
        **kwargs: Any,
    ) -> ManagedServiceState:
        """
        Build a fresh service with every default populated.

        Descriptor fields (base_url, health_path, environment, thresholds, …)
        may be passed as keyword arguments alongside state fields.
        """
        descriptor_fields = set(ServiceDescriptor.model_fields) - {"host", "port"}
        descriptor_kwargs = {k: kwargs.pop(k) for k in list(kwargs) if k in descriptor_fields}
        descriptor = ServiceDescriptor(host=host, port=port, **descriptor_kwargs)
        return cls(name=name, kind=ServiceKind(kind), descriptor=descriptor, **kwargs)

    @classmethod
    def from_registration(cls, reg: ServiceRegistration) -> ManagedServiceState:
        return cls.register(
            name=reg.name,
            kind=reg.kind,
            host=reg.host,
            port=reg.port,
            base_url=reg.base_url,
            health_path=reg.health_path,
            metrics_path=reg.metrics_path,
            actuator_path=reg.actuator_path,
            environment=reg.environment,
            thresholds=reg.thresholds,
            enabled=reg.enabled,
            instance_count=reg.instance_count,
        )


# ─── Append-only Records ──────────────────────────────────────────


class HealthProbeRecord(FrozenRecord):
    """One probe execution and the status derived from it."""

    id: str = Field(default_factory=new_id)
    service_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: HealthStatus
    probe_kind: ProbeKind
    response_time_ms: float | None = None
    reachable: bool = True
    http_status: int | None = None
    reported_status: str | None = None
    components: dict[str, str] = Field(default_factory=dict)
    error_message: str | None = None
    error_type: str | None = None


class MetricsSnapshot(FrozenRecord):
    """Periodic resource/usage counters for one service."""

    id: str = Field(default_factory=new_id)
    service_id: str
    timestamp: datetime = Field(default_factory=utc_now)

    cpu_usage: float | None = None  # percent
    system_cpu_usage: float | None = None  # percent
    memory_usage: float | None = None  # percent of max
    memory_used_bytes: float | None = None
    memory_max_bytes: float | None = None
    error_rate: float | None = None  # percent of requests
    latency_avg_ms: float | None = None
    latency_p95_ms: float | None = None
    latency_p99_ms: float | None = None
    requests_total: int | None = None
    errors_total: int | None = None
    thread_count: int | None = None
    gc_pause_count: int | None = None
    gc_pause_time_s: float | None = None
    uptime_s: float | None = None
    extra: dict[str, float] = Field(default_factory=dict)


class RiskSample(FrozenRecord):
    """A computed risk score. The history feeds trend detection."""

    service_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    score: int = Field(ge=0, le=100)
    source: RiskSource
