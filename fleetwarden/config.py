"""
FleetWarden: Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults and the seed service registry)
2. Environment variables (overrides)

The resulting object is treated as immutable and handed to each component
at construction time.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class MonitoringConfig(BaseModel):
    # Tick intervals (seconds)
    health_check_interval_s: float = 10.0
    frontend_check_interval_s: float = 30.0
    metrics_poll_interval_s: float = 15.0
    anomaly_interval_s: float = 60.0
    stability_interval_s: float = 300.0
    retention_interval_s: float = 86_400.0
    status_broadcast_interval_s: float = 5.0
    # Bounded worker pool per tick
    max_concurrency: int = Field(8, ge=1)
    # Each per-service unit of work gets its own deadline
    unit_timeout_s: float = 15.0
    # First try plus retries for a persist step within one unit
    persist_attempts: int = Field(2, ge=1)


class HealthThresholds(BaseModel):
    """Warning/critical bounds for derived health. Rates and usage in percent."""

    warning_error_rate: float = 5.0
    critical_error_rate: float = 10.0
    warning_latency_ms: float = 5_000.0
    critical_latency_ms: float = 15_000.0
    warning_cpu: float = 80.0
    critical_cpu: float = 95.0
    warning_memory: float = 85.0
    critical_memory: float = 95.0

    @model_validator(mode="after")
    def _ordered(self) -> HealthThresholds:
        pairs = (
            ("error_rate", self.warning_error_rate, self.critical_error_rate),
            ("latency_ms", self.warning_latency_ms, self.critical_latency_ms),
            ("cpu", self.warning_cpu, self.critical_cpu),
            ("memory", self.warning_memory, self.critical_memory),
        )
        for name, warning, critical in pairs:
            if warning > critical:
                raise ValueError(f"warning_{name} must not exceed critical_{name}")
        return self


class HealthConfig(BaseModel):
    thresholds: HealthThresholds = Field(default_factory=HealthThresholds)
    # A probe result older than this no longer says anything about the service
    staleness_s: float = 120.0
    # Sub-components whose failure makes the whole service CRITICAL
    critical_components: list[str] = Field(
        default_factory=lambda: ["db", "datastore", "database"]
    )


class ProbeConfig(BaseModel):
    timeout_s: float = 10.0
    ping_timeout_s: float = 5.0
    metric_timeout_s: float = 5.0
    default_actuator_path: str = "/actuator"
    user_agent: str = "fleetwarden-probe/0.1"


class MetricsConfig(BaseModel):
    retention_days: int = Field(7, ge=1)
    short_window_s: float = 3_600.0
    long_window_s: float = 86_400.0


class ScoringConfig(BaseModel):
    # Stability
    stability_window_s: float = 86_400.0
    degraded_penalty: float = 2.0
    critical_penalty: float = 5.0
    down_penalty: float = 10.0
    incident_penalty: float = 10.0
    healthy_streak_length: int = Field(10, ge=1)
    healthy_streak_bonus: float = 1.0
    # Risk
    risk_window_s: float = 3_600.0
    trend_window_s: float = 3_600.0
    trend_delta: float = 5.0
    # Deterministic fallback: share of slope vs level in the final score
    slope_weight: float = Field(0.6, ge=0.0, le=1.0)
    # Slope reference values: this much increase per hour maps to full risk
    error_rate_slope_ref: float = 5.0
    latency_slope_ref_ms: float = 500.0
    cpu_slope_ref: float = 20.0


class AnalyzerConfig(BaseModel):
    enabled: bool = True
    timeout_s: float = 5.0


class LifecycleConfig(BaseModel):
    restart_cooldown_s: float = 60.0
    max_restart_attempts: int = Field(3, ge=1)
    restart_window_s: float = 3_600.0
    executor_timeout_s: float = 120.0
    max_instances: int = Field(10, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


class ServiceRegistration(BaseModel):
    """A service to seed into the registry at boot."""

    name: str
    kind: str = "backend"  # "backend" | "frontend"
    host: str
    port: int
    base_url: str | None = None
    health_path: str | None = None
    metrics_path: str | None = None
    actuator_path: str | None = None
    environment: str = "DEV"
    enabled: bool = True
    instance_count: int = 1
    thresholds: HealthThresholds | None = None


# ─── Root Configuration ──────────────────────────────────────────


class FleetWardenConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETWARDEN_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    instance_id: str = "fleetwarden-default"

    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    services: list[ServiceRegistration] = Field(default_factory=list)


def load_config(config_path: str | Path | None = None) -> FleetWardenConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    if instance_id := os.environ.get("FLEETWARDEN_INSTANCE_ID"):
        raw["instance_id"] = instance_id
    if log_level := os.environ.get("FLEETWARDEN_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
    if log_format := os.environ.get("FLEETWARDEN_LOG_FORMAT"):
        raw.setdefault("logging", {})["format"] = log_format
    if cooldown := os.environ.get("FLEETWARDEN_RESTART_COOLDOWN_S"):
        raw.setdefault("lifecycle", {})["restart_cooldown_s"] = float(cooldown)
    if analyzer_enabled := os.environ.get("FLEETWARDEN_ANALYZER_ENABLED"):
        raw.setdefault("analyzer", {})["enabled"] = analyzer_enabled.lower() in ("true", "1", "yes")

    return FleetWardenConfig(**raw)
