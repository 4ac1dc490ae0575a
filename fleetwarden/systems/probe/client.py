"""
FleetWarden: Probe Client

Executes one bounded health or metrics probe against one service instance.

BACKEND services expose an actuator-style surface:
  GET {actuator}/health          → {"status": "UP", "components": {"db": {"status": "UP"}}}
  GET {actuator}/metrics/{name}  → {"measurements": [{"statistic": "VALUE", "value": 0.12}]}
When the actuator cannot be reached the client falls back to a plain GET
ping of the base URL. FRONTEND services get a plain GET of their health URL.

The client never raises for an unhealthy or unreachable service. Those
come back as ProbeResult or ProbeFailure values.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from fleetwarden.systems.fleet.types import ManagedServiceState, ProbeKind, ServiceKind
from fleetwarden.systems.probe.types import (
    ProbeFailure,
    ProbeFailureKind,
    ProbeOutcome,
    ProbeResult,
)

if TYPE_CHECKING:
    from fleetwarden.config import ProbeConfig

logger = structlog.get_logger()


class ProbeClient(ABC):
    """Abstract interface for probing a managed service."""

    @abstractmethod
    async def probe(self, service: ManagedServiceState, timeout: float) -> ProbeOutcome:
        """Run one health probe. Must honour the timeout."""
        ...

    @abstractmethod
    async def collect_metrics(self, service: ManagedServiceState, timeout: float) -> dict[str, float]:
        """Collect one round of numeric counters. Missing metrics are omitted."""
        ...

    async def close(self) -> None:
        """Clean up resources."""


class HttpProbeClient(ProbeClient):
    """Probe client over httpx for actuator-style backends and plain HTTP frontends."""

    def __init__(self, config: ProbeConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            timeout=config.timeout_s,
            headers={"User-Agent": config.user_agent},
            follow_redirects=True,
        )
        self._logger = logger.bind(system="probe", component="http_probe_client")

    async def close(self) -> None:
        await self._client.aclose()

    # ─── Health ──────────────────────────────────────────────────────

    async def probe(self, service: ManagedServiceState, timeout: float) -> ProbeOutcome:
        if service.kind == ServiceKind.BACKEND:
            return await self._probe_actuator(service, timeout)
        return await self._get(service.descriptor.health_url, ProbeKind.HTTP, timeout)

    async def _probe_actuator(self, service: ManagedServiceState, timeout: float) -> ProbeOutcome:
        url = service.descriptor.actuator_url(self._config.default_actuator_path) + "/health"
        t0 = time.monotonic()
        try:
            response = await self._client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            return ProbeFailure.timeout(ProbeKind.ACTUATOR, _elapsed_ms(t0))
        except httpx.HTTPError as exc:
            self._logger.debug(
                "actuator_unreachable_trying_ping",
                service=service.name,
                error=str(exc),
            )
            return await self._get(
                service.descriptor.full_url,
                ProbeKind.PING,
                min(timeout, self._config.ping_timeout_s),
            )

        elapsed = _elapsed_ms(t0)
        reported, components = _parse_health_document(response)
        return ProbeResult(
            probe_kind=ProbeKind.ACTUATOR,
            reachable=True,
            http_status=response.status_code,
            response_time_ms=elapsed,
            reported_status=reported,
            components=components,
            error_message=None if response.is_success else f"HTTP {response.status_code}",
        )

    async def _get(self, url: str, kind: ProbeKind, timeout: float) -> ProbeOutcome:
        t0 = time.monotonic()
        try:
            response = await self._client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            return ProbeFailure.timeout(kind, _elapsed_ms(t0))
        except httpx.HTTPError as exc:
            return ProbeFailure(
                kind=ProbeFailureKind.UNREACHABLE,
                message=f"Service unreachable: {exc}",
                probe_kind=kind,
                response_time_ms=_elapsed_ms(t0),
                error_type=type(exc).__name__,
            )

        if response.status_code >= 500:
            return ProbeFailure(
                kind=ProbeFailureKind.BAD_STATUS,
                message=f"Server error: HTTP {response.status_code}",
                probe_kind=kind,
                http_status=response.status_code,
                response_time_ms=_elapsed_ms(t0),
            )
        return ProbeResult(
            probe_kind=kind,
            reachable=True,
            http_status=response.status_code,
            response_time_ms=_elapsed_ms(t0),
            error_message=None if response.is_success else f"HTTP {response.status_code}",
        )

    # ─── Metrics ─────────────────────────────────────────────────────

    async def collect_metrics(self, service: ManagedServiceState, timeout: float) -> dict[str, float]:
        if service.kind == ServiceKind.FRONTEND:
            return await self._collect_frontend(service, timeout)
        return await self._collect_actuator(service, timeout)

    async def _collect_actuator(self, service: ManagedServiceState, timeout: float) -> dict[str, float]:
        base = service.descriptor.actuator_url(self._config.default_actuator_path) + "/metrics"
        per_call = min(timeout, self._config.metric_timeout_s)

        queries: dict[str, tuple[str, str]] = {
            "cpu_fraction": ("/process.cpu.usage", "VALUE"),
            "system_cpu_fraction": ("/system.cpu.usage", "VALUE"),
            "memory_used_bytes": ("/jvm.memory.used?tag=area:heap", "VALUE"),
            "memory_max_bytes": ("/jvm.memory.max?tag=area:heap", "VALUE"),
            "thread_count": ("/jvm.threads.live", "VALUE"),
            "gc_pause_count": ("/jvm.gc.pause", "COUNT"),
            "gc_pause_time_s": ("/jvm.gc.pause", "TOTAL_TIME"),
            "uptime_s": ("/process.uptime", "VALUE"),
            "requests_total": ("/http.server.requests", "COUNT"),
            "requests_time_s": ("/http.server.requests", "TOTAL_TIME"),
            "errors_total": ("/http.server.requests?tag=outcome:SERVER_ERROR", "COUNT"),
        }
        names = list(queries)
        values = await asyncio.wait_for(
            asyncio.gather(*(
                self._metric_value(base + queries[n][0], queries[n][1], per_call) for n in names
            )),
            timeout=timeout,
        )
        raw = {n: v for n, v in zip(names, values, strict=True) if v is not None}
        return _normalise_actuator_metrics(raw)

    async def _collect_frontend(self, service: ManagedServiceState, timeout: float) -> dict[str, float]:
        t0 = time.monotonic()
        try:
            response = await self._client.get(service.descriptor.full_url, timeout=timeout)
        except httpx.HTTPError as exc:
            self._logger.warning("frontend_metrics_failed", service=service.name, error=str(exc))
            return {"assets_available": 0.0}
        return {
            "latency_avg_ms": _elapsed_ms(t0),
            "page_bytes": float(len(response.content)),
            "assets_available": 1.0 if response.is_success else 0.0,
        }

    async def _metric_value(self, url: str, statistic: str, timeout: float) -> float | None:
        try:
            response = await self._client.get(url, timeout=timeout)
            response.raise_for_status()
            body: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.debug("metric_fetch_failed", url=url, error=str(exc))
            return None
        measurements = body.get("measurements") if isinstance(body, dict) else None
        if not isinstance(measurements, list):
            return None
        for measurement in measurements:
            if isinstance(measurement, dict) and measurement.get("statistic") == statistic:
                value = measurement.get("value")
                return float(value) if isinstance(value, (int, float)) else None
        return None


def _elapsed_ms(t0: float) -> float:
    return (time.monotonic() - t0) * 1000.0


def _parse_health_document(response: httpx.Response) -> tuple[str | None, dict[str, str]]:
    """Pull the overall status and per-component statuses out of a health body."""
    try:
        body: Any = response.json()
    except ValueError:
        return None, {}
    if not isinstance(body, dict):
        return None, {}

    reported = body.get("status")
    components: dict[str, str] = {}
    raw_components = body.get("components") or body.get("details") or {}
    if isinstance(raw_components, dict):
        for name, detail in raw_components.items():
            if isinstance(detail, dict) and isinstance(detail.get("status"), str):
                components[name] = detail["status"]
            elif isinstance(detail, str):
                components[name] = detail
    return (reported if isinstance(reported, str) else None), components


def _normalise_actuator_metrics(raw: dict[str, float]) -> dict[str, float]:
    """Convert actuator units into snapshot units (percent, ms)."""
    out: dict[str, float] = {}
    if "cpu_fraction" in raw:
        out["cpu_usage"] = raw["cpu_fraction"] * 100.0
    if "system_cpu_fraction" in raw:
        out["system_cpu_usage"] = raw["system_cpu_fraction"] * 100.0
    for key in ("memory_used_bytes", "memory_max_bytes", "thread_count",
                "gc_pause_count", "gc_pause_time_s", "uptime_s",
                "requests_total", "errors_total"):
        if key in raw:
            out[key] = raw[key]

    used, maximum = raw.get("memory_used_bytes"), raw.get("memory_max_bytes")
    if used is not None and maximum:
        out["memory_usage"] = used / maximum * 100.0

    count = raw.get("requests_total")
    if count:
        if "requests_time_s" in raw:
            out["latency_avg_ms"] = raw["requests_time_s"] / count * 1000.0
        if "errors_total" in raw:
            out["error_rate"] = raw["errors_total"] / count * 100.0
    return out
