"""
Unit tests for the fleet registry: ManagedServiceState construction,
InMemoryFleetStore collections, and persist_with_retry.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from fleetwarden.config import ServiceRegistration
from fleetwarden.systems.fleet.store import (
    InMemoryFleetStore,
    PersistenceError,
    persist_with_retry,
)
from fleetwarden.systems.fleet.types import (
    HealthProbeRecord,
    HealthStatus,
    ManagedServiceState,
    MetricsSnapshot,
    ProbeKind,
    RiskTrend,
    ServiceKind,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_service(name: str = "orders-api", kind: ServiceKind = ServiceKind.BACKEND, **kwargs) -> ManagedServiceState:
    return ManagedServiceState.register(name=name, kind=kind, host="localhost", port=8080, **kwargs)


def _make_record(service_id: str, at: datetime, status: HealthStatus = HealthStatus.HEALTHY) -> HealthProbeRecord:
    return HealthProbeRecord(service_id=service_id, timestamp=at, status=status, probe_kind=ProbeKind.HTTP)


# ─── Tests: ManagedServiceState ───────────────────────────────────


class TestManagedServiceState:
    def test_register_populates_defaults(self):
        state = _make_service()
        assert state.health_status == HealthStatus.UNKNOWN
        assert state.stability_score == 100
        assert state.risk_score == 0
        assert state.risk_trend == RiskTrend.STABLE
        assert state.instance_count == 1
        assert state.enabled is True
        assert state.id

    def test_register_splits_descriptor_fields(self):
        state = _make_service(base_url="http://orders:9000/", health_path="/healthz", environment="PROD")
        assert state.descriptor.full_url == "http://orders:9000"
        assert state.descriptor.health_url == "http://orders:9000/healthz"
        assert state.descriptor.environment == "PROD"

    def test_actuator_url_defaults(self):
        state = _make_service()
        assert state.descriptor.actuator_url() == "http://localhost:8080/actuator"

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            _make_service(name="   ")

    def test_scores_are_bounded(self):
        with pytest.raises(ValidationError):
            _make_service(stability_score=101)

    def test_from_registration(self):
        reg = ServiceRegistration(name="web", kind="frontend", host="web.local", port=3000, instance_count=2)
        state = ManagedServiceState.from_registration(reg)
        assert state.kind == ServiceKind.FRONTEND
        assert state.instance_count == 2
        assert state.descriptor.host == "web.local"


# ─── Tests: InMemoryFleetStore ────────────────────────────────────


class TestInMemoryFleetStore:
    @pytest.mark.asyncio
    async def test_list_filters_by_kind_and_enabled(self):
        store = InMemoryFleetStore()
        await store.save_service(_make_service("api"))
        await store.save_service(_make_service("web", kind=ServiceKind.FRONTEND))
        await store.save_service(_make_service("old", enabled=False))

        backends = await store.list_services(kind=ServiceKind.BACKEND)
        assert [s.name for s in backends] == ["api"]
        everything = await store.list_services(enabled_only=False)
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_health_records_are_keyed_by_service(self):
        store = InMemoryFleetStore()
        await store.append_health_record(_make_record("a", T0))
        await store.append_health_record(_make_record("b", T0))
        records = await store.health_records("a", since=T0 - timedelta(minutes=1))
        assert len(records) == 1
        assert records[0].service_id == "a"

    @pytest.mark.asyncio
    async def test_time_window_is_half_open(self):
        store = InMemoryFleetStore()
        for minutes in range(5):
            await store.append_health_record(_make_record("a", T0 + timedelta(minutes=minutes)))
        records = await store.health_records(
            "a", since=T0 + timedelta(minutes=1), until=T0 + timedelta(minutes=3),
        )
        assert [r.timestamp for r in records] == [T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)]

    @pytest.mark.asyncio
    async def test_delete_metrics_before_is_idempotent(self):
        store = InMemoryFleetStore()
        await store.append_metrics(MetricsSnapshot(service_id="a", timestamp=T0 - timedelta(days=10)))
        await store.append_metrics(MetricsSnapshot(service_id="a", timestamp=T0))

        assert await store.delete_metrics_before(T0 - timedelta(days=7)) == 1
        assert await store.delete_metrics_before(T0 - timedelta(days=7)) == 0
        assert len(await store.metrics("a", since=T0 - timedelta(days=30))) == 1


# ─── Tests: persist_with_retry ────────────────────────────────────


class TestPersistWithRetry:
    @pytest.mark.asyncio
    async def test_returns_on_first_success(self):
        op = AsyncMock(return_value="ok")
        assert await persist_with_retry(op, what="test") == "ok"
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self):
        op = AsyncMock(side_effect=[RuntimeError("db blip"), "ok"])
        assert await persist_with_retry(op, attempts=2, what="test") == "ok"
        assert op.await_count == 2

    @pytest.mark.asyncio
    async def test_raises_persistence_error_after_last_attempt(self):
        op = AsyncMock(side_effect=RuntimeError("db down"))
        with pytest.raises(PersistenceError, match="db down"):
            await persist_with_retry(op, attempts=2, what="save_service", service_id="x")
        assert op.await_count == 2
