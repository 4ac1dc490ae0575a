"""
Unit tests for lifecycle safety checks: confirmation, risk level, scale
bounds and the restart guard.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from fleetwarden.config import LifecycleConfig
from fleetwarden.systems.fleet.store import InMemoryFleetStore, PersistenceError
from fleetwarden.systems.fleet.types import HealthStatus, ManagedServiceState, ServiceKind
from fleetwarden.systems.lifecycle.safety import (
    RestartGuard,
    ValidationRejection,
    check_confirmation,
    requires_confirmation,
    resolve_scale_target,
    risk_level,
)
from fleetwarden.systems.lifecycle.types import ActionStatus, AuditRecord, LifecycleAction

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
A = LifecycleAction


class TestConfirmation:
    @pytest.mark.parametrize("action", [A.STOP, A.RESTART, A.SCALE_DOWN])
    def test_destructive_actions_need_confirmation(self, action):
        assert requires_confirmation(action)
        with pytest.raises(ValidationRejection) as exc_info:
            check_confirmation(action, confirmed=False)
        assert exc_info.value.confirmation_required is True
        assert str(exc_info.value) == "This action requires confirmation. Please confirm to proceed."

    @pytest.mark.parametrize("action", [A.START, A.SCALE_UP])
    def test_safe_actions_pass_unconfirmed(self, action):
        check_confirmation(action, confirmed=False)

    def test_confirmed_passes(self):
        check_confirmation(A.STOP, confirmed=True)


class TestRiskLevel:
    def test_base_risk(self):
        assert risk_level(A.STOP, "DEV", HealthStatus.HEALTHY) == 70
        assert risk_level(A.SCALE_UP, "DEV", HealthStatus.HEALTHY) == 10

    def test_environment_and_health_raise_risk(self):
        assert risk_level(A.RESTART, "prod", HealthStatus.HEALTHY) == 70
        assert risk_level(A.RESTART, "STAGING", HealthStatus.CRITICAL) == 70

    def test_capped(self):
        assert risk_level(A.STOP, "PROD", HealthStatus.CRITICAL) == 100


class TestScaleTarget:
    def test_scale_up_defaults_to_one_more(self):
        assert resolve_scale_target(A.SCALE_UP, 2, None, 10) == 3

    def test_scale_up_bounds(self):
        with pytest.raises(ValidationRejection, match="exceeds maximum of 10"):
            resolve_scale_target(A.SCALE_UP, 2, 11, 10)
        with pytest.raises(ValidationRejection, match="greater than current"):
            resolve_scale_target(A.SCALE_UP, 2, 2, 10)

    def test_scale_down_defaults_to_one_less(self):
        assert resolve_scale_target(A.SCALE_DOWN, 3, None, 10) == 2

    def test_scale_down_bounds(self):
        with pytest.raises(ValidationRejection, match="below 1 instance"):
            resolve_scale_target(A.SCALE_DOWN, 3, 0, 10)
        with pytest.raises(ValidationRejection, match="less than current"):
            resolve_scale_target(A.SCALE_DOWN, 1, None, 10)


class TestRestartGuard:
    def _make(self, **overrides) -> tuple[RestartGuard, InMemoryFleetStore, ManagedServiceState]:
        store = InMemoryFleetStore()
        guard = RestartGuard(LifecycleConfig(**overrides), store)
        state = ManagedServiceState.register(name="orders-api", kind=ServiceKind.BACKEND, host="localhost", port=8080)
        return guard, store, state

    def test_cooldown_remaining(self):
        guard, _, state = self._make(restart_cooldown_s=60.0)
        assert guard.cooldown_remaining(state, NOW) == 0.0
        state.last_restart_at = NOW - timedelta(seconds=45)
        assert guard.cooldown_remaining(state, NOW) == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_cooldown_message_rounds_up(self):
        guard, _, state = self._make(restart_cooldown_s=60.0)
        state.last_restart_at = NOW - timedelta(seconds=30.5)
        with pytest.raises(ValidationRejection, match="wait 30 seconds"):
            await guard.check(state, NOW)

    @pytest.mark.asyncio
    async def test_only_real_attempts_count(self):
        guard, store, state = self._make(max_restart_attempts=2)
        for status, dry_run in (
            (ActionStatus.SUCCESS, False),
            (ActionStatus.FAILED, False),
            (ActionStatus.REJECTED, False),
            (ActionStatus.SUCCESS, True),
        ):
            await store.append_audit(AuditRecord(
                service_id=state.id, action=A.RESTART, status=status, dry_run=dry_run,
                started_at=NOW - timedelta(minutes=5),
            ))
        await store.append_audit(AuditRecord(
            service_id=state.id, action=A.RESTART, status=ActionStatus.SUCCESS,
            started_at=NOW - timedelta(hours=2),
        ))

        assert await guard.count_recent_restarts(state.id, NOW) == 2
        with pytest.raises(ValidationRejection, match="Restart limit reached"):
            await guard.check(state, NOW)

    @pytest.mark.asyncio
    async def test_unreadable_trail_raises_persistence_error_after_retry(self):
        guard, store, state = self._make()
        store.audit_records = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(PersistenceError, match="audit_records"):
            await guard.check(state, NOW)

        assert store.audit_records.await_count == 2
