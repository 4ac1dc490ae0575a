"""
Unit tests for LifecycleController: validation ordering, cooldown and cap,
executor failures, dry runs, scaling and the audit trail.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetwarden.config import LifecycleConfig
from fleetwarden.systems.events.event_bus import EventBus
from fleetwarden.systems.events.types import DomainEventType
from fleetwarden.systems.fleet.store import InMemoryFleetStore
from fleetwarden.systems.fleet.types import ManagedServiceState, ServiceKind
from fleetwarden.systems.lifecycle.controller import LifecycleController
from fleetwarden.systems.lifecycle.types import (
    ActionRequest,
    ActionStatus,
    ExecutionOutcome,
    LifecycleAction,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
A = LifecycleAction
CONFIRMED = ActionRequest(confirmed=True, reason="deploy", principal="alice")


class _Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _make_executor(outcome: ExecutionOutcome | None = None, side_effect=None) -> MagicMock:
    executor = MagicMock()
    executor.perform = AsyncMock(
        return_value=outcome or ExecutionOutcome(success=True, message="ok"),
        side_effect=side_effect,
    )
    return executor


async def _make_controller(
    executor=None,
    store=None,
    clock=None,
    bus=None,
    **config,
) -> tuple[LifecycleController, InMemoryFleetStore, ManagedServiceState]:
    store = store or InMemoryFleetStore()
    state = ManagedServiceState.register(
        name="orders-api", kind=ServiceKind.BACKEND, host="localhost", port=8080,
        is_running=True, instance_count=2, environment="PROD",
    )
    await store.save_service(state)
    controller = LifecycleController(
        LifecycleConfig(**config),
        store,
        executor or _make_executor(),
        event_bus=bus,
        clock=clock or _Clock(),
    )
    return controller, store, state


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [A.STOP, A.RESTART, A.SCALE_DOWN])
    async def test_unconfirmed_destructive_action_never_reaches_executor(self, action):
        executor = _make_executor()
        controller, _, state = await _make_controller(executor)

        record = await controller.execute(state.id, action, ActionRequest())

        assert record.status == ActionStatus.REJECTED
        assert record.confirmation_required is True
        executor.perform.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_service(self):
        executor = _make_executor()
        controller, _, _ = await _make_controller(executor)

        record = await controller.execute("missing", A.START)

        assert record.status == ActionStatus.REJECTED
        assert record.message == "Service not found: missing"
        executor.perform.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_service_leaves_no_lock_behind(self):
        controller, _, _ = await _make_controller()

        for _ in range(3):
            await controller.execute("missing", A.START)

        assert "missing" not in controller._locks
        assert len(await controller.audit.history("missing")) == 3

    @pytest.mark.asyncio
    async def test_unlisted_action_string_raises_before_audit(self):
        executor = _make_executor()
        controller, _, state = await _make_controller(executor)

        with pytest.raises(ValueError):
            await controller.execute(state.id, "reboot", CONFIRMED)

        record = await controller.execute(state.id, "start")

        assert record.status == ActionStatus.SUCCESS
        assert controller.audit.stats["records_written"] == 1
        executor.perform.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_service(self):
        controller, store, state = await _make_controller()
        state.enabled = False
        await store.save_service(state)

        record = await controller.execute(state.id, A.RESTART, CONFIRMED)

        assert record.status == ActionStatus.REJECTED
        assert record.message == "Service is disabled and cannot be controlled"

    @pytest.mark.asyncio
    async def test_scale_above_max_rejected(self):
        controller, _, state = await _make_controller(max_instances=3)
        record = await controller.execute(state.id, A.SCALE_UP, ActionRequest(target_instances=4))
        assert record.status == ActionStatus.REJECTED
        assert state.instance_count == 2

    @pytest.mark.asyncio
    async def test_risk_level_recorded(self):
        controller, _, state = await _make_controller()
        record = await controller.execute(state.id, A.STOP, CONFIRMED)
        assert record.risk_level == 90


class TestRestartSafety:
    @pytest.mark.asyncio
    async def test_cooldown_window(self):
        clock = _Clock()
        executor = _make_executor()
        controller, _, state = await _make_controller(executor, clock=clock, restart_cooldown_s=60.0)

        first = await controller.execute(state.id, A.RESTART, CONFIRMED)
        clock.advance(30)
        second = await controller.execute(state.id, A.RESTART, CONFIRMED)
        clock.advance(31)
        third = await controller.execute(state.id, A.RESTART, CONFIRMED)

        assert first.status == ActionStatus.SUCCESS
        assert second.status == ActionStatus.REJECTED
        assert "cooldown" in second.message
        assert third.status == ActionStatus.SUCCESS
        assert executor.perform.await_count == 2

    @pytest.mark.asyncio
    async def test_attempt_cap(self):
        executor = _make_executor()
        controller, _, state = await _make_controller(executor, restart_cooldown_s=0.0, max_restart_attempts=2)

        results = [await controller.execute(state.id, A.RESTART, CONFIRMED) for _ in range(3)]

        assert [r.status for r in results] == [ActionStatus.SUCCESS, ActionStatus.SUCCESS, ActionStatus.REJECTED]
        assert await controller.count_recent_restarts(state.id) == 2
        assert executor.perform.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_restart_still_starts_cooldown(self):
        clock = _Clock()
        executor = _make_executor(side_effect=RuntimeError("process manager unreachable"))
        controller, _, state = await _make_controller(executor, clock=clock)

        failed = await controller.execute(state.id, A.RESTART, CONFIRMED)
        clock.advance(10)
        retried = await controller.execute(state.id, A.RESTART, CONFIRMED)

        assert failed.status == ActionStatus.FAILED
        assert retried.status == ActionStatus.REJECTED
        assert state.last_restart_at == T0

    @pytest.mark.asyncio
    async def test_concurrent_restarts_serialize(self):
        executor = _make_executor()
        controller, _, state = await _make_controller(executor)

        results = await asyncio.gather(*(
            controller.execute(state.id, A.RESTART, CONFIRMED) for _ in range(3)
        ))

        assert [r.status for r in results].count(ActionStatus.SUCCESS) == 1
        assert executor.perform.await_count == 1


class TestExecution:
    @pytest.mark.asyncio
    async def test_executor_exception_is_failed_without_retry(self):
        executor = _make_executor(side_effect=RuntimeError("boom"))
        controller, _, state = await _make_controller(executor)

        record = await controller.execute(state.id, A.STOP, CONFIRMED)

        assert record.status == ActionStatus.FAILED
        assert "boom" in record.error_detail
        assert executor.perform.await_count == 1
        assert state.is_running is True

    @pytest.mark.asyncio
    async def test_executor_timeout_is_failed(self):
        async def hang(descriptor, action, params):
            await asyncio.sleep(5)

        executor = _make_executor(side_effect=hang)
        controller, _, state = await _make_controller(executor, executor_timeout_s=0.05)

        record = await asyncio.wait_for(controller.execute(state.id, A.START), timeout=1.0)

        assert record.status == ActionStatus.FAILED
        assert "timed out" in record.error_detail

    @pytest.mark.asyncio
    async def test_unsuccessful_outcome_is_failed(self):
        executor = _make_executor(ExecutionOutcome(success=False, message="container exited 137"))
        controller, _, state = await _make_controller(executor)

        record = await controller.execute(state.id, A.START)

        assert record.status == ActionStatus.FAILED
        assert record.error_detail == "container exited 137"

    @pytest.mark.asyncio
    async def test_stop_updates_state(self):
        controller, store, state = await _make_controller()

        record = await controller.execute(state.id, A.STOP, CONFIRMED)

        assert record.status == ActionStatus.SUCCESS
        assert record.before_is_running is True
        assert record.after_is_running is False
        assert (await store.get_service(state.id)).is_running is False

    @pytest.mark.asyncio
    async def test_scale_up_and_down(self):
        controller, _, state = await _make_controller()

        up = await controller.execute(state.id, A.SCALE_UP, ActionRequest(target_instances=4))
        down = await controller.execute(state.id, A.SCALE_DOWN, ActionRequest(confirmed=True))

        assert up.after_instance_count == 4
        assert up.parameters["target_instances"] == 4
        assert down.before_instance_count == 4
        assert down.after_instance_count == 3
        assert state.instance_count == 3

    @pytest.mark.asyncio
    async def test_dry_run_skips_executor(self):
        executor = _make_executor()
        controller, _, state = await _make_controller(executor)

        record = await controller.execute(state.id, A.STOP, ActionRequest(confirmed=True, dry_run=True))

        assert record.status == ActionStatus.SUCCESS
        assert record.message == "Dry run completed successfully. No actual changes made."
        assert state.is_running is True
        executor.perform.assert_not_awaited()


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_unreadable_service_is_rejected_and_audited(self):
        executor = _make_executor()
        controller, store, state = await _make_controller(executor)
        store.get_service = AsyncMock(side_effect=ConnectionError("db down"))

        record = await controller.execute(state.id, A.START)

        assert record.status == ActionStatus.REJECTED
        assert record.message == "Service state unavailable"
        assert "db down" in record.error_detail
        assert store.get_service.await_count == 2
        executor.perform.assert_not_awaited()
        assert controller.audit.stats["records_written"] == 1
        assert len(await controller.audit.history(state.id)) == 1
        assert controller.stats["total_rejected"] == 1

    @pytest.mark.asyncio
    async def test_store_outage_after_first_contact_is_rejected(self):
        executor = _make_executor()
        controller, store, state = await _make_controller(executor)
        await controller.execute(state.id, A.START)
        store.get_service = AsyncMock(side_effect=ConnectionError("db down"))

        record = await controller.execute(state.id, A.STOP, CONFIRMED)

        assert record.status == ActionStatus.REJECTED
        assert "db down" in record.error_detail
        executor.perform.assert_awaited_once()
        assert controller.audit.stats["records_written"] == 2

    @pytest.mark.asyncio
    async def test_unreadable_restart_window_is_rejected_and_audited(self):
        executor = _make_executor()
        controller, store, state = await _make_controller(executor)
        store.audit_records = AsyncMock(side_effect=ConnectionError("db down"))

        record = await controller.execute(state.id, A.RESTART, CONFIRMED)

        assert record.status == ActionStatus.REJECTED
        assert record.message == "Restart history unavailable"
        assert "db down" in record.error_detail
        assert record.service_name == "orders-api"
        executor.perform.assert_not_awaited()
        assert state.last_restart_at is None
        assert controller.audit.stats["records_written"] == 1


class TestAudit:
    @pytest.mark.asyncio
    async def test_one_record_per_call(self):
        controller, _, state = await _make_controller()

        await controller.execute(state.id, A.START)
        await controller.execute(state.id, A.STOP)
        await controller.execute(state.id, A.STOP, CONFIRMED)

        history = await controller.audit.history(state.id)
        assert len(history) == 3
        assert {r.status for r in history} == {ActionStatus.SUCCESS, ActionStatus.REJECTED}
        assert all(r.principal in ("anonymous", "alice") for r in history)

    @pytest.mark.asyncio
    async def test_audit_falls_back_to_log_when_store_fails(self):
        store = InMemoryFleetStore()
        store.append_audit = AsyncMock(side_effect=RuntimeError("disk full"))
        controller, _, state = await _make_controller(store=store)

        record = await controller.execute(state.id, A.START)

        assert record.status == ActionStatus.SUCCESS
        assert controller.audit.stats["records_failed"] == 1
        assert store.append_audit.await_count == 2

    @pytest.mark.asyncio
    async def test_action_event_emitted(self):
        bus = EventBus()
        controller, _, state = await _make_controller(bus=bus)

        record = await controller.execute(state.id, A.START)

        events = bus.recent(DomainEventType.ACTION_EXECUTED)
        assert len(events) == 1
        assert events[0].data["audit_id"] == record.id
        assert events[0].data["status"] == "success"
