"""
FleetWarden: Lifecycle Safety Controller

The only path to START / STOP / RESTART / SCALE_UP / SCALE_DOWN a managed
service. Each call:

  1. Resolves the service (a store read failure or unknown id → REJECTED)
     and takes its execution lock (same-service actions never overlap)
  2. Validates: enabled service, confirmation, restart cooldown
     and attempt cap, scale bounds. Any failure → REJECTED, executor untouched
  3. Dry run stops here with a SUCCESS record
  4. Delegates to the LifecycleExecutor under its timeout. An exception,
     timeout or unsuccessful outcome → FAILED. Never retried automatically
  5. Updates is_running / instance_count / last_restart_at
  6. Writes exactly one AuditRecord with before/after state and emits
     ACTION_EXECUTED

The caller always gets an AuditRecord back: success, a rejection with its
reason, or a failure with error detail.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from fleetwarden.primitives.common import utc_now
from fleetwarden.systems.events.types import DomainEvent, DomainEventType
from fleetwarden.systems.fleet.store import PersistenceError, persist_with_retry
from fleetwarden.systems.fleet.types import ManagedServiceState
from fleetwarden.systems.lifecycle.audit import AuditTrail
from fleetwarden.systems.lifecycle.safety import (
    RestartGuard,
    ValidationRejection,
    check_confirmation,
    resolve_scale_target,
    risk_level,
)
from fleetwarden.systems.lifecycle.types import (
    ActionRequest,
    ActionStatus,
    AuditRecord,
    ExecutionOutcome,
    LifecycleAction,
)

if TYPE_CHECKING:
    from fleetwarden.config import LifecycleConfig
    from fleetwarden.systems.events.event_bus import EventBus
    from fleetwarden.systems.fleet.store import FleetStore
    from fleetwarden.systems.lifecycle.executor import LifecycleExecutor

logger = structlog.get_logger()

_SCALE_ACTIONS = (LifecycleAction.SCALE_UP, LifecycleAction.SCALE_DOWN)


class LifecycleController:
    def __init__(
        self,
        config: LifecycleConfig,
        store: FleetStore,
        executor: LifecycleExecutor,
        event_bus: EventBus | None = None,
        audit: AuditTrail | None = None,
        persist_attempts: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._executor = executor
        self._bus = event_bus
        self._audit = audit or AuditTrail(store, persist_attempts=persist_attempts)
        self._guard = RestartGuard(config, store, persist_attempts=persist_attempts)
        self._persist_attempts = persist_attempts
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logger.bind(system="lifecycle", component="controller")

        self._total_executed: int = 0
        self._total_rejected: int = 0
        self._total_failed: int = 0

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    async def execute(
        self,
        service_id: str,
        action: LifecycleAction | str,
        request: ActionRequest | None = None,
    ) -> AuditRecord:
        """
        Run one lifecycle action and return its AuditRecord.

        `action` is a LifecycleAction or its string value. Any other string
        raises ValueError before the store is read or an audit record is
        written. Every other failure comes back as a REJECTED or FAILED record.
        """
        action = LifecycleAction(action)
        request = request or ActionRequest()

        lock = self._locks.get(service_id)
        if lock is None:
            # First contact: only a service that resolves gets a lock
            _, missing = await self._load(self._open(service_id, action, request))
            if missing is not None:
                await self._audit.record(missing)
                return await self._conclude(missing)
            lock = self._locks.setdefault(service_id, asyncio.Lock())

        async with lock:
            record = await self._execute_locked(service_id, action, request)
            # Written under the lock so the next restart sees this attempt
            await self._audit.record(record)

        return await self._conclude(record)

    async def count_recent_restarts(self, service_id: str) -> int:
        return await self._guard.count_recent_restarts(service_id, self._clock())

    # ─── Pipeline ────────────────────────────────────────────────────

    def _open(
        self,
        service_id: str,
        action: LifecycleAction,
        request: ActionRequest,
    ) -> tuple[dict[str, Any], float]:
        base: dict[str, Any] = {
            "service_id": service_id,
            "action": action,
            "principal": request.principal,
            "role": request.role,
            "reason": request.reason,
            "automated": request.automated,
            "automation_source": request.automation_source,
            "confirmed": request.confirmed,
            "dry_run": request.dry_run,
            "started_at": self._clock(),
        }
        return base, time.monotonic()

    async def _load(
        self,
        opened: tuple[dict[str, Any], float],
    ) -> tuple[ManagedServiceState | None, AuditRecord | None]:
        """The service's current state, or the REJECTED record explaining why there is none."""
        base, t0 = opened
        service_id = base["service_id"]
        try:
            state = await persist_with_retry(
                lambda: self._store.get_service(service_id),
                attempts=self._persist_attempts,
                what="get_service",
                service_id=service_id,
            )
        except PersistenceError as exc:
            self._logger.error(
                "lifecycle_state_unavailable",
                service_id=service_id,
                action=base["action"].value,
                error=str(exc),
            )
            return None, self._rejected(base, t0, "Service state unavailable", error_detail=str(exc))
        if state is None:
            return None, self._rejected(base, t0, f"Service not found: {service_id}")
        return state, None

    async def _execute_locked(
        self,
        service_id: str,
        action: LifecycleAction,
        request: ActionRequest,
    ) -> AuditRecord:
        opened = self._open(service_id, action, request)
        base, t0 = opened
        started = base["started_at"]

        state, missing = await self._load(opened)
        if missing is not None:
            return missing

        base.update({
            "service_name": state.name,
            "risk_level": risk_level(action, state.descriptor.environment, state.health_status),
            "before_is_running": state.is_running,
            "before_instance_count": state.instance_count,
        })

        try:
            target = await self._validate(state, action, request, started)
        except ValidationRejection as rejection:
            self._logger.info(
                "lifecycle_action_rejected",
                service=state.name,
                action=action.value,
                reason=str(rejection),
                principal=request.principal,
            )
            return self._rejected(
                base, t0, str(rejection),
                state=state,
                confirmation_required=rejection.confirmation_required,
            )
        except PersistenceError as exc:
            self._logger.error(
                "lifecycle_validation_unavailable",
                service=state.name,
                action=action.value,
                error=str(exc),
            )
            return self._rejected(
                base, t0, "Restart history unavailable",
                state=state,
                error_detail=str(exc),
            )

        params: dict[str, Any] = {"reason": request.reason}
        if target is not None:
            params["target_instances"] = target
        base["parameters"] = params

        if request.dry_run:
            return self._finish(
                base, t0, state,
                status=ActionStatus.SUCCESS,
                message="Dry run completed successfully. No actual changes made.",
            )

        self._logger.info(
            "lifecycle_action_executing",
            service=state.name,
            action=action.value,
            principal=request.principal,
            automated=request.automated,
            params=params,
        )
        if action == LifecycleAction.RESTART:
            state.last_restart_at = started

        outcome, error_detail = await self._perform(state, action, params)

        if outcome is not None and outcome.success:
            _apply(state, action, target)
            status = ActionStatus.SUCCESS
            message = outcome.message or _success_message(action, base["before_instance_count"], target)
        else:
            status = ActionStatus.FAILED
            message = f"{action.value} failed"
            if outcome is not None and error_detail is None:
                error_detail = outcome.message or "executor reported failure"

        try:
            await persist_with_retry(
                lambda: self._store.save_service(state),
                attempts=self._persist_attempts,
                what="save_service",
                service_id=state.id,
            )
        except PersistenceError as exc:
            self._logger.error(
                "lifecycle_state_persist_failed",
                service=state.name,
                action=action.value,
                error=str(exc),
            )
            error_detail = f"{error_detail}; {exc}" if error_detail else str(exc)

        return self._finish(base, t0, state, status=status, message=message, error_detail=error_detail)

    async def _validate(
        self,
        state: ManagedServiceState,
        action: LifecycleAction,
        request: ActionRequest,
        now: datetime,
    ) -> int | None:
        if not state.enabled:
            raise ValidationRejection("Service is disabled and cannot be controlled")
        check_confirmation(action, request.confirmed)
        if action == LifecycleAction.RESTART:
            await self._guard.check(state, now)
        if action in _SCALE_ACTIONS:
            return resolve_scale_target(
                action, state.instance_count, request.target_instances, self._config.max_instances,
            )
        return None

    async def _perform(
        self,
        state: ManagedServiceState,
        action: LifecycleAction,
        params: dict[str, Any],
    ) -> tuple[ExecutionOutcome | None, str | None]:
        try:
            outcome = await asyncio.wait_for(
                self._executor.perform(state.descriptor, action, params),
                timeout=self._config.executor_timeout_s,
            )
        except TimeoutError:
            detail = f"executor timed out after {self._config.executor_timeout_s}s"
            self._logger.error("lifecycle_executor_timeout", service=state.name, action=action.value)
            return None, detail
        except Exception as exc:
            self._logger.error(
                "lifecycle_executor_failed",
                service=state.name,
                action=action.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None, f"{type(exc).__name__}: {exc}"
        return outcome, None

    # ─── Records ─────────────────────────────────────────────────────

    def _rejected(
        self,
        base: dict[str, Any],
        t0: float,
        message: str,
        state: ManagedServiceState | None = None,
        confirmation_required: bool = False,
        error_detail: str | None = None,
    ) -> AuditRecord:
        return self._finish(
            {**base, "confirmation_required": confirmation_required},
            t0,
            state,
            status=ActionStatus.REJECTED,
            message=message,
            error_detail=error_detail,
        )

    def _finish(
        self,
        base: dict[str, Any],
        t0: float,
        state: ManagedServiceState | None,
        status: ActionStatus,
        message: str,
        error_detail: str | None = None,
    ) -> AuditRecord:
        return AuditRecord(
            **base,
            status=status,
            message=message,
            error_detail=error_detail,
            ended_at=self._clock(),
            duration_ms=int((time.monotonic() - t0) * 1000),
            after_is_running=state.is_running if state is not None else None,
            after_instance_count=state.instance_count if state is not None else None,
        )

    async def _conclude(self, record: AuditRecord) -> AuditRecord:
        if record.status == ActionStatus.REJECTED:
            self._total_rejected += 1
        elif record.status == ActionStatus.FAILED:
            self._total_failed += 1
        else:
            self._total_executed += 1
        await self._emit(record)
        return record

    async def _emit(self, record: AuditRecord) -> None:
        if self._bus is None:
            return
        await self._bus.emit(DomainEvent(
            event_type=DomainEventType.ACTION_EXECUTED,
            service_id=record.service_id,
            data={
                "audit_id": record.id,
                "action": record.action.value,
                "status": record.status.value,
                "principal": record.principal,
                "message": record.message,
            },
        ))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_executed": self._total_executed,
            "total_rejected": self._total_rejected,
            "total_failed": self._total_failed,
        }


def _apply(state: ManagedServiceState, action: LifecycleAction, target: int | None) -> None:
    if action in (LifecycleAction.START, LifecycleAction.RESTART):
        state.is_running = True
    elif action == LifecycleAction.STOP:
        state.is_running = False
    elif target is not None:
        state.instance_count = target


def _success_message(action: LifecycleAction, before: int | None, target: int | None) -> str:
    if action in _SCALE_ACTIONS:
        return f"Scaled from {before} to {target} instances"
    return f"{action.value} completed"
