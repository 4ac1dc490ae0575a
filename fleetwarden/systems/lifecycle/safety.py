"""
FleetWarden: Lifecycle Safety Checks

The checks a lifecycle request must pass before any executor is touched:

1. Confirmation: STOP, RESTART and SCALE_DOWN need confirmed=True.

2. RestartGuard: per-service restart cooldown plus a sliding-window cap
   on restart attempts. The window is read back from the audit trail,
   so it survives a controller restart.

3. Scale bounds: SCALE_UP must land above the current count and at or
   below max_instances; SCALE_DOWN must land below the current count
   and never below one instance.

A failed check raises ValidationRejection. The controller turns it, and a
PersistenceError from reading the restart window, into a REJECTED audit
record; neither reaches the caller as an exception.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from fleetwarden.systems.fleet.store import persist_with_retry
from fleetwarden.systems.fleet.types import HealthStatus, ManagedServiceState
from fleetwarden.systems.lifecycle.types import LifecycleAction

if TYPE_CHECKING:
    from fleetwarden.config import LifecycleConfig
    from fleetwarden.systems.fleet.store import FleetStore

logger = structlog.get_logger()


class ValidationRejection(Exception):
    """A lifecycle request failed a safety check."""

    def __init__(self, message: str, *, confirmation_required: bool = False) -> None:
        self.confirmation_required = confirmation_required
        super().__init__(message)


CONFIRMATION_REQUIRED: frozenset[LifecycleAction] = frozenset({
    LifecycleAction.STOP,
    LifecycleAction.RESTART,
    LifecycleAction.SCALE_DOWN,
})

_BASE_RISK: dict[LifecycleAction, int] = {
    LifecycleAction.STOP: 70,
    LifecycleAction.RESTART: 50,
    LifecycleAction.SCALE_DOWN: 40,
    LifecycleAction.START: 20,
    LifecycleAction.SCALE_UP: 10,
}

_ENVIRONMENT_RISK: dict[str, int] = {"PROD": 20, "STAGING": 10}


def requires_confirmation(action: LifecycleAction) -> bool:
    return action in CONFIRMATION_REQUIRED


def check_confirmation(action: LifecycleAction, confirmed: bool) -> None:
    if requires_confirmation(action) and not confirmed:
        raise ValidationRejection(
            "This action requires confirmation. Please confirm to proceed.",
            confirmation_required=True,
        )


def risk_level(action: LifecycleAction, environment: str, health: HealthStatus) -> int:
    """Action base risk, plus environment, plus a bump when the service is already CRITICAL."""
    risk = _BASE_RISK.get(action, 0)
    risk += _ENVIRONMENT_RISK.get(environment.upper(), 0)
    if health == HealthStatus.CRITICAL:
        risk += 10
    return min(100, risk)


def resolve_scale_target(
    action: LifecycleAction,
    current: int,
    requested: int | None,
    max_instances: int,
) -> int:
    """Validate (and default) the target instance count for a scale action."""
    if action == LifecycleAction.SCALE_UP:
        target = requested if requested is not None else current + 1
        if target <= current:
            raise ValidationRejection(f"Target instances must be greater than current: {current}")
        if target > max_instances:
            raise ValidationRejection(f"Target instances {target} exceeds maximum of {max_instances}")
        return target

    if action == LifecycleAction.SCALE_DOWN:
        target = requested if requested is not None else max(1, current - 1)
        if target < 1:
            raise ValidationRejection("Cannot scale below 1 instance")
        if target >= current:
            raise ValidationRejection(f"Target instances must be less than current: {current}")
        return target

    return current


class RestartGuard:
    """
    Cooldown and sliding-window attempt cap for RESTART.

    An attempt is any restart that passed validation, whether the executor
    then succeeded or failed. Rejected and dry-run calls do not count.
    """

    def __init__(self, config: LifecycleConfig, store: FleetStore, persist_attempts: int = 2) -> None:
        self._config = config
        self._store = store
        self._persist_attempts = persist_attempts
        self._logger = logger.bind(system="lifecycle", component="restart_guard")

    def cooldown_remaining(self, state: ManagedServiceState, now: datetime) -> float:
        """Seconds left before another restart is allowed. 0 when clear."""
        if state.last_restart_at is None:
            return 0.0
        elapsed = (now - state.last_restart_at).total_seconds()
        return max(0.0, self._config.restart_cooldown_s - elapsed)

    async def count_recent_restarts(self, service_id: str, now: datetime) -> int:
        """Attempts inside the sliding window. Raises PersistenceError if the trail is unreadable."""
        since = now - timedelta(seconds=self._config.restart_window_s)
        records = await persist_with_retry(
            lambda: self._store.audit_records(service_id, since=since, action=LifecycleAction.RESTART),
            attempts=self._persist_attempts,
            what="audit_records",
            service_id=service_id,
        )
        return sum(1 for r in records if r.counts_as_attempt)

    async def check(self, state: ManagedServiceState, now: datetime) -> None:
        remaining = self.cooldown_remaining(state, now)
        if remaining > 0:
            self._logger.warning("restart_cooldown_active", service=state.name, remaining_s=round(remaining, 1))
            raise ValidationRejection(
                f"Restart cooldown in effect. Please wait {math.ceil(remaining)} seconds before restarting again."
            )

        recent = await self.count_recent_restarts(state.id, now)
        if recent >= self._config.max_restart_attempts:
            self._logger.warning(
                "restart_limit_exceeded",
                service=state.name,
                recent=recent,
                max_attempts=self._config.max_restart_attempts,
                window_s=self._config.restart_window_s,
            )
            raise ValidationRejection(
                f"Restart limit reached: {recent} restart(s) in the last "
                f"{int(self._config.restart_window_s)}s (max {self._config.max_restart_attempts})"
            )
