"""
FleetWarden: Lifecycle Type Definitions

Requests, executor outcomes and the audit record. Every lifecycle call,
whatever its outcome, produces exactly one AuditRecord.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from fleetwarden.primitives.common import FleetBaseModel, FrozenRecord, new_id, utc_now


class LifecycleAction(enum.StrEnum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"


class ActionStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILED = "failed"  # Validation passed, the executor failed
    REJECTED = "rejected"  # Validation failed, the executor was never called


class ActionRequest(FleetBaseModel):
    """Who is asking for what, and have they confirmed it."""

    reason: str = ""
    confirmed: bool = False
    target_instances: int | None = None
    principal: str = "anonymous"
    role: str | None = None
    automated: bool = False
    automation_source: str | None = None
    dry_run: bool = False


class ExecutionOutcome(FleetBaseModel):
    """What the external executor reported back."""

    success: bool
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class AuditRecord(FrozenRecord):
    """
    Immutable account of one lifecycle call.

    before_* is the service as the controller found it; after_* is the
    service once the call finished (equal to before_* unless the action
    succeeded).
    """

    id: str = Field(default_factory=new_id)
    service_id: str
    service_name: str = ""
    action: LifecycleAction
    status: ActionStatus

    # ── Who / why ──
    principal: str = "anonymous"
    role: str | None = None
    reason: str = ""
    automated: bool = False
    automation_source: str | None = None

    # ── Timing ──
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    duration_ms: int | None = None

    # ── Outcome ──
    message: str = ""
    error_detail: str | None = None
    confirmation_required: bool = False
    confirmed: bool = False
    dry_run: bool = False
    risk_level: int = Field(0, ge=0, le=100)
    parameters: dict[str, Any] = Field(default_factory=dict)

    # ── State ──
    before_is_running: bool | None = None
    after_is_running: bool | None = None
    before_instance_count: int | None = None
    after_instance_count: int | None = None

    @property
    def counts_as_attempt(self) -> bool:
        """True when the call got past validation (it reached, or would reach, the executor)."""
        return self.status in (ActionStatus.SUCCESS, ActionStatus.FAILED) and not self.dry_run
