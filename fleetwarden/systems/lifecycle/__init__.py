"""
FleetWarden: Lifecycle

Validated, audited, per-service serialized lifecycle actions.
"""

from fleetwarden.systems.lifecycle.audit import AuditTrail
from fleetwarden.systems.lifecycle.controller import LifecycleController
from fleetwarden.systems.lifecycle.executor import LifecycleExecutor, LoggingExecutor
from fleetwarden.systems.lifecycle.safety import (
    CONFIRMATION_REQUIRED,
    RestartGuard,
    ValidationRejection,
    requires_confirmation,
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

__all__ = [
    "ActionRequest",
    "ActionStatus",
    "AuditRecord",
    "AuditTrail",
    "CONFIRMATION_REQUIRED",
    "ExecutionOutcome",
    "LifecycleAction",
    "LifecycleController",
    "LifecycleExecutor",
    "LoggingExecutor",
    "RestartGuard",
    "ValidationRejection",
    "requires_confirmation",
    "resolve_scale_target",
    "risk_level",
]
