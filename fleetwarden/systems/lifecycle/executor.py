"""
FleetWarden: Lifecycle Executor Interface

The process/container control surface. It is only ever invoked by
LifecycleController, and only after validation has passed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

from fleetwarden.systems.fleet.types import ServiceDescriptor
from fleetwarden.systems.lifecycle.types import ExecutionOutcome, LifecycleAction

logger = structlog.get_logger()


class LifecycleExecutor(ABC):
    """Abstract interface for performing a lifecycle action on a service."""

    @abstractmethod
    async def perform(
        self,
        descriptor: ServiceDescriptor,
        action: LifecycleAction,
        params: dict[str, Any],
    ) -> ExecutionOutcome:
        """
        Carry out the action. May raise; the controller records any
        exception as a FAILED audit and never retries.
        """
        ...


class LoggingExecutor(LifecycleExecutor):
    """
    Executor that performs nothing and reports success.

    Used when the engine runs without a process manager attached: the
    controller still validates, audits and updates bookkeeping.
    """

    def __init__(self) -> None:
        self._logger = logger.bind(system="lifecycle", component="logging_executor")

    async def perform(
        self,
        descriptor: ServiceDescriptor,
        action: LifecycleAction,
        params: dict[str, Any],
    ) -> ExecutionOutcome:
        self._logger.info(
            "lifecycle_action_noop",
            target=descriptor.full_url,
            action=action.value,
            params=params,
        )
        return ExecutionOutcome(success=True, message=f"{action.value} recorded; no executor attached")
