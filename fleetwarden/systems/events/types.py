"""
FleetWarden: Domain Event Types

Typed events the engine emits for external fan-out (live dashboards,
notification bridges). Delivery beyond the in-process bus is the job of an
EventSink supplied by the host application.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Protocol

from pydantic import Field

from fleetwarden.primitives.common import FrozenRecord, new_id, utc_now


class DomainEventType(enum.StrEnum):
    HEALTH_CHANGED = "health_changed"
    INCIDENT_OPENED = "incident_opened"
    INCIDENT_ESCALATED = "incident_escalated"
    INCIDENT_ACKNOWLEDGED = "incident_acknowledged"
    INCIDENT_RESOLVED = "incident_resolved"
    INCIDENT_CLOSED = "incident_closed"
    ACTION_EXECUTED = "action_executed"
    SCORES_UPDATED = "scores_updated"
    STATUS_SUMMARY = "status_summary"


class DomainEvent(FrozenRecord):
    id: str = Field(default_factory=new_id)
    event_type: DomainEventType
    timestamp: datetime = Field(default_factory=utc_now)
    service_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    """External delivery channel (WebSocket broadcaster, message queue, …)."""

    async def publish(self, event: DomainEvent) -> None: ...
