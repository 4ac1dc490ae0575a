"""
FleetWarden: Events

Typed domain events and the in-process bus that fans them out.
"""

from fleetwarden.systems.events.event_bus import EventBus, EventCallback
from fleetwarden.systems.events.types import DomainEvent, DomainEventType, EventSink

__all__ = [
    "DomainEvent",
    "DomainEventType",
    "EventBus",
    "EventCallback",
    "EventSink",
]
