"""
FleetWarden: Event Bus

Hands every domain event to in-process handlers and then to the optional
EventSink the host wires in for live broadcast.

Handlers for one event run concurrently, each under its own timeout, and
emit() returns once all of them have settled. A producer that awaits emit()
therefore delivers its events for a service in the order it produced them.
A failing handler, a hung handler or a failing sink is counted and logged;
emit() itself never raises.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict, deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from fleetwarden.systems.events.types import DomainEvent, DomainEventType, EventSink

logger = structlog.get_logger()

EventCallback = Callable[[DomainEvent], Coroutine[Any, Any, None]]

# Fleet-wide snapshots meant for dashboards; in-process handlers never see them
BROADCAST_ONLY: frozenset[DomainEventType] = frozenset({DomainEventType.STATUS_SUMMARY})


class EventBus:
    def __init__(
        self,
        sink: EventSink | None = None,
        history_size: int = 500,
        handler_timeout_s: float = 0.5,
    ) -> None:
        self._sink = sink
        self._handler_timeout_s = handler_timeout_s
        # None holds the handlers registered for every type
        self._handlers: dict[DomainEventType | None, list[EventCallback]] = defaultdict(list)
        self._history: deque[DomainEvent] = deque(maxlen=history_size)
        self._emitted: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()
        self._logger = logger.bind(system="events", component="event_bus")

    def subscribe(self, event_type: DomainEventType, callback: EventCallback) -> None:
        self._handlers[event_type].append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        self._handlers[None].append(callback)

    async def emit(self, event: DomainEvent) -> None:
        self._emitted[event.event_type.value] += 1
        self._history.append(event)

        if event.event_type not in BROADCAST_ONLY:
            handlers = [*self._handlers.get(event.event_type, ()), *self._handlers.get(None, ())]
            await asyncio.gather(*(self._deliver(h, event) for h in handlers))

        if self._sink is not None:
            try:
                await self._sink.publish(event)
            except Exception as exc:
                self._failures["sink"] += 1
                self._logger.warning(
                    "event_sink_publish_failed",
                    event_type=event.event_type.value,
                    service_id=event.service_id,
                    error=str(exc),
                )

    async def _deliver(self, handler: EventCallback, event: DomainEvent) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            await asyncio.wait_for(handler(event), timeout=self._handler_timeout_s)
        except TimeoutError:
            self._failures["handler_timeout"] += 1
            self._logger.warning("event_handler_timeout", event_type=event.event_type.value, handler=name)
        except Exception as exc:
            self._failures["handler_error"] += 1
            self._logger.error(
                "event_handler_failed",
                event_type=event.event_type.value,
                handler=name,
                error=str(exc),
            )

    def recent(
        self,
        event_type: DomainEventType | None = None,
        *,
        service_id: str | None = None,
        limit: int = 10,
    ) -> list[DomainEvent]:
        """Newest-first slice of the history, optionally narrowed by type and service."""
        matches: list[DomainEvent] = []
        if limit <= 0:
            return matches
        for event in reversed(self._history):
            if event_type is not None and event.event_type != event_type:
                continue
            if service_id is not None and event.service_id != service_id:
                continue
            matches.append(event)
            if len(matches) == limit:
                break
        return matches

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "emitted": sum(self._emitted.values()),
            "emitted_by_type": dict(self._emitted),
            "handlers": sum(len(hs) for hs in self._handlers.values()),
            "handler_timeouts": self._failures["handler_timeout"],
            "handler_errors": self._failures["handler_error"],
            "sink_failures": self._failures["sink"],
            "history": len(self._history),
        }
