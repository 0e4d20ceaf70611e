"""Typed publish/subscribe channel for task lifecycle events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from boomerang_flow.orchestrator.models import EventType, OrchestrationEvent

logger = logging.getLogger(__name__)


class EventListener(Protocol):
    """Callable invoked once per published event, in publish order."""

    def __call__(self, event: OrchestrationEvent) -> None: ...


class EventChannel:
    """Synchronous fan-out of lifecycle events to subscribed listeners.

    Listeners run on the publishing thread, which is always the controller
    flow, so every listener observes events for one task in emission order.
    A failing listener is logged and does not prevent delivery to the rest.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[EventListener, frozenset[EventType] | None]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        listener: EventListener,
        *,
        event_types: tuple[EventType, ...] | None = None,
    ) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""

        entry = (listener, frozenset(event_types) if event_types else None)
        with self._lock:
            self._listeners.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event: OrchestrationEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener, event_types in listeners:
            if event_types is not None and event.event_type not in event_types:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed for %s on task %s",
                    event.event_type.value,
                    event.task_id,
                )


class EventRecorder:
    """Listener that keeps every received event, for reports and tests."""

    def __init__(self) -> None:
        self.events: list[OrchestrationEvent] = []

    def __call__(self, event: OrchestrationEvent) -> None:
        self.events.append(event)

    def types_for(self, task_id: str) -> list[EventType]:
        return [event.event_type for event in self.events if event.task_id == task_id]
