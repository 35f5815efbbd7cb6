"""Typed events the state machine emits to its host (UI, SSE stream, tests)."""
import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventKind = Literal[
    "phase_changed",
    "message",
    "fetch_started",
    "external_data",
    "generation_started",
    "itinerary_ready",
    "trip_confirmation_needed",
    "missing_fields",
]


class MachineEvent(BaseModel):
    kind: EventKind
    data: dict[str, Any] = Field(default_factory=dict)


Listener = Callable[[MachineEvent], None]


class EventBus:
    """Synchronous fan-out of machine events to subscribed listeners."""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, kind: EventKind, **data: Any) -> MachineEvent:
        event = MachineEvent(kind=kind, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("[EventBus] Listener failed on %s", kind, exc_info=True)
        return event
