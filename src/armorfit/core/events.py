"""EventBus for decoupled publish/subscribe communication between stages."""

from enum import Enum, auto
from typing import Any, Callable
from collections import defaultdict


class FittingEvent(Enum):
    # Stage lifecycle
    STAGE_STARTED = auto()        # data: stage (str)
    STAGE_COMPLETE = auto()       # data: stage (str), plus stage stats

    # Degenerate-geometry warnings
    DEGENERATE_REGION = auto()    # data: region (str), size (tuple)
    EMPTY_AVATAR_SURFACE = auto() # data: avatar (str)
    NEAREST_VERTEX_FALLBACK = auto()  # data: count (int), search_radius (float)
    NO_BODY_REGIONS = auto()      # data: avatar (str)
    BIND_UNAVAILABLE = auto()     # data: avatar (str), reason (str)
    DEGENERATE_SKIN_TRANSFORM = auto()  # data: mesh (str), count (int)


# Events the service reports back to callers as quality warnings
WARNING_EVENTS = frozenset({
    FittingEvent.DEGENERATE_REGION,
    FittingEvent.EMPTY_AVATAR_SURFACE,
    FittingEvent.NEAREST_VERTEX_FALLBACK,
    FittingEvent.NO_BODY_REGIONS,
    FittingEvent.BIND_UNAVAILABLE,
    FittingEvent.DEGENERATE_SKIN_TRANSFORM,
})


class EventBus:
    """Simple publish/subscribe event system."""

    def __init__(self):
        self._handlers: dict[FittingEvent, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: FittingEvent, handler: Callable) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: FittingEvent, handler: Callable) -> None:
        handlers = self._handlers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: FittingEvent, **data: Any) -> None:
        for handler in self._handlers[event_type]:
            handler(**data)

    def clear(self) -> None:
        self._handlers.clear()


def publish(bus: "EventBus | None", event_type: FittingEvent, **data: Any) -> None:
    """Publish on *bus* if one was supplied."""
    if bus is not None:
        bus.publish(event_type, **data)
