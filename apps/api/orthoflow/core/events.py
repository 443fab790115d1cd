from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out by event name.

    Handlers run in the publisher's thread and their exceptions reach the
    publisher. Subscribing the same handler twice is a no-op.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        handlers = self._subscribers.setdefault(event_name, [])
        if handler not in handlers:
            handlers.append(handler)
        return lambda: self.unsubscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_name: str) -> tuple[EventHandler, ...]:
        return tuple(self._subscribers.get(event_name, ()))

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        handlers = self.handlers(event_name)
        event = InternalEvent(name=event_name, payload=payload)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
