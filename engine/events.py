import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger("Events")

Listener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """
    Synchronous fan-out of engine events (trade opened/closed, signals...).
    A failing listener is logged and skipped, the engine never sees it.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: str, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception as e:
                logger.warning(f"⚠️ Event listener failed on {event_type}: {e}")


class EventRecorder:
    """Listener that keeps every event, handy for the API and for tests."""

    def __init__(self, maxlen: int = 1000):
        self.maxlen = maxlen
        self.events: List[Dict[str, Any]] = []

    def __call__(self, event_type: str, data: Dict[str, Any]) -> None:
        self.events.append({"type": event_type, **data})
        if len(self.events) > self.maxlen:
            del self.events[: len(self.events) - self.maxlen]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]
