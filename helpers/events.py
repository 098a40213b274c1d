from __future__ import annotations
from collections import defaultdict
from typing import Any, Callable
import logging
import threading

from interfaces.events.sink import EventType

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class EventHub:
    """
    In-process fan-out of launcher events to UI-side listeners.

    Listeners run on the emitting thread; a failing listener is logged and
    the remaining listeners still receive the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[EventType, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners[event_type].remove(listener)
            except ValueError:
                pass

    def emit(self, event_type: EventType, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, ()))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %s failed", event_type.value)
