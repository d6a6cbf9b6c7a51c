"""In-process publish/subscribe bus connecting the team subsystems."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class Events:
    """Well-known event names."""

    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_COMPLETED = "task:completed"
    TASK_RESULT_READY = "task:resultReady"
    STATS_UPDATED = "stats:updated"
    TRUST_UPDATED = "trust:updated"
    AGENT_EXITED = "agent:exited"
    MESSAGE_RECEIVED = "message:received"
    SOUL_EVOLVED = "soul:evolved"


class EventBus:
    """Synchronous event bus; listeners run on the emitting thread.

    A listener that raises is logged and skipped so one faulty subscriber
    cannot stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe and return an unsubscribe callable."""

        with self._lock:
            self._listeners[event].append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(event, []):
                    self._listeners[event].remove(listener)

        return _unsubscribe

    def once(self, event: str, listener: Listener) -> Callable[[], None]:
        fired = threading.Event()

        def _wrapper(payload: dict[str, Any]) -> None:
            if fired.is_set():
                return
            fired.set()
            unsubscribe()
            listener(payload)

        unsubscribe = self.on(event, _wrapper)
        return unsubscribe

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(payload or {})
            except Exception:
                logger.exception("Event listener failed: event=%s", event)

    def remove_all_listeners(self, event: str | None = None) -> None:
        with self._lock:
            if event is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, ()))
