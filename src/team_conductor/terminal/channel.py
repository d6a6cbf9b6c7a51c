"""Bounded notification channel between terminal sessions and their consumers."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024


@dataclass(slots=True, frozen=True)
class OutputEvent:
    agent_id: str
    data: str


@dataclass(slots=True, frozen=True)
class ExitEvent:
    agent_id: str
    exit_code: int
    last_output: str


SessionEvent = OutputEvent | ExitEvent
OutputHandler = Callable[[str, str], None]
ExitHandler = Callable[[str, int, str], None]

_STOP = object()


class ChannelClosedError(RuntimeError):
    """Raised when publishing to a closed channel."""


class SessionChannel:
    """FIFO of session events drained by one dispatcher thread.

    ``publish`` blocks while the queue is full, so a slow consumer slows the
    producers down instead of growing memory without bound. Events published
    from the dispatcher thread itself are delivered inline.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, *, name: str = "sessions") -> None:
        self._queue: queue.Queue[object] = queue.Queue(maxsize=capacity)
        self._output_handlers: list[OutputHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._lock = threading.Lock()
        self._closed = False
        self._dispatcher = threading.Thread(
            target=self._run,
            name=f"channel-{name}",
            daemon=True,
        )
        self._dispatcher.start()

    def on_output(self, handler: OutputHandler) -> Callable[[], None]:
        with self._lock:
            self._output_handlers.append(handler)
        return lambda: self._remove(self._output_handlers, handler)

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        with self._lock:
            self._exit_handlers.append(handler)
        return lambda: self._remove(self._exit_handlers, handler)

    def publish(self, event: SessionEvent, timeout: float | None = None) -> None:
        if self._closed:
            raise ChannelClosedError("Session channel is closed")
        if threading.current_thread() is self._dispatcher:
            self._dispatch(event)
            return
        self._queue.put(event, timeout=timeout)

    def join(self) -> None:
        """Block until every published event has been dispatched."""

        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        if threading.current_thread() is not self._dispatcher:
            self._dispatcher.join(timeout=timeout)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _remove(self, handlers: list, handler: object) -> None:
        with self._lock:
            if handler in handlers:
                handlers.remove(handler)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: object) -> None:
        with self._lock:
            output_handlers = list(self._output_handlers)
            exit_handlers = list(self._exit_handlers)
        if isinstance(event, OutputEvent):
            for handler in output_handlers:
                try:
                    handler(event.agent_id, event.data)
                except Exception:
                    logger.exception("Output handler failed: agent=%s", event.agent_id)
        elif isinstance(event, ExitEvent):
            for handler in exit_handlers:
                try:
                    handler(event.agent_id, event.exit_code, event.last_output)
                except Exception:
                    logger.exception("Exit handler failed: agent=%s", event.agent_id)
