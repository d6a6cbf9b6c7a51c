"""Timer primitives with injectable scheduling for deterministic tests."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None:
        """Stop the timer if it has not fired yet."""


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]


def thread_timer(delay_seconds: float, callback: Callable[[], None]) -> Cancellable:
    """Start a daemon ``threading.Timer``."""

    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class DebouncedWriter:
    """Trailing-edge debounce: each ``schedule`` call restarts the quiet period.

    The flush scheduled last wins. Failures of a timer-driven flush are
    logged and never reach the code that scheduled it; ``flush_now`` runs on
    the caller's thread and lets errors propagate so shutdown can report them.
    """

    def __init__(
        self,
        delay_seconds: float = 0.5,
        *,
        timer_factory: TimerFactory = thread_timer,
        name: str = "writer",
    ) -> None:
        self.delay_seconds = delay_seconds
        self.name = name
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Cancellable | None = None
        self._flush: Callable[[], None] | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self, flush: Callable[[], None]) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._flush = flush
            self._timer = self._timer_factory(
                self.delay_seconds,
                lambda: self._fire(generation),
            )

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def flush_now(self, flush: Callable[[], None] | None = None) -> None:
        """Cancel the pending timer and flush immediately."""

        with self._lock:
            pending = self._flush
            self._cancel_locked()
        target = flush or pending
        if target is not None:
            target()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._flush = None
        self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            flush = self._flush
            self._timer = None
            self._flush = None
        if flush is None:
            return
        try:
            flush()
        except Exception:
            logger.exception("Debounced flush failed: writer=%s", self.name)
