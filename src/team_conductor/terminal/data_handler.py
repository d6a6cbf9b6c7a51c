"""Shared terminal output handling: cursor queries, scrollback and batching."""

from __future__ import annotations

import re
import threading
from collections import deque
from collections.abc import Callable

from team_conductor.timers import Cancellable, TimerFactory, thread_timer

SCROLLBACK_MAX_LINES = 10_000
FLUSH_INTERVAL_SECONDS = 0.016
LAST_OUTPUT_LINES = 30

# Agent CLIs ask for the cursor position and block until a reply arrives.
DSR_PATTERN = re.compile(r"\x1b\[\??6n")


def strip_dsr_requests(data: str) -> tuple[str, int]:
    """Remove device-status-report queries and count them."""

    cleaned, count = DSR_PATTERN.subn("", data)
    return cleaned, count


def cursor_position_response(row: int = 1, col: int = 1) -> str:
    return f"\x1b[{row};{col}R"


class PtyDataHandler:
    """Per-session output pipeline used by both direct and container sessions."""

    def __init__(
        self,
        agent_id: str,
        write: Callable[[str], None],
        emit: Callable[[str, str], None],
        *,
        timer_factory: TimerFactory = thread_timer,
        flush_interval_seconds: float = FLUSH_INTERVAL_SECONDS,
    ) -> None:
        self.agent_id = agent_id
        self._write = write
        self._emit = emit
        self._timer_factory = timer_factory
        self._flush_interval_seconds = flush_interval_seconds
        self._lock = threading.Lock()
        self._buffer: list[str] = []
        self._timer: Cancellable | None = None
        self._scrollback: deque[str] = deque([""], maxlen=SCROLLBACK_MAX_LINES)
        self._cursor_response = cursor_position_response()

    def on_data(self, data: str) -> None:
        cleaned, dsr_count = strip_dsr_requests(data)
        for _ in range(dsr_count):
            self._write(self._cursor_response)
        if not cleaned:
            return
        with self._lock:
            self._append_scrollback(cleaned)
            self._buffer.append(cleaned)
            if self._timer is None:
                self._timer = self._timer_factory(self._flush_interval_seconds, self._flush_batch)

    def flush(self) -> None:
        """Emit buffered output now and cancel the batch timer."""

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            data = "".join(self._buffer)
            self._buffer.clear()
        if data:
            self._emit(self.agent_id, data)

    def scrollback(self) -> str:
        with self._lock:
            return "\n".join(self._scrollback)

    def last_output(self, lines: int = LAST_OUTPUT_LINES) -> str:
        with self._lock:
            tail = list(self._scrollback)[-lines:]
        return "\n".join(tail)

    def _flush_batch(self) -> None:
        with self._lock:
            self._timer = None
            data = "".join(self._buffer)
            self._buffer.clear()
        if data:
            self._emit(self.agent_id, data)

    def _append_scrollback(self, text: str) -> None:
        first, *rest = text.split("\n")
        self._scrollback[-1] += first
        self._scrollback.extend(rest)
