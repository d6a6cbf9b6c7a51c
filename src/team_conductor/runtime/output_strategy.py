"""Strategies that turn raw subprocess stdout into progress and display events."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from team_conductor.runtime.base import (
    ExecutionProgress,
    OutputCallback,
    ProgressCallback,
    ProgressKind,
)
from team_conductor.runtime.text import strip_ansi_simple

PROGRESS_THROTTLE_SECONDS = 5.0
PROGRESS_SUMMARY_CHARS = 80
FIRST_CHUNK_SUMMARY = "Processing request..."

LineParser = Callable[[str, ProgressCallback], None]
LineRenderer = Callable[[str, OutputCallback], None]
ChunkClassifier = Callable[[str], ProgressKind]


@dataclass(slots=True)
class OutputCallbacks:
    on_progress: ProgressCallback | None = None
    on_output: OutputCallback | None = None


class OutputStrategy(Protocol):
    def process_chunk(self, chunk: str, callbacks: OutputCallbacks) -> None:
        """Consume one stdout chunk."""

    def flush(self, callbacks: OutputCallbacks) -> None:
        """Emit whatever is still buffered when the process closes."""


class StructuredOutputStrategy:
    """Line-buffered strategy for newline-delimited JSON event streams.

    Only complete lines reach the parser; a trailing partial line is held
    until the next chunk or treated as final on ``flush``.
    """

    def __init__(self, parse_line: LineParser, render_line: LineRenderer) -> None:
        self._parse_line = parse_line
        self._render_line = render_line
        self._buffer = ""

    def process_chunk(self, chunk: str, callbacks: OutputCallbacks) -> None:
        if callbacks.on_progress is None and callbacks.on_output is None:
            return
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._emit(line, callbacks)

    def flush(self, callbacks: OutputCallbacks) -> None:
        line, self._buffer = self._buffer, ""
        self._emit(line, callbacks)

    def _emit(self, line: str, callbacks: OutputCallbacks) -> None:
        if not line.strip():
            return
        if callbacks.on_progress is not None:
            self._parse_line(line, callbacks.on_progress)
        if callbacks.on_output is not None:
            self._render_line(line, callbacks.on_output)


class ThrottledOutputStrategy:
    """Raw-text strategy: every chunk is displayed, progress is rate limited."""

    def __init__(
        self,
        classify: ChunkClassifier,
        *,
        clock: Callable[[], float] = time.monotonic,
        interval_seconds: float = PROGRESS_THROTTLE_SECONDS,
    ) -> None:
        self._classify = classify
        self._clock = clock
        self._interval_seconds = interval_seconds
        self._last_progress_at = 0.0
        self._first_chunk_seen = False

    def process_chunk(self, chunk: str, callbacks: OutputCallbacks) -> None:
        cleaned = strip_ansi_simple(chunk)
        if callbacks.on_output is not None:
            callbacks.on_output(cleaned)
        if callbacks.on_progress is None:
            return

        if not self._first_chunk_seen:
            self._first_chunk_seen = True
            self._last_progress_at = self._clock()
            callbacks.on_progress(ExecutionProgress(ProgressKind.THINKING, FIRST_CHUNK_SUMMARY))

        now = self._clock()
        if now - self._last_progress_at <= self._interval_seconds:
            return
        self._last_progress_at = now
        summary = cleaned.strip()
        if summary:
            callbacks.on_progress(
                ExecutionProgress(self._classify(summary), summary[:PROGRESS_SUMMARY_CHARS]),
            )

    def flush(self, callbacks: OutputCallbacks) -> None:
        return None
