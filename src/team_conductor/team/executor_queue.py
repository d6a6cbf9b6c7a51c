"""Serialized queue in front of the shared team runtime."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass

from team_conductor.team.model_resolver import ModelResolver, TeamOperation

logger = logging.getLogger(__name__)

RuntimeCall = Callable[[str, str, str, str | None], str]


class TeamExecutorClosed(RuntimeError):
    """The queue no longer accepts work."""


@dataclass(slots=True)
class _QueueItem:
    operation: TeamOperation
    prompt: str
    cwd: str | None
    future: Future[str]


class TeamExecutor:
    """Runs team operations one at a time in submission order.

    ``execute_on_runtime(runtime_id, model, prompt, cwd)`` does the actual
    call; a failing item fails only its own future.
    """

    def __init__(self, model_resolver: ModelResolver, execute_on_runtime: RuntimeCall) -> None:
        self.model_resolver = model_resolver
        self._execute_on_runtime = execute_on_runtime
        self._queue: queue.Queue[_QueueItem | None] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._worker = threading.Thread(target=self._drain, name="team-executor", daemon=True)
        self._worker.start()

    @property
    def pending_count(self) -> int:
        """Items waiting, excluding the one in flight."""

        return self._queue.qsize()

    def execute(
        self,
        operation: TeamOperation | str,
        prompt: str,
        cwd: str | None = None,
    ) -> Future[str]:
        future: Future[str] = Future()
        with self._lock:
            if self._closed:
                raise TeamExecutorClosed("Team executor is shut down.")
            self._queue.put(_QueueItem(TeamOperation(operation), prompt, cwd, future))
        return future

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; queued items still drain before the worker exits."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(None)
        if wait:
            self._worker.join()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            if not item.future.set_running_or_notify_cancel():
                continue
            resolved = self.model_resolver.resolve(item.operation)
            logger.info(
                "Executing team operation: operation=%s runtime=%s model=%s",
                item.operation.value,
                resolved.runtime,
                resolved.model,
            )
            try:
                result = self._execute_on_runtime(resolved.runtime, resolved.model, item.prompt, item.cwd)
            except Exception as error:  # noqa: BLE001
                logger.error("Team operation failed: operation=%s error=%s", item.operation.value, error)
                item.future.set_exception(error)
            else:
                item.future.set_result(result)
