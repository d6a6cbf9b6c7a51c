"""Task collection persisted as one JSON array."""

from __future__ import annotations

import builtins
import dataclasses
import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from team_conductor.models import InvalidTaskTransition, Task, TaskStatus, can_transition
from team_conductor.ports import TaskFilter
from team_conductor.stores.json_files import read_json_list, write_json_file
from team_conductor.timers import DebouncedWriter, TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class TaskNotFoundError(LookupError):
    """Raised when updating a task id the store does not know."""


def new_task_id() -> str:
    return str(uuid.uuid4())


class FileTaskStore:
    """In-memory task cache flushed to ``<base>/tasks/tasks.json``."""

    def __init__(
        self,
        base_dir: Path,
        *,
        flush_delay_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.file_path = base_dir / "tasks" / "tasks.json"
        self._lock = threading.RLock()
        self._cache: dict[str, Task] | None = None
        self._writer = DebouncedWriter(
            flush_delay_seconds,
            timer_factory=timer_factory,
            name="tasks",
        )

    def create(self, task: Task) -> Task:
        with self._lock:
            tasks = self._load()
            if not task.id:
                task.id = new_task_id()
            tasks[task.id] = task
        self._writer.schedule(self._flush)
        logger.debug("Task created: task=%s status=%s", task.id, task.status.value)
        return task

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            return self._load().get(task_id)

    def update(self, task_id: str, **changes: Any) -> Task:
        """Apply field changes; status changes must follow the task lifecycle."""

        changes.pop("id", None)
        with self._lock:
            tasks = self._load()
            existing = tasks.get(task_id)
            if existing is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            requested = changes.get("status")
            if requested is not None:
                requested = TaskStatus(requested)
                if not can_transition(existing.status, requested):
                    raise InvalidTaskTransition(task_id, existing.status, requested)
                changes["status"] = requested
            updated = dataclasses.replace(existing, **changes)
            tasks[task_id] = updated
        self._writer.schedule(self._flush)
        return updated

    def delete(self, task_id: str) -> None:
        with self._lock:
            self._load().pop(task_id, None)
        self._writer.schedule(self._flush)

    def list(self, task_filter: TaskFilter | None = None) -> builtins.list[Task]:
        with self._lock:
            tasks = builtins.list(self._load().values())
        if task_filter is None:
            return tasks
        return [task for task in tasks if task_filter.matches(task)]

    def stop(self) -> None:
        """Force-flush pending writes before shutdown."""

        self._writer.flush_now(self._flush)

    def _load(self) -> dict[str, Task]:
        if self._cache is None:
            self._cache = {}
            for raw in read_json_list(self.file_path):
                try:
                    task = Task.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed stored task: %s", raw.get("id"))
                    continue
                self._cache[task.id] = task
        return self._cache

    def _flush(self) -> None:
        with self._lock:
            if self._cache is None:
                return
            payload = [task.to_dict() for task in self._cache.values()]
        write_json_file(self.file_path, payload)
