"""Runs assigned tasks on their agents, at most two at a time per agent."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_ID,
    TERMINAL_STATUSES,
    Task,
    TaskPriority,
    TaskStatus,
    utc_now,
    utc_now_iso,
)
from team_conductor.ports import TaskFilter, TaskStore
from team_conductor.runtime.base import ExecutionResult, FailureClass
from team_conductor.runtime.text import truncate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 6 * 60 * 60
MAX_CONCURRENT_TASKS_PER_AGENT = 2
MAX_ERROR_CHARS = 500
INTERRUPTED_ERROR = "Interrupted: the control process restarted while the task was running"

AgentCall = Callable[[str, str, threading.Event, float], ExecutionResult]
SystemTaskCall = Callable[[Task, threading.Event, float], ExecutionResult]


@dataclass(slots=True)
class CancelResult:
    success: bool
    error: str | None = None


def build_task_prompt(task: Task) -> str:
    parts = [
        "You have been assigned a task. Complete it and provide a summary of what you did.",
        "",
        f"Title: {task.title}",
        f"Description: {task.description}",
    ]
    if task.priority != TaskPriority.NORMAL:
        parts.append(f"Priority: {task.priority.value}")
    if task.tags:
        parts.append(f"Tags: {', '.join(task.tags)}")
    return "\n".join(parts)


class TaskExecutor:
    """Bridges ``assigned`` tasks to agent executions.

    ``execute_on_agent(agent_id, prompt, cancel, timeout_seconds)`` runs the
    prompt and must honour the cancel event and the timeout. Tasks assigned
    to the system agent go to ``run_system_task`` instead when one is given.
    """

    def __init__(  # noqa: PLR0913
        self,
        task_store: TaskStore,
        event_bus: EventBus,
        execute_on_agent: AgentCall,
        is_agent_available: Callable[[str], bool],
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_concurrent_per_agent: int = MAX_CONCURRENT_TASKS_PER_AGENT,
        run_system_task: SystemTaskCall | None = None,
    ) -> None:
        self.task_store = task_store
        self.event_bus = event_bus
        self.execute_on_agent = execute_on_agent
        self.is_agent_available = is_agent_available
        self.timeout_seconds = timeout_seconds
        self.max_concurrent_per_agent = max_concurrent_per_agent
        self.run_system_task = run_system_task
        self._lock = threading.RLock()
        self._active: dict[str, int] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._stopped = False

    def start(self) -> None:
        self._stopped = False
        self._unsubscribers.extend(
            [
                self.event_bus.on(Events.TASK_CREATED, self._on_task_event),
                self.event_bus.on(Events.TASK_UPDATED, self._on_task_event),
            ],
        )
        self.recover()
        logger.info("Task executor started: timeout_seconds=%s", self.timeout_seconds)

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            events = list(self._cancel_events.values())
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for event in events:
            event.set()

    def active_count(self, agent_id: str) -> int:
        with self._lock:
            return self._active.get(agent_id, 0)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Join running task threads; True when none is left."""

        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
        with self._lock:
            return not self._threads

    def recover(self) -> None:
        """Fail tasks left ``running`` by a previous process, then dispatch ``assigned`` ones."""

        for task in self.task_store.list(TaskFilter(status=TaskStatus.RUNNING)):
            logger.warning("Failing interrupted task: task=%s title=%s", task.id, task.title)
            updated = self.task_store.update(
                task.id,
                status=TaskStatus.FAILED,
                error=INTERRUPTED_ERROR,
                completed_at=utc_now_iso(),
            )
            self.event_bus.emit(
                Events.TASK_COMPLETED,
                {"task": updated, "duration_ms": _elapsed_ms(updated.started_at)},
            )
        for task in self.task_store.list(TaskFilter(status=TaskStatus.ASSIGNED)):
            if task.assigned_to:
                self.try_execute(task.id, task.assigned_to)

    def try_execute(self, task_id: str, agent_id: str) -> bool:
        """Start the task on its own thread if the agent has a free slot."""

        with self._lock:
            if self._stopped or task_id in self._threads:
                return False
            active = self._active.get(agent_id, 0)
            if active >= self.max_concurrent_per_agent:
                logger.debug("Agent at capacity: agent=%s active=%s task=%s", agent_id, active, task_id)
                return False
            if not self.is_agent_available(agent_id):
                logger.warning("Agent not available: agent=%s task=%s", agent_id, task_id)
                return False
            task = self.task_store.get(task_id)
            if task is None or task.status != TaskStatus.ASSIGNED:
                return False
            started_at = utc_now_iso()
            running = self.task_store.update(task_id, status=TaskStatus.RUNNING, started_at=started_at)
            self._active[agent_id] = active + 1
            cancel = threading.Event()
            self._cancel_events[task_id] = cancel
            thread = threading.Thread(
                target=self._execute,
                args=(running, agent_id, cancel),
                name=f"task-{task_id[:8]}",
                daemon=True,
            )
            self._threads[task_id] = thread
        self.event_bus.emit(Events.TASK_UPDATED, {"task": running})
        thread.start()
        return True

    def cancel_task(self, task_id: str) -> CancelResult:
        task = self.task_store.get(task_id)
        if task is None:
            return CancelResult(success=False, error="Task not found")
        if task.status not in (TaskStatus.RUNNING, TaskStatus.ASSIGNED, TaskStatus.PENDING):
            return CancelResult(success=False, error=f"Task is {task.status.value}, not running")
        with self._lock:
            cancel = self._cancel_events.get(task_id)
            updated = self.task_store.update(
                task_id,
                status=TaskStatus.CANCELLED,
                error="Cancelled by user",
                completed_at=utc_now_iso(),
            )
        if cancel is not None:
            cancel.set()
        self.event_bus.emit(
            Events.TASK_COMPLETED,
            {"task": updated, "duration_ms": _elapsed_ms(updated.started_at)},
        )
        logger.info("Task cancelled: task=%s title=%s", task_id, task.title)
        return CancelResult(success=True)

    def _on_task_event(self, payload: dict[str, Any]) -> None:
        task: Task = payload["task"]
        if task.status == TaskStatus.ASSIGNED and task.assigned_to:
            self.try_execute(task.id, task.assigned_to)

    def _execute(self, task: Task, agent_id: str, cancel: threading.Event) -> None:
        self.event_bus.emit(
            Events.TASK_RESULT_READY,
            {
                "task_id": task.id,
                "agent_id": agent_id,
                "title": task.title,
                "text": f'Starting task: "{task.title}"',
                "success": True,
            },
        )
        logger.info("Executing task: task=%s agent=%s title=%s", task.id, agent_id, task.title)
        try:
            if agent_id == SYSTEM_AGENT_ID and self.run_system_task is not None:
                result = self.run_system_task(task, cancel, self.timeout_seconds)
            else:
                result = self.execute_on_agent(agent_id, build_task_prompt(task), cancel, self.timeout_seconds)
        except Exception as error:
            logger.exception("Task execution crashed: task=%s agent=%s", task.id, agent_id)
            result = ExecutionResult(success=False, error=truncate(str(error), MAX_ERROR_CHARS))
        try:
            self._finish(task, agent_id, result)
        finally:
            with self._lock:
                remaining = self._active.get(agent_id, 1) - 1
                if remaining <= 0:
                    self._active.pop(agent_id, None)
                else:
                    self._active[agent_id] = remaining
                self._cancel_events.pop(task.id, None)
                self._threads.pop(task.id, None)
            self._pick_next(agent_id)

    def _finish(self, task: Task, agent_id: str, result: ExecutionResult) -> None:
        with self._lock:
            current = self.task_store.get(task.id)
            if current is None or current.status in TERMINAL_STATUSES:
                # cancelled while running; the cancel path already reported it
                return
            if result.success:
                updated = self.task_store.update(
                    task.id,
                    status=TaskStatus.COMPLETED,
                    result=result.text,
                    completed_at=utc_now_iso(),
                )
            else:
                error = result.error or "Task execution failed"
                if result.failure_class == FailureClass.TIMEOUT:
                    error = f"Task timed out after {self.timeout_seconds:g} seconds"
                updated = self.task_store.update(
                    task.id,
                    status=TaskStatus.FAILED,
                    error=truncate(error, MAX_ERROR_CHARS),
                    completed_at=utc_now_iso(),
                )
        duration_ms = _elapsed_ms(task.started_at)
        self.event_bus.emit(
            Events.TASK_COMPLETED,
            {"task": updated, "duration_ms": duration_ms, "usage": result.usage},
        )
        self.event_bus.emit(
            Events.TASK_RESULT_READY,
            {
                "task_id": task.id,
                "agent_id": agent_id,
                "title": task.title,
                "text": result.text if result.success else f"Task failed: {updated.error}",
                "success": result.success,
            },
        )
        if result.success:
            logger.info("Task completed: task=%s agent=%s duration_ms=%s", task.id, agent_id, duration_ms)
        else:
            logger.warning("Task failed: task=%s agent=%s error=%s", task.id, agent_id, updated.error)

    def _pick_next(self, agent_id: str) -> None:
        for task in self.task_store.list(TaskFilter(status=TaskStatus.ASSIGNED, assigned_to=agent_id)):
            if not self.try_execute(task.id, agent_id):
                return


def _elapsed_ms(started_at: str | None) -> int:
    if not started_at:
        return 0
    return max(0, int((utc_now() - datetime.fromisoformat(started_at)).total_seconds() * 1000))
