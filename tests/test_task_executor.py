from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest

from team_conductor.events import EventBus, Events
from team_conductor.models import SYSTEM_AGENT_ID, Task, TaskPriority, TaskStatus
from team_conductor.runtime.base import ExecutionResult, FailureClass, TokenUsage
from team_conductor.stores import FileTaskStore
from team_conductor.team.task_executor import INTERRUPTED_ERROR, TaskExecutor, build_task_prompt

pytestmark = [
    allure.epic("Team Coordination"),
    allure.feature("Task Execution"),
]


class FakeAgent:
    """Stands in for a runtime; blocks until ``gate`` opens or the task is cancelled."""

    def __init__(self) -> None:
        self.gate = threading.Event()
        self.gate.set()
        self.prompts: list[tuple[str, str]] = []
        self.result: ExecutionResult | None = None
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def __call__(self, agent_id: str, prompt: str, cancel: threading.Event, timeout: float) -> ExecutionResult:
        with self._lock:
            self.prompts.append((agent_id, prompt))
        while not (self.gate.wait(0.01) or cancel.is_set()):
            pass
        if cancel.is_set():
            return ExecutionResult(False, error="Execution cancelled", failure_class=FailureClass.CANCELLED)
        if self.error is not None:
            raise self.error
        return self.result or ExecutionResult(True, text=f"done by {agent_id}", usage=TokenUsage(10, 5))


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def setup(tmp_path: Path, manual_timers):
    store = FileTaskStore(tmp_path, timer_factory=manual_timers)
    bus = EventBus()
    agent = FakeAgent()
    available = {"alice": True, "bob": True}
    executor = TaskExecutor(
        store,
        bus,
        agent,
        lambda agent_id: available.get(agent_id, False),
        timeout_seconds=1.5,
    )
    yield executor, store, bus, agent, available
    agent.gate.set()
    executor.stop()
    executor.wait_idle(5)


def _assigned(store: FileTaskStore, title: str, agent_id: str = "alice", **fields) -> Task:
    return store.create(Task(id="", title=title, status=TaskStatus.ASSIGNED, assigned_to=agent_id, **fields))


def _status(store: FileTaskStore, task: Task) -> TaskStatus:
    return store.get(task.id).status


def test_build_task_prompt_mentions_priority_and_tags_only_when_set() -> None:
    plain = build_task_prompt(Task(id="t", title="Fix", description="the bug"))
    rich = build_task_prompt(Task(id="t", title="Fix", priority=TaskPriority.HIGH, tags=["api", "urgent"]))

    assert "Title: Fix\nDescription: the bug" in plain
    assert "Priority" not in plain
    assert "Priority: high" in rich
    assert rich.endswith("Tags: api, urgent")


def test_assigned_task_runs_to_completion_with_events(setup) -> None:
    executor, store, bus, agent, _ = setup
    completed: list[dict] = []
    results: list[dict] = []
    bus.on(Events.TASK_COMPLETED, completed.append)
    bus.on(Events.TASK_RESULT_READY, results.append)
    executor.start()

    task = _assigned(store, "Write changelog")
    bus.emit(Events.TASK_CREATED, {"task": task})

    assert _wait_for(lambda: _status(store, task) == TaskStatus.COMPLETED)
    assert executor.wait_idle(5)
    stored = store.get(task.id)
    assert stored.result == "done by alice"
    assert stored.started_at and stored.completed_at
    assert agent.prompts[0][0] == "alice"
    assert "Title: Write changelog" in agent.prompts[0][1]
    assert completed[0]["usage"] == TokenUsage(10, 5)
    assert [item["text"] for item in results] == ['Starting task: "Write changelog"', "done by alice"]


def test_at_most_two_tasks_per_agent_run_at_once(setup) -> None:
    executor, store, _, agent, _ = setup
    agent.gate.clear()
    tasks = [_assigned(store, f"Task {index}") for index in range(3)]

    executor.start()

    assert _wait_for(lambda: len(agent.prompts) == 2)
    assert executor.active_count("alice") == 2
    statuses = sorted(_status(store, task).value for task in tasks)
    assert statuses == ["assigned", "running", "running"]

    agent.gate.set()
    assert _wait_for(lambda: all(_status(store, task) == TaskStatus.COMPLETED for task in tasks))
    assert _wait_for(lambda: executor.active_count("alice") == 0)


def test_timeout_is_reported_with_configured_limit(setup) -> None:
    executor, store, _, agent, _ = setup
    agent.result = ExecutionResult(False, error="killed", failure_class=FailureClass.TIMEOUT)
    task = _assigned(store, "Slow job")

    executor.start()

    assert _wait_for(lambda: _status(store, task) == TaskStatus.FAILED)
    assert store.get(task.id).error == "Task timed out after 1.5 seconds"


def test_crashing_execution_fails_the_task(setup) -> None:
    executor, store, _, agent, _ = setup
    agent.error = RuntimeError("kaboom")
    task = _assigned(store, "Explodes")

    executor.start()

    assert _wait_for(lambda: _status(store, task) == TaskStatus.FAILED)
    assert store.get(task.id).error == "kaboom"


def test_cancel_running_task_reports_once(setup) -> None:
    executor, store, bus, agent, _ = setup
    agent.gate.clear()
    completed: list[dict] = []
    bus.on(Events.TASK_COMPLETED, completed.append)
    task = _assigned(store, "Long refactor")
    executor.start()
    assert _wait_for(lambda: _status(store, task) == TaskStatus.RUNNING)

    outcome = executor.cancel_task(task.id)

    assert outcome.success
    assert executor.wait_idle(5)
    assert _status(store, task) == TaskStatus.CANCELLED
    assert store.get(task.id).error == "Cancelled by user"
    assert len(completed) == 1


def test_cancel_rejects_unknown_and_finished_tasks(setup) -> None:
    executor, store, *_ = setup
    done = store.create(Task(id="", title="Old", status=TaskStatus.COMPLETED))

    assert executor.cancel_task("missing").error == "Task not found"
    assert executor.cancel_task(done.id).error == "Task is completed, not running"


def test_restart_fails_interrupted_running_tasks(setup) -> None:
    executor, store, bus, agent, _ = setup
    agent.gate.clear()
    stale = _assigned(store, "Was running")
    store.update(stale.id, status=TaskStatus.RUNNING)
    completed: list[dict] = []
    bus.on(Events.TASK_COMPLETED, completed.append)

    executor.start()

    assert _status(store, stale) == TaskStatus.FAILED
    assert store.get(stale.id).error == INTERRUPTED_ERROR
    assert completed[0]["task"].id == stale.id
    assert agent.prompts == []


def test_unavailable_agent_leaves_task_assigned(setup) -> None:
    executor, store, _, agent, available = setup
    available["bob"] = False
    task = _assigned(store, "Needs bob", agent_id="bob")

    executor.start()

    assert not executor.try_execute(task.id, "bob")
    assert _status(store, task) == TaskStatus.ASSIGNED
    assert agent.prompts == []


def test_system_agent_tasks_bypass_the_agent_runtime(setup) -> None:
    executor, store, _, agent, available = setup
    available[SYSTEM_AGENT_ID] = True
    handled: list[tuple[str, float]] = []

    def run_system_task(task: Task, cancel: threading.Event, timeout: float) -> ExecutionResult:
        handled.append((task.title, timeout))
        return ExecutionResult(True, text="Team stats:\n- no executions recorded yet")

    executor.run_system_task = run_system_task
    executor.start()
    task = _assigned(store, "Stats Aggregation", agent_id=SYSTEM_AGENT_ID, tags=["stats"])

    assert executor.try_execute(task.id, SYSTEM_AGENT_ID)
    assert _wait_for(lambda: _status(store, task) == TaskStatus.COMPLETED)
    assert handled == [("Stats Aggregation", 1.5)]
    assert agent.prompts == []
    assert store.get(task.id).result.startswith("Team stats:")
