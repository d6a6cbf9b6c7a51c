from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import allure
import pytest

from team_conductor.config import InboxSettings, ModelTierSettings, Settings
from team_conductor.models import SYSTEM_AGENT_ID, AgentProfile, Task, TaskStatus
from team_conductor.orchestrator import Orchestrator
from team_conductor.ports import TaskFilter
from team_conductor.runtime.runtimes import RuntimeRegistry

pytestmark = [
    allure.epic("Control Process"),
    allure.feature("End-to-end Coordination"),
]


def _wait_for(predicate, timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture()
def orchestrator(tmp_path: Path, echo_runtime):
    settings = Settings(
        home_dir=tmp_path,
        inbox=InboxSettings(poll_interval_seconds=0.05, debounce_seconds=0.05),
        model_tiers=ModelTierSettings(team_runtime="echo"),
    )
    profiles = [
        AgentProfile(id="alice", name="Alice", runtime="echo", cwd=str(tmp_path / "agents" / "alice")),
        AgentProfile(id="bob", name="Bob", runtime="echo", cwd=str(tmp_path / "agents" / "bob")),
    ]
    orchestrator = Orchestrator(settings, runtimes=RuntimeRegistry([echo_runtime()]), profiles=profiles)
    orchestrator.start()
    yield orchestrator
    orchestrator.stop()


def test_assigned_task_runs_and_updates_stats(orchestrator: Orchestrator) -> None:
    task = orchestrator.create_task("Say hi", "greet the team", assigned_to="alice")

    assert _wait_for(lambda: orchestrator.task_store.get(task.id).status == TaskStatus.COMPLETED)
    stored = orchestrator.task_store.get(task.id)
    assert "Title: Say hi" in stored.result
    assert "Description: greet the team" in stored.result

    def _recorded() -> bool:
        stats = orchestrator.stats_store.get("alice")
        return stats is not None and stats.tasks_completed == 1

    assert _wait_for(_recorded)


def test_unassigned_task_goes_to_a_worker_not_the_system_agent(orchestrator: Orchestrator) -> None:
    task = orchestrator.create_task("Pick me up")

    assert _wait_for(lambda: orchestrator.task_store.get(task.id).status == TaskStatus.COMPLETED)
    assert orchestrator.task_store.get(task.id).assigned_to in {"alice", "bob"}


def test_system_schedules_fire_on_first_start(orchestrator: Orchestrator) -> None:
    assert _wait_for(
        lambda: len(orchestrator.task_store.list(TaskFilter(assigned_to=SYSTEM_AGENT_ID))) == 3,
    )
    names = {schedule.name for schedule in orchestrator.scheduler.list_schedules()}
    assert names == {"Self-Reflection", "Stats Aggregation", "Weekly Code Review", "Inbox Check"}


def test_inbox_delegation_round_trip(orchestrator: Orchestrator, tmp_path: Path) -> None:
    inbox = tmp_path / "agents" / "alice" / "inbox.jsonl"
    inbox.write_text(json.dumps({"title": "Review the parser", "assignedTo": "bob"}) + "\n", "utf-8")

    def _reply_done() -> bool:
        return any(
            task.title == "Result: Review the parser" and task.status == TaskStatus.COMPLETED
            for task in orchestrator.task_store.list()
        )

    assert _wait_for(_reply_done)
    delegated = next(task for task in orchestrator.task_store.list() if task.title == "Review the parser")
    assert (delegated.created_by, delegated.assigned_to) == ("alice", "bob")
    assert delegated.status == TaskStatus.COMPLETED
    assert orchestrator.relationship_store.get("alice", "bob").trust_score == pytest.approx(0.575)
    reply = next(task for task in orchestrator.task_store.list() if task.title.startswith("Result:"))
    assert (reply.created_by, reply.assigned_to) == ("bob", "alice")
    assert reply.tags == ["task-result"]


def test_team_operation_runs_on_team_runtime(orchestrator: Orchestrator) -> None:
    future = orchestrator.team_executor.execute("comms:summarize", "what happened today")

    assert future.result(timeout=15) == "what happened today"


def test_system_code_review_runs_through_team_queue(orchestrator: Orchestrator) -> None:
    task = Task(
        id="review-1",
        title="Weekly Code Review",
        description="Look for refactoring opportunities.",
        assigned_to=SYSTEM_AGENT_ID,
        tags=["code-improvement"],
    )

    result = orchestrator.run_system_task(task, threading.Event(), 15)

    assert result.success, result.error
    assert "Title: Weekly Code Review" in result.text


def test_system_stats_task_summarizes_locally(orchestrator: Orchestrator) -> None:
    task = Task(id="stats-1", title="Stats Aggregation", assigned_to=SYSTEM_AGENT_ID, tags=["stats"])

    result = orchestrator.run_system_task(task, threading.Event(), 15)

    assert result.success
    assert result.text.startswith("Team stats:")


def test_self_reflection_task_evolves_every_worker_soul(orchestrator: Orchestrator) -> None:
    task = Task(id="reflect-1", title="Self-Reflection", assigned_to=SYSTEM_AGENT_ID, tags=["self-improvement"])

    result = orchestrator.run_system_task(task, threading.Event(), 30)

    # the echo runtime answers with the prompt, whose JSON example is a valid reflection
    assert result.success, result.error
    assert result.text == "Reflected on 2 of 2 agent(s)."
    for agent_id in ("alice", "bob"):
        soul = orchestrator.souls.load(agent_id)
        assert soul.role == "Your Role Title"
        assert soul.version >= 2
    assert not orchestrator.souls.path(SYSTEM_AGENT_ID).exists()


def test_cancelled_system_task_stops_waiting_for_team_queue(orchestrator: Orchestrator) -> None:
    cancel = threading.Event()
    cancel.set()
    task = Task(id="review-2", title="Weekly Code Review", assigned_to=SYSTEM_AGENT_ID, tags=["code-improvement"])

    result = orchestrator.run_system_task(task, cancel, 15)

    assert not result.success
    assert result.error == "Cancelled"
