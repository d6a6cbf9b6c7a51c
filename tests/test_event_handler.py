from __future__ import annotations

import json
import random
from pathlib import Path

import allure
import pytest

from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_ID,
    AgentProfile,
    Task,
    TaskSource,
    TaskStatus,
)
from team_conductor.runtime.base import TokenUsage
from team_conductor.stores import FileCommunicationHub, FileRelationshipStore, FileStatsStore, FileTaskStore
from team_conductor.team.assigner import TaskAssigner
from team_conductor.team.event_handler import TEAM_FEED_CHANNEL, TeamEventHandler

pytestmark = [
    allure.epic("Team Coordination"),
    allure.feature("Task Event Handling"),
]


@pytest.fixture()
def team(tmp_path: Path, manual_timers):
    alice_dir = tmp_path / "agents" / "alice"
    bob_dir = tmp_path / "agents" / "bob"
    alice_dir.mkdir(parents=True)
    bob_dir.mkdir(parents=True)
    profiles = [
        AgentProfile(id="alice", name="Alice", runtime="claude-code", cwd=str(alice_dir)),
        AgentProfile(id="bob", name="Bob", runtime="codex", cwd=str(bob_dir)),
    ]
    bus = EventBus()
    tasks = FileTaskStore(tmp_path, timer_factory=manual_timers)
    stats = FileStatsStore(tmp_path, timer_factory=manual_timers)
    relationships = FileRelationshipStore(tmp_path, timer_factory=manual_timers)
    hub = FileCommunicationHub(tmp_path, bus, timer_factory=manual_timers)
    handler = TeamEventHandler(
        bus,
        tasks,
        stats,
        relationships,
        TaskAssigner(rng=random.Random(7)),
        lambda: profiles,
        hub,
    )
    handler.start()
    return handler, bus, tasks, stats, relationships, hub, profiles


def _finish(tasks: FileTaskStore, task: Task, *, success: bool = True, **changes) -> Task:
    tasks.update(task.id, status=TaskStatus.RUNNING)
    status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
    return tasks.update(task.id, status=status, **changes)


def test_created_task_without_assignee_is_assigned(team) -> None:
    _, bus, tasks, *_ = team
    updates: list[dict] = []
    bus.on(Events.TASK_UPDATED, updates.append)

    task = tasks.create(Task(id="", title="Write docs"))
    bus.emit(Events.TASK_CREATED, {"task": task})

    stored = tasks.get(task.id)
    assert stored.status == TaskStatus.ASSIGNED
    assert stored.assigned_to in {"alice", "bob"}
    assert updates[0]["task"].id == task.id


def test_system_profiles_are_never_assigned(team) -> None:
    handler, _, tasks, _, _, _, profiles = team
    profiles[:] = [AgentProfile(id=SYSTEM_AGENT_ID, name="System", runtime="claude-code", is_system=True)]

    task = tasks.create(Task(id="", title="Nobody can take this"))

    assert handler.assign(task) is None
    assert tasks.get(task.id).status == TaskStatus.PENDING


def test_completion_records_stats_and_trust_for_delegated_task(team) -> None:
    _, bus, tasks, stats, relationships, *_ = team
    stats_events: list[dict] = []
    trust_events: list[dict] = []
    bus.on(Events.STATS_UPDATED, stats_events.append)
    bus.on(Events.TRUST_UPDATED, trust_events.append)
    task = tasks.create(
        Task(id="", title="Port tests", status=TaskStatus.ASSIGNED, created_by="alice", assigned_to="bob"),
    )
    done = _finish(tasks, task, result="ported")

    bus.emit(
        Events.TASK_COMPLETED,
        {"task": done, "duration_ms": 1200, "usage": TokenUsage(300, 40)},
    )

    bob = stats.get("bob")
    assert (bob.tasks_completed, bob.total_execution_ms) == (1, 1200)
    assert (bob.total_tokens_in, bob.total_tokens_out) == (300, 40)
    assert stats_events[0]["agent_id"] == "bob"
    assert relationships.get("alice", "bob").trust_score == pytest.approx(0.575)
    assert trust_events[0]["relationship"].target_agent_id == "bob"


def test_self_created_task_does_not_touch_trust(team) -> None:
    _, bus, tasks, _, relationships, *_ = team
    task = tasks.create(
        Task(id="", title="Tidy", status=TaskStatus.ASSIGNED, created_by="bob", assigned_to="bob"),
    )

    bus.emit(Events.TASK_COMPLETED, {"task": _finish(tasks, task, success=False, error="boom")})

    assert relationships.get("bob", "bob") is None


def test_completion_is_broadcast_to_team_feed(team) -> None:
    _, bus, tasks, _, _, hub, _ = team
    task = tasks.create(Task(id="", title="Ship", status=TaskStatus.ASSIGNED, assigned_to="bob"))

    bus.emit(Events.TASK_COMPLETED, {"task": _finish(tasks, task, result="shipped v2")})

    channel = hub.find_channel(TEAM_FEED_CHANNEL)
    [message] = hub.get_messages(channel.id)
    assert message.sender_id == "bob"
    assert message.content == "**Bob** completed: Ship\n\nshipped v2"


def test_delegated_result_is_written_to_sender_inbox(team) -> None:
    _, bus, tasks, _, _, _, profiles = team
    task = tasks.create(
        Task(
            id="",
            title="Review API",
            status=TaskStatus.ASSIGNED,
            source=TaskSource.AGENT,
            created_by="alice",
            assigned_to="bob",
        ),
    )

    bus.emit(Events.TASK_COMPLETED, {"task": _finish(tasks, task, success=False, error="no access")})

    lines = (Path(profiles[0].cwd) / "inbox.jsonl").read_text("utf-8").splitlines()
    reply = json.loads(lines[0])
    assert reply["title"] == "Result: Review API"
    assert reply["from"] == "bob"
    assert reply["assignedTo"] == "alice"
    assert reply["tags"] == ["task-result"]
    assert "no access" in reply["description"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"tags": ["task-result"]},
        {"source": TaskSource.SYSTEM},
        {"created_by": SYSTEM_AGENT_ID},
    ],
)
def test_no_reply_for_system_or_result_tasks(team, overrides) -> None:
    _, bus, tasks, _, _, _, profiles = team
    values = {"created_by": "alice", "assigned_to": "bob", "status": TaskStatus.ASSIGNED}
    values.update(overrides)
    task = tasks.create(Task(id="", title="Loop guard", **values))

    bus.emit(Events.TASK_COMPLETED, {"task": _finish(tasks, task, result="ok")})

    assert not (Path(profiles[0].cwd) / "inbox.jsonl").exists()


def test_completion_assigns_waiting_pending_tasks(team) -> None:
    handler, bus, tasks, *_ = team
    handler.stop()
    waiting = tasks.create(Task(id="", title="Queued"))
    handler.start()
    task = tasks.create(Task(id="", title="Ship", status=TaskStatus.ASSIGNED, assigned_to="bob"))

    bus.emit(Events.TASK_COMPLETED, {"task": _finish(tasks, task, result="ok")})

    assert tasks.get(waiting.id).status == TaskStatus.ASSIGNED
