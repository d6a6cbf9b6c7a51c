from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from team_conductor.events import EventBus, Events
from team_conductor.models import TaskPriority, TaskSource, TaskStatus
from team_conductor.stores import FileTaskStore
from team_conductor.team.inbox import InboxRequest, InboxWatcher, append_to_inbox, derive_title, inbox_path

pytestmark = [
    allure.epic("Team Coordination"),
    allure.feature("Delegation Inbox"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _line(**fields) -> str:
    return json.dumps(fields) + "\n"


@pytest.fixture()
def watcher_setup(tmp_path: Path, manual_timers):
    store = FileTaskStore(tmp_path / "data", timer_factory=manual_timers)
    bus = EventBus()
    clock = FakeClock()
    watcher = InboxWatcher(store, bus, debounce_seconds=0.2, clock=clock)
    workspace = tmp_path / "alice"
    workspace.mkdir()
    watcher.watch_agent("alice", workspace)
    return watcher, store, bus, clock, inbox_path(workspace)


def test_derive_title_replaces_placeholders_with_first_description_line() -> None:
    assert derive_title("Fix login bug", "ignored") == "Fix login bug"
    assert derive_title("Task", "\n## Migrate the billing tables\nmore") == "Migrate the billing tables"
    assert derive_title(None, "") == "Untitled task"
    assert len(derive_title("", "x" * 300)) <= 80


def test_request_defaults_to_owner_and_normal_priority() -> None:
    request = InboxRequest.from_line(json.dumps({"title": "Review PR"}), "alice")

    assert request.assigned_to == "alice"
    assert request.sender == "alice"
    assert request.priority == TaskPriority.NORMAL
    assert request.tags == []


def test_request_rejects_non_object_lines() -> None:
    with pytest.raises(ValueError, match="JSON object"):
        InboxRequest.from_line("[1, 2]", "alice")


def test_poll_waits_for_quiet_period_then_creates_assigned_tasks(watcher_setup) -> None:
    watcher, store, bus, clock, path = watcher_setup
    created_events: list[dict] = []
    results: list[dict] = []
    bus.on(Events.TASK_CREATED, created_events.append)
    bus.on(Events.TASK_RESULT_READY, results.append)
    path.write_text(
        _line(title="Write tests", description="cover the parser", assignedTo="bob", priority="high"),
        "utf-8",
    )

    assert watcher.poll_once() == []
    clock.now = 0.1
    assert watcher.poll_once() == []
    clock.now = 0.3
    [task] = watcher.poll_once()

    assert task.status == TaskStatus.ASSIGNED
    assert task.source == TaskSource.AGENT
    assert (task.created_by, task.assigned_to) == ("alice", "bob")
    assert task.priority == TaskPriority.HIGH
    assert store.get(task.id) is not None
    assert created_events == [{"task": task}]
    assert results[0]["text"] == 'Delegated task to bob: "Write tests"'
    assert results[0]["agent_id"] == "alice"
    assert path.read_text("utf-8") == ""


def test_partial_trailing_line_stays_for_next_pass(watcher_setup) -> None:
    watcher, store, _, _, path = watcher_setup
    path.write_text(_line(title="First") + '{"title": "Sec', "utf-8")

    created = watcher.process_inbox("alice")

    assert [task.title for task in created] == ["First"]
    assert path.read_text("utf-8").endswith('{"title": "Sec')
    with path.open("a", encoding="utf-8") as handle:
        handle.write('ond"}\n')
    assert [task.title for task in watcher.process_inbox("alice")] == ["Second"]
    assert len(store.list()) == 2
    assert path.read_text("utf-8") == ""


def test_malformed_lines_are_skipped(watcher_setup) -> None:
    watcher, store, _, _, path = watcher_setup
    path.write_text(
        "not json\n" + _line(title="Bad", priority="urgent") + _line(title="Good", tags=["docs"]),
        "utf-8",
    )

    created = watcher.process_inbox("alice")

    assert [(task.title, task.tags) for task in created] == [("Good", ["docs"])]
    assert [task.title for task in store.list()] == ["Good"]
    assert path.read_text("utf-8") == ""


def test_missing_inbox_and_unknown_agent_create_nothing(watcher_setup) -> None:
    watcher, *_ = watcher_setup

    assert watcher.poll_once() == []
    assert watcher.process_inbox("nobody") == []
    assert watcher.watched_agents() == ["alice"]
    watcher.stop_all()
    assert watcher.watched_agents() == []


def test_lines_appended_while_processing_are_kept(watcher_setup) -> None:
    watcher, store, bus, clock, path = watcher_setup
    workspace = path.parent

    def _late_writers(payload: dict) -> None:
        if payload["task"].title == "First":
            append_to_inbox(workspace, {"title": "Locked writer"})
            with path.open("a", encoding="utf-8") as handle:
                handle.write(_line(title="Plain writer"))

    bus.on(Events.TASK_CREATED, _late_writers)
    append_to_inbox(workspace, {"title": "First"})
    watcher.poll_once()
    clock.now = 0.3

    assert [task.title for task in watcher.poll_once()] == ["First"]
    assert "Plain writer" in path.read_text("utf-8")
    assert watcher.poll_once() == []
    clock.now = 0.6
    assert [task.title for task in watcher.poll_once()] == ["Locked writer", "Plain writer"]
    assert sorted(task.title for task in store.list()) == ["First", "Locked writer", "Plain writer"]
    assert path.read_text("utf-8") == ""


def test_offset_survives_when_the_file_grows_between_passes(watcher_setup) -> None:
    watcher, store, _, _, path = watcher_setup
    path.write_text(_line(title="One") + '{"title": "Tw', "utf-8")

    assert [task.title for task in watcher.process_inbox("alice")] == ["One"]
    with path.open("a", encoding="utf-8") as handle:
        handle.write('o"}\n' + _line(title="Three"))

    assert [task.title for task in watcher.process_inbox("alice")] == ["Two", "Three"]
    assert [task.title for task in store.list()].count("One") == 1
