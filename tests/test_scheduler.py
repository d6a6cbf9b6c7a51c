from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_ID,
    PersistedSchedule,
    ScheduleSource,
    SchedulePattern,
    TaskSource,
    TaskStatus,
    TaskTemplate,
)
from team_conductor.stores import FileScheduleStore, FileTaskStore
from team_conductor.team.cron import CronParseError
from team_conductor.team.scheduler import (
    SYSTEM_SCHEDULES,
    SystemScheduleDefinition,
    TaskScheduler,
    is_due,
)

pytestmark = [
    allure.epic("Team Coordination"),
    allure.feature("Scheduling"),
]

NOW = datetime(2026, 3, 4, 10, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    "pattern",
    [
        SchedulePattern(cron="0 */3 * * *"),
        SchedulePattern(interval_ms=3_600_000),
        SchedulePattern(hour=9, minute=0),
    ],
)
def test_schedule_that_never_ran_is_due(pattern: SchedulePattern) -> None:
    assert is_due(pattern, None, NOW)


def test_interval_is_due_only_after_full_interval() -> None:
    pattern = SchedulePattern(interval_ms=60_000)

    assert not is_due(pattern, NOW - timedelta(seconds=59), NOW)
    assert is_due(pattern, NOW - timedelta(seconds=61), NOW)


def test_cron_is_due_once_next_occurrence_has_passed() -> None:
    pattern = SchedulePattern(cron="0 * * * *")
    last_run = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)

    assert not is_due(pattern, last_run, datetime(2026, 3, 4, 10, 59, tzinfo=UTC))
    assert is_due(pattern, last_run, datetime(2026, 3, 4, 11, 0, tzinfo=UTC))
    # a laptop asleep for hours still fires a single run
    assert is_due(pattern, last_run, datetime(2026, 3, 4, 16, 7, tzinfo=UTC))


def test_time_of_day_pattern_honours_day_of_week() -> None:
    sunday_three_am = SchedulePattern(hour=3, minute=0, day_of_week=0)
    last_run = datetime(2026, 3, 1, 3, 0, tzinfo=UTC)

    assert not is_due(sunday_three_am, last_run, datetime(2026, 3, 7, 23, 0, tzinfo=UTC))
    assert is_due(sunday_three_am, last_run, datetime(2026, 3, 8, 3, 0, tzinfo=UTC))


def test_empty_pattern_is_never_due() -> None:
    assert not is_due(SchedulePattern(), None, NOW)


def _scheduler(tmp_path: Path, manual_timers, **kwargs) -> tuple[TaskScheduler, FileTaskStore, EventBus]:
    task_store = FileTaskStore(tmp_path, timer_factory=manual_timers)
    schedule_store = FileScheduleStore(tmp_path, timer_factory=manual_timers)
    bus = EventBus()
    scheduler = TaskScheduler(task_store, schedule_store, bus, clock=lambda: NOW, **kwargs)
    return scheduler, task_store, bus


def test_sync_seeds_builtin_schedules_and_drops_stale_ones(tmp_path: Path, manual_timers) -> None:
    scheduler, _, _ = _scheduler(tmp_path, manual_timers)
    store = scheduler.schedule_store
    store.create(
        PersistedSchedule(
            id="",
            name="Retired Digest",
            pattern=SchedulePattern(cron="0 8 * * *"),
            task_template=TaskTemplate(title="Digest"),
            source=ScheduleSource.SYSTEM,
        ),
    )
    scheduler.register("Nightly build", SchedulePattern(hour=2, minute=0), TaskTemplate(title="Build"))

    scheduler.sync_system_schedules()
    scheduler.sync_system_schedules()

    names = sorted(item.name for item in store.list())
    assert names == sorted([*(item.name for item in SYSTEM_SCHEDULES), "Nightly build"])


def test_register_updates_schedule_with_same_name(tmp_path: Path, manual_timers) -> None:
    scheduler, _, _ = _scheduler(tmp_path, manual_timers, system_schedules=())

    first = scheduler.register("Backup", SchedulePattern(interval_ms=60_000), TaskTemplate(title="Backup"))
    second = scheduler.register("Backup", SchedulePattern(interval_ms=120_000), TaskTemplate(title="Backup"))

    assert first.id == second.id
    assert [item.pattern.interval_ms for item in scheduler.list_schedules()] == [120_000]


def test_tick_fires_system_task_for_system_agent_once(tmp_path: Path, manual_timers) -> None:
    definition = SystemScheduleDefinition(
        name="Self-Reflection",
        pattern=SchedulePattern(cron="0 */3 * * *"),
        task_template=TaskTemplate(title="Self-Reflection", source=TaskSource.SYSTEM, tags=["self-improvement"]),
    )
    scheduler, task_store, bus = _scheduler(tmp_path, manual_timers, system_schedules=(definition,))
    created: list[dict] = []
    bus.on(Events.TASK_CREATED, created.append)
    scheduler.sync_system_schedules()

    summary = scheduler.tick()
    again = scheduler.tick()

    assert summary.fired == ["Self-Reflection"]
    assert again.fired == []
    task = summary.tasks[0]
    assert task.status == TaskStatus.ASSIGNED
    assert task.assigned_to == SYSTEM_AGENT_ID
    assert task.tags == ["self-improvement"]
    assert [payload["task"].id for payload in created] == [task.id]
    assert task_store.get(task.id) is not None
    assert scheduler.list_schedules()[0].last_run == NOW.isoformat()


def test_tick_creates_pending_task_for_user_schedule(tmp_path: Path, manual_timers) -> None:
    scheduler, _, _ = _scheduler(tmp_path, manual_timers, system_schedules=())
    scheduler.register(
        "Dependency audit",
        SchedulePattern(interval_ms=60_000),
        TaskTemplate(title="Audit dependencies", source=TaskSource.SCHEDULE, created_by="alice"),
    )

    task = scheduler.tick().tasks[0]

    assert task.status == TaskStatus.PENDING
    assert task.assigned_to is None
    assert task.created_by == "alice"
    assert task.source == TaskSource.SCHEDULE


def test_tick_skips_disabled_and_counts_invalid_schedules(tmp_path: Path, manual_timers) -> None:
    scheduler, _, _ = _scheduler(tmp_path, manual_timers, system_schedules=())
    disabled = scheduler.register("Disabled", SchedulePattern(interval_ms=1000), TaskTemplate(title="Off"))
    scheduler.schedule_store.update(disabled.id, enabled=False)
    with pytest.raises(CronParseError):
        scheduler.register("Broken", SchedulePattern(cron="not a cron"), TaskTemplate(title="Broken"))
    scheduler.schedule_store.create(
        PersistedSchedule(
            id="",
            name="Broken",
            pattern=SchedulePattern(cron="not a cron"),
            task_template=TaskTemplate(title="Broken"),
        ),
    )

    summary = scheduler.tick()

    assert summary.fired == []
    assert summary.errors == 1


def test_inbox_check_is_seeded_disabled_and_never_fires(tmp_path: Path, manual_timers) -> None:
    scheduler, _, _ = _scheduler(tmp_path, manual_timers)
    scheduler.sync_system_schedules()

    by_name = {item.name: item for item in scheduler.list_schedules()}
    summary = scheduler.tick()

    assert not by_name["Inbox Check"].enabled
    assert by_name["Inbox Check"].task_template.tags == ["inbox"]
    assert "Inbox Check" not in summary.fired
    assert sorted(summary.fired) == ["Self-Reflection", "Stats Aggregation", "Weekly Code Review"]
