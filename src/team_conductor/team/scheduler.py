"""Recurring task schedules: built-in system schedules plus user and agent ones."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_ID,
    PersistedSchedule,
    ScheduleSource,
    SchedulePattern,
    Task,
    TaskPriority,
    TaskSource,
    TaskStatus,
    TaskTemplate,
)
from team_conductor.ports import TaskStore
from team_conductor.stores.schedule_store import FileScheduleStore
from team_conductor.team.cron import next_cron_run, parse_cron

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True, slots=True)
class SystemScheduleDefinition:
    name: str
    pattern: SchedulePattern
    task_template: TaskTemplate
    enabled: bool = True


SYSTEM_SCHEDULES: tuple[SystemScheduleDefinition, ...] = (
    SystemScheduleDefinition(
        name="Self-Reflection",
        pattern=SchedulePattern(cron="0 */3 * * *"),
        task_template=TaskTemplate(
            title="Self-Reflection",
            description="Analyze recent performance, extract learnings, adjust traits and goals.",
            source=TaskSource.SYSTEM,
            tags=["self-improvement"],
        ),
    ),
    SystemScheduleDefinition(
        name="Stats Aggregation",
        pattern=SchedulePattern(cron="0 */6 * * *"),
        task_template=TaskTemplate(
            title="Stats Aggregation",
            description="Aggregate agent performance stats across the team.",
            priority=TaskPriority.LOW,
            source=TaskSource.SYSTEM,
            tags=["stats"],
        ),
    ),
    SystemScheduleDefinition(
        name="Weekly Code Review",
        pattern=SchedulePattern(cron="0 3 * * 0"),
        task_template=TaskTemplate(
            title="Weekly Code Review",
            description="Review recent code changes and suggest improvements.",
            source=TaskSource.SYSTEM,
            tags=["code-improvement"],
        ),
    ),
    SystemScheduleDefinition(
        name="Inbox Check",
        pattern=SchedulePattern(cron="0 */3 * * *"),
        task_template=TaskTemplate(
            title="Inbox Check",
            description="Scan agent inboxes for new commands or messages and process them.",
            priority=TaskPriority.LOW,
            source=TaskSource.SYSTEM,
            tags=["inbox"],
        ),
        enabled=False,
    ),
)


def is_due(pattern: SchedulePattern, last_run: datetime | None, now: datetime) -> bool:
    """Return True when the schedule should fire at ``now``.

    A schedule that never ran is due immediately. Cron and time-of-day
    patterns are due once their next occurrence after ``last_run`` has
    passed, so a tick missed while asleep fires exactly once on the next check.
    """

    if pattern.cron:
        expression: str | None = pattern.cron
    elif pattern.interval_ms:
        if last_run is None:
            return True
        return now - last_run >= timedelta(milliseconds=pattern.interval_ms)
    elif pattern.hour is not None and pattern.minute is not None:
        day_of_week = "*" if pattern.day_of_week is None else str(pattern.day_of_week)
        expression = f"{pattern.minute} {pattern.hour} * * {day_of_week}"
    else:
        return False
    if last_run is None:
        parse_cron(expression)
        return True
    upcoming = next_cron_run(expression, last_run.astimezone(now.tzinfo))
    return upcoming is not None and upcoming <= now


@dataclass(slots=True)
class TickSummary:
    fired: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    errors: int = 0


class TaskScheduler:
    """Evaluates persisted schedules on a fixed tick and instantiates due tasks."""

    def __init__(  # noqa: PLR0913
        self,
        task_store: TaskStore,
        schedule_store: FileScheduleStore,
        event_bus: EventBus,
        *,
        tick_seconds: float = 60.0,
        clock: Clock = local_now,
        system_schedules: tuple[SystemScheduleDefinition, ...] = SYSTEM_SCHEDULES,
    ) -> None:
        self.task_store = task_store
        self.schedule_store = schedule_store
        self.event_bus = event_bus
        self.tick_seconds = tick_seconds
        self.system_schedules = system_schedules
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_lock = threading.Lock()

    def start(self) -> None:
        if self._thread is not None:
            return
        self.sync_system_schedules()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="task-scheduler", daemon=True)
        self._thread.start()
        logger.info("Task scheduler started: tick_seconds=%s", self.tick_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.tick_seconds + 1)
            self._thread = None

    def list_schedules(self) -> list[PersistedSchedule]:
        return self.schedule_store.list()

    def register(
        self,
        name: str,
        pattern: SchedulePattern,
        task_template: TaskTemplate,
        *,
        source: ScheduleSource = ScheduleSource.USER,
    ) -> PersistedSchedule:
        """Create a schedule, or update the existing one carrying the same name.

        A malformed cron expression raises ``CronParseError``.
        """

        if pattern.cron:
            parse_cron(pattern.cron)
        for schedule in self.schedule_store.list():
            if schedule.name == name and schedule.source == source:
                return self.schedule_store.update(
                    schedule.id,
                    pattern=pattern,
                    task_template=task_template,
                )
        return self.schedule_store.create(
            PersistedSchedule(
                id="",
                name=name,
                pattern=pattern,
                task_template=task_template,
                source=source,
            ),
        )

    def sync_system_schedules(self) -> None:
        """Drop system schedules no longer declared and seed missing ones.

        User and agent schedules are left untouched.
        """

        declared = {definition.name for definition in self.system_schedules}
        persisted = [
            item for item in self.schedule_store.list() if item.source == ScheduleSource.SYSTEM
        ]
        for schedule in persisted:
            if schedule.name not in declared:
                logger.info("Removing stale system schedule: name=%s", schedule.name)
                self.schedule_store.force_delete(schedule.id)
        existing = {item.name for item in persisted}
        for definition in self.system_schedules:
            if definition.name in existing:
                continue
            logger.info("Seeding system schedule: name=%s", definition.name)
            self.schedule_store.create(
                PersistedSchedule(
                    id="",
                    name=definition.name,
                    pattern=replace(definition.pattern),
                    task_template=replace(
                        definition.task_template,
                        tags=list(definition.task_template.tags),
                    ),
                    enabled=definition.enabled,
                    source=ScheduleSource.SYSTEM,
                ),
            )

    def tick(self, now: datetime | None = None) -> TickSummary:
        now = now or self._clock()
        summary = TickSummary()
        with self._tick_lock:
            for schedule in self.schedule_store.list():
                if not schedule.enabled:
                    continue
                last_run = datetime.fromisoformat(schedule.last_run) if schedule.last_run else None
                try:
                    due = is_due(schedule.pattern, last_run, now)
                except ValueError:
                    logger.exception("Invalid schedule pattern: schedule=%s", schedule.name)
                    summary.errors += 1
                    continue
                if not due:
                    continue
                # marked first so a slow task creation cannot fire the schedule twice
                self.schedule_store.mark_run(schedule.id, now.isoformat())
                task = self._create_task(schedule.task_template, now)
                summary.fired.append(schedule.name)
                summary.tasks.append(task)
                logger.info("Schedule fired: schedule=%s task=%s", schedule.name, task.id)
        return summary

    def _create_task(self, template: TaskTemplate, now: datetime) -> Task:
        system_task = template.source == TaskSource.SYSTEM
        task = self.task_store.create(
            Task(
                id="",
                title=template.title,
                description=template.description,
                status=TaskStatus.ASSIGNED if system_task else TaskStatus.PENDING,
                priority=template.priority,
                source=template.source,
                created_by=template.created_by,
                assigned_to=SYSTEM_AGENT_ID if system_task else template.assigned_to,
                created_at=now.isoformat(),
                tags=list(template.tags),
            ),
        )
        self.event_bus.emit(Events.TASK_CREATED, {"task": task})
        return task

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.tick_seconds)
