"""Persisted recurring schedules stored as one JSON array."""

from __future__ import annotations

import builtins
import copy
import dataclasses
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from team_conductor.models import PersistedSchedule, ScheduleSource, utc_now_iso
from team_conductor.stores.json_files import read_json_list, write_json_file
from team_conductor.timers import DebouncedWriter, TimerFactory, thread_timer

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({"name", "pattern", "enabled", "last_run", "task_template"})


class ScheduleNotFound(LookupError):
    """Raised when updating an unknown schedule id."""


class SystemScheduleProtected(RuntimeError):
    """Raised when deleting a built-in schedule through the normal guard."""


class FileScheduleStore:
    def __init__(
        self,
        base_dir: Path,
        *,
        flush_delay_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.file_path = base_dir / "schedules" / "schedules.json"
        self._lock = threading.RLock()
        self._schedules: builtins.list[PersistedSchedule] | None = None
        self._writer = DebouncedWriter(
            flush_delay_seconds,
            timer_factory=timer_factory,
            name="schedules",
        )

    def list(self) -> builtins.list[PersistedSchedule]:
        """Return copies; stored schedules only change through the store."""

        with self._lock:
            return [copy.deepcopy(schedule) for schedule in self._load()]

    def get(self, schedule_id: str) -> PersistedSchedule | None:
        with self._lock:
            schedule = self._find(schedule_id)
            return None if schedule is None else copy.deepcopy(schedule)

    def create(self, schedule: PersistedSchedule) -> PersistedSchedule:
        """Store a new schedule; an empty id gets a fresh uuid."""

        with self._lock:
            schedule = dataclasses.replace(copy.deepcopy(schedule), id=schedule.id or str(uuid.uuid4()))
            self._load().append(schedule)
            created = copy.deepcopy(schedule)
        self._writer.schedule(self._flush)
        logger.info("Schedule created: schedule=%s name=%s", created.id, created.name)
        return created

    def update(self, schedule_id: str, **changes: Any) -> PersistedSchedule:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported schedule fields: {sorted(unknown)}")
        with self._lock:
            schedules = self._load()
            for index, schedule in enumerate(schedules):
                if schedule.id == schedule_id:
                    schedules[index] = dataclasses.replace(schedule, **copy.deepcopy(changes))
                    updated = copy.deepcopy(schedules[index])
                    break
            else:
                raise ScheduleNotFound(f"Schedule not found: {schedule_id}")
        self._writer.schedule(self._flush)
        return updated

    def delete(self, schedule_id: str) -> None:
        """Delete a user or agent schedule; built-in ones can only be disabled."""

        with self._lock:
            schedule = self._find(schedule_id)
            if schedule is None:
                return
            if schedule.source == ScheduleSource.SYSTEM:
                raise SystemScheduleProtected(
                    f"Cannot delete system schedule {schedule.name!r}; disable it instead.",
                )
            self._remove(schedule_id)
        self._writer.schedule(self._flush)

    def force_delete(self, schedule_id: str) -> None:
        """Remove a schedule regardless of its source."""

        with self._lock:
            self._remove(schedule_id)
        self._writer.schedule(self._flush)

    def mark_run(self, schedule_id: str, timestamp: str | None = None) -> None:
        """Advance ``last_run``; an older timestamp never moves it backwards."""

        stamp = timestamp or utc_now_iso()
        with self._lock:
            schedules = self._load()
            for index, schedule in enumerate(schedules):
                if schedule.id == schedule_id:
                    break
            else:
                return
            if schedule.last_run is not None and _parse(stamp) <= _parse(schedule.last_run):
                return
            schedules[index] = dataclasses.replace(schedule, last_run=stamp)
        self._writer.schedule(self._flush)

    def stop(self) -> None:
        self._writer.flush_now(self._flush)

    def _find(self, schedule_id: str) -> PersistedSchedule | None:
        for schedule in self._load():
            if schedule.id == schedule_id:
                return schedule
        return None

    def _remove(self, schedule_id: str) -> None:
        schedules = self._load()
        schedules[:] = [item for item in schedules if item.id != schedule_id]

    def _load(self) -> builtins.list[PersistedSchedule]:
        if self._schedules is None:
            self._schedules = []
            for raw in read_json_list(self.file_path):
                try:
                    self._schedules.append(PersistedSchedule.from_dict(raw))
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed stored schedule: %s", raw.get("id"))
        return self._schedules

    def _flush(self) -> None:
        with self._lock:
            if self._schedules is None:
                return
            payload = [item.to_dict() for item in self._schedules]
        write_json_file(self.file_path, payload)


def _parse(timestamp: str) -> datetime:
    return datetime.fromisoformat(timestamp)
