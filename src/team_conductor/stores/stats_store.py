"""Per-agent performance counters, one JSON file per agent."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from team_conductor.models import AgentStats, Streaks, utc_now_iso
from team_conductor.stores.json_files import read_json_object, write_json_file
from team_conductor.timers import DebouncedWriter, TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class FileStatsStore:
    def __init__(
        self,
        base_dir: Path,
        *,
        flush_delay_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.base_dir = base_dir / "stats"
        self._flush_delay_seconds = flush_delay_seconds
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._cache: dict[str, AgentStats] = {}
        self._writers: dict[str, DebouncedWriter] = {}

    def get(self, agent_id: str) -> AgentStats | None:
        with self._lock:
            cached = self._cache.get(agent_id)
            if cached is not None:
                return cached
            raw = read_json_object(self._path(agent_id))
            if raw is None:
                return None
            stats = AgentStats.from_dict(raw)
            self._cache[agent_id] = stats
            return stats

    def update(self, agent_id: str, **changes: Any) -> AgentStats:
        with self._lock:
            stats = self._get_or_default(agent_id)
            for key, value in changes.items():
                if key == "agent_id":
                    continue
                if key == "streaks" and isinstance(value, dict):
                    value = Streaks(**value)
                setattr(stats, key, value)
        self._schedule_flush(agent_id)
        return stats

    def increment_tokens(self, agent_id: str, tokens_in: int, tokens_out: int) -> None:
        with self._lock:
            stats = self._get_or_default(agent_id)
            stats.total_tokens_in += tokens_in
            stats.total_tokens_out += tokens_out
            stats.last_active = utc_now_iso()
        self._schedule_flush(agent_id)

    def record_execution(self, agent_id: str, duration_ms: int, success: bool) -> None:
        """Fold one execution into the running average and the success streak."""

        with self._lock:
            stats = self._get_or_default(agent_id)
            previous = stats.tasks_completed + stats.tasks_failed
            stats.total_execution_ms += duration_ms
            stats.average_response_ms = (
                float(duration_ms)
                if previous == 0
                else (stats.average_response_ms * previous + duration_ms) / (previous + 1)
            )
            if success:
                stats.tasks_completed += 1
                stats.streaks.current += 1
                stats.streaks.best = max(stats.streaks.best, stats.streaks.current)
            else:
                stats.tasks_failed += 1
                stats.streaks.current = 0
            stats.last_active = utc_now_iso()
        self._schedule_flush(agent_id)

    def all(self) -> list[AgentStats]:
        """Return stats for every agent with a stats file or cached entry."""

        with self._lock:
            if self.base_dir.exists():
                for path in sorted(self.base_dir.glob("*.json")):
                    self.get(path.stem)
            return list(self._cache.values())

    def stop(self) -> None:
        with self._lock:
            writers = list(self._writers.items())
        for agent_id, writer in writers:
            writer.flush_now(lambda agent_id=agent_id: self._flush(agent_id))

    def _get_or_default(self, agent_id: str) -> AgentStats:
        stats = self.get(agent_id)
        if stats is None:
            stats = AgentStats(agent_id=agent_id)
            self._cache[agent_id] = stats
        return stats

    def _schedule_flush(self, agent_id: str) -> None:
        with self._lock:
            writer = self._writers.get(agent_id)
            if writer is None:
                writer = DebouncedWriter(
                    self._flush_delay_seconds,
                    timer_factory=self._timer_factory,
                    name=f"stats:{agent_id}",
                )
                self._writers[agent_id] = writer
        writer.schedule(lambda: self._flush(agent_id))

    def _flush(self, agent_id: str) -> None:
        with self._lock:
            stats = self._cache.get(agent_id)
            if stats is None:
                return
            payload = stats.to_dict()
        write_json_file(self._path(agent_id), payload)

    def _path(self, agent_id: str) -> Path:
        return self.base_dir / f"{agent_id}.json"
