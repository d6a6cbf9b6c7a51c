"""Directed trust edges between agents, one JSON array per source agent."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from team_conductor.models import AgentRelationship, utc_now_iso
from team_conductor.stores.json_files import read_json_list, write_json_file
from team_conductor.timers import DebouncedWriter, TimerFactory, thread_timer

logger = logging.getLogger(__name__)

TRUST_ALPHA = 0.15
INITIAL_TRUST = 0.5


def apply_trust_outcome(trust: float, success: bool, weight: float = 1.0) -> float:
    """Exponential moving average of outcomes, clamped to [0, 1]."""

    outcome = 1.0 if success else 0.0
    alpha = TRUST_ALPHA * weight
    return max(0.0, min(1.0, alpha * outcome + (1 - alpha) * trust))


class FileRelationshipStore:
    def __init__(
        self,
        base_dir: Path,
        *,
        flush_delay_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.base_dir = base_dir / "relationships"
        self._flush_delay_seconds = flush_delay_seconds
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._cache: dict[str, list[AgentRelationship]] = {}
        self._writers: dict[str, DebouncedWriter] = {}

    def get(self, source_agent_id: str, target_agent_id: str) -> AgentRelationship | None:
        with self._lock:
            for relationship in self._load(source_agent_id):
                if relationship.target_agent_id == target_agent_id:
                    return relationship
        return None

    def set(self, relationship: AgentRelationship) -> None:
        with self._lock:
            relationships = self._load(relationship.source_agent_id)
            for index, existing in enumerate(relationships):
                if existing.target_agent_id == relationship.target_agent_id:
                    relationships[index] = relationship
                    break
            else:
                relationships.append(relationship)
        self._schedule_flush(relationship.source_agent_id)

    def get_all(self, agent_id: str) -> list[AgentRelationship]:
        with self._lock:
            return list(self._load(agent_id))

    def update_trust(
        self,
        source_agent_id: str,
        target_agent_id: str,
        success: bool,
        weight: float = 1.0,
    ) -> AgentRelationship:
        """Apply one delegation outcome to the source's view of the target.

        A missing edge starts at trust 0.5. The delegation success rate is a
        running mean reconstructed from the previous rate and count.
        """

        if weight <= 0:
            raise ValueError(f"Trust weight must be > 0, got {weight}")
        with self._lock:
            relationship = self.get(source_agent_id, target_agent_id)
            if relationship is None:
                relationship = AgentRelationship(
                    source_agent_id=source_agent_id,
                    target_agent_id=target_agent_id,
                    trust_score=INITIAL_TRUST,
                )
            relationship.trust_score = apply_trust_outcome(
                relationship.trust_score,
                success,
                weight,
            )
            relationship.interaction_count += 1
            relationship.last_interaction = utc_now_iso()
            relationship.delegation_count += 1
            successes = round(
                relationship.delegation_success_rate * (relationship.delegation_count - 1),
            )
            relationship.delegation_success_rate = (successes + (1 if success else 0)) / (
                relationship.delegation_count
            )
            self.set(relationship)
        logger.debug(
            "Trust updated: agent=%s target=%s trust=%.3f",
            source_agent_id,
            target_agent_id,
            relationship.trust_score,
        )
        return relationship

    def stop(self) -> None:
        with self._lock:
            writers = list(self._writers.items())
        for agent_id, writer in writers:
            writer.flush_now(lambda agent_id=agent_id: self._flush(agent_id))

    def _load(self, agent_id: str) -> list[AgentRelationship]:
        cached = self._cache.get(agent_id)
        if cached is None:
            cached = []
            for raw in read_json_list(self.base_dir / f"{agent_id}.json"):
                try:
                    cached.append(AgentRelationship.from_dict(raw))
                except TypeError:
                    logger.warning("Skipping malformed relationship: agent=%s", agent_id)
            self._cache[agent_id] = cached
        return cached

    def _schedule_flush(self, agent_id: str) -> None:
        with self._lock:
            writer = self._writers.get(agent_id)
            if writer is None:
                writer = DebouncedWriter(
                    self._flush_delay_seconds,
                    timer_factory=self._timer_factory,
                    name=f"relationships:{agent_id}",
                )
                self._writers[agent_id] = writer
        writer.schedule(lambda: self._flush(agent_id))

    def _flush(self, agent_id: str) -> None:
        with self._lock:
            payload = [item.to_dict() for item in self._cache.get(agent_id, [])]
        write_json_file(self.base_dir / f"{agent_id}.json", payload)
