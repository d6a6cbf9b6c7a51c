"""Scores candidate agents for an unassigned task."""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping, Sequence

from team_conductor.models import AgentProfile, AgentRelationship, AgentStats, Task

logger = logging.getLogger(__name__)

MAX_CONCURRENT_TASKS = 2
SUCCESS_POINTS = 40
TRUST_POINTS = 30
LOAD_POINTS_PER_SLOT = 10
STREAK_POINTS_PER_WIN = 2
MAX_STREAK_POINTS = 10


def score_agent(
    stats: AgentStats | None,
    relationships: Sequence[AgentRelationship],
    running_tasks: int,
    cap: int = MAX_CONCURRENT_TASKS,
) -> float:
    """Return a 0-100 score; new agents get neutral success and trust points."""

    if stats is None:
        score = SUCCESS_POINTS / 2
    else:
        rate = stats.success_rate
        score = (0.5 if rate is None else rate) * SUCCESS_POINTS
    if relationships:
        average_trust = sum(item.trust_score for item in relationships) / len(relationships)
        score += average_trust * TRUST_POINTS
    else:
        score += TRUST_POINTS / 2
    score += max(0, cap - running_tasks) * LOAD_POINTS_PER_SLOT
    if stats is not None and stats.streaks.current > 0:
        score += min(MAX_STREAK_POINTS, stats.streaks.current * STREAK_POINTS_PER_WIN)
    return score


class TaskAssigner:
    """Picks the highest scorer; ties are broken uniformly at random."""

    def __init__(self, *, rng: random.Random | None = None, cap: int = MAX_CONCURRENT_TASKS) -> None:
        self._rng = rng or random.Random()  # noqa: S311
        self.cap = cap

    def assign(  # noqa: PLR0913
        self,
        task: Task,
        agents: Sequence[AgentProfile],
        relationships: Mapping[str, Sequence[AgentRelationship]],
        stats: Mapping[str, AgentStats],
        running_task_counts: Mapping[str, int],
    ) -> str | None:
        scores: dict[str, float] = {}
        for agent in agents:
            running = running_task_counts.get(agent.id, 0)
            if running >= self.cap:
                continue
            scores[agent.id] = score_agent(
                stats.get(agent.id),
                relationships.get(agent.id, ()),
                running,
                self.cap,
            )
        if not scores:
            logger.info("No eligible agent for task: task=%s", task.id)
            return None
        best = max(scores.values())
        tied = [agent_id for agent_id, score in scores.items() if score == best]
        chosen = self._rng.choice(tied)
        logger.debug("Assigner scores: task=%s scores=%s chosen=%s", task.id, scores, chosen)
        return chosen
