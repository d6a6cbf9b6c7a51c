"""Narrow store interfaces consumed by the team layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from team_conductor.models import (
    AgentRelationship,
    AgentStats,
    Channel,
    ChannelMessage,
    ChannelType,
    Task,
    TaskSource,
    TaskStatus,
)


@dataclass(slots=True)
class TaskFilter:
    """Optional equality filters for task listing."""

    status: TaskStatus | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    source: TaskSource | None = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status != self.status:
            return False
        if self.assigned_to is not None and task.assigned_to != self.assigned_to:
            return False
        if self.created_by is not None and task.created_by != self.created_by:
            return False
        return self.source is None or task.source == self.source


class TaskStore(Protocol):
    def create(self, task: Task) -> Task:
        """Persist a new task and return it."""

    def get(self, task_id: str) -> Task | None:
        """Return a task or None."""

    def update(self, task_id: str, **changes: Any) -> Task:
        """Apply field changes, validating status transitions."""

    def delete(self, task_id: str) -> None:
        """Remove a task."""

    def list(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Return tasks matching the filter."""


class StatsStore(Protocol):
    def get(self, agent_id: str) -> AgentStats | None:
        """Return stats or None when the agent never ran."""

    def update(self, agent_id: str, **changes: Any) -> AgentStats:
        """Overwrite selected counters."""

    def increment_tokens(self, agent_id: str, tokens_in: int, tokens_out: int) -> None:
        """Add token usage."""

    def record_execution(self, agent_id: str, duration_ms: int, success: bool) -> None:
        """Record one finished execution."""


class RelationshipStore(Protocol):
    def get(self, source_agent_id: str, target_agent_id: str) -> AgentRelationship | None:
        """Return one directed edge."""

    def set(self, relationship: AgentRelationship) -> None:
        """Insert or replace one directed edge."""

    def get_all(self, agent_id: str) -> list[AgentRelationship]:
        """Return all outgoing edges of an agent."""

    def update_trust(
        self,
        source_agent_id: str,
        target_agent_id: str,
        success: bool,
        weight: float = 1.0,
    ) -> AgentRelationship:
        """Apply one delegation outcome."""


class CommunicationHub(Protocol):
    def create_channel(self, name: str, type: ChannelType, participants: list[str]) -> Channel:
        """Create a channel."""

    def get_channel(self, channel_id: str) -> Channel | None:
        """Return a channel."""

    def list_channels(self, agent_id: str | None = None) -> list[Channel]:
        """Return channels, optionally only those an agent participates in."""

    def send_message(
        self,
        channel_id: str,
        sender_id: str,
        content: str,
        reply_to: str | None = None,
    ) -> ChannelMessage:
        """Append a message."""

    def get_messages(self, channel_id: str, limit: int = 50) -> list[ChannelMessage]:
        """Return the most recent messages, oldest first."""
