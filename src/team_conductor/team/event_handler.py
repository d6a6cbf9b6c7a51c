"""Keeps stats, trust, the team feed and delegation replies in step with task events."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_ID,
    AgentProfile,
    AgentRelationship,
    AgentStats,
    ChannelType,
    Task,
    TaskSource,
    TaskStatus,
)
from team_conductor.ports import CommunicationHub, RelationshipStore, StatsStore, TaskFilter, TaskStore
from team_conductor.runtime.base import TokenUsage
from team_conductor.team.assigner import TaskAssigner
from team_conductor.team.inbox import append_to_inbox

logger = logging.getLogger(__name__)

TEAM_FEED_CHANNEL = "#team-feed"
RESULT_REPLY_TAG = "task-result"

ProfilesProvider = Callable[[], Sequence[AgentProfile]]


def is_delegated(task: Task) -> bool:
    return task.assigned_to is not None and task.created_by != task.assigned_to


def feed_message(task: Task, agent_name: str) -> str:
    if task.status == TaskStatus.COMPLETED:
        return f"**{agent_name}** completed: {task.title}\n\n{task.result or task.title}"
    return f"**{agent_name}** {task.status.value}: {task.title}\n\n{task.error or 'Unknown error'}"


class TeamEventHandler:
    def __init__(  # noqa: PLR0913
        self,
        event_bus: EventBus,
        task_store: TaskStore,
        stats_store: StatsStore,
        relationship_store: RelationshipStore,
        assigner: TaskAssigner,
        get_profiles: ProfilesProvider,
        communication_hub: CommunicationHub | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.task_store = task_store
        self.stats_store = stats_store
        self.relationship_store = relationship_store
        self.assigner = assigner
        self.get_profiles = get_profiles
        self.communication_hub = communication_hub
        self._feed_channel_id: str | None = None
        self._unsubscribers: list[Callable[[], None]] = []

    def start(self) -> None:
        self._unsubscribers.extend(
            [
                self.event_bus.on(Events.TASK_CREATED, self._on_task_created),
                self.event_bus.on(Events.TASK_COMPLETED, self._on_task_completed),
            ],
        )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def assign(self, task: Task) -> Task | None:
        """Assign a pending task to the best-scoring worker agent, if any is free."""

        current = self.task_store.get(task.id)
        if current is None or current.assigned_to or current.status != TaskStatus.PENDING:
            return None
        agents = [profile for profile in self.get_profiles() if not profile.is_system]
        running: dict[str, int] = {}
        for item in self.task_store.list(TaskFilter(status=TaskStatus.RUNNING)):
            if item.assigned_to:
                running[item.assigned_to] = running.get(item.assigned_to, 0) + 1
        stats: dict[str, AgentStats] = {}
        relationships: dict[str, list[AgentRelationship]] = {}
        for agent in agents:
            agent_stats = self.stats_store.get(agent.id)
            if agent_stats is not None:
                stats[agent.id] = agent_stats
            edges = self.relationship_store.get_all(agent.id)
            if edges:
                relationships[agent.id] = edges
        assignee = self.assigner.assign(current, agents, relationships, stats, running)
        if assignee is None:
            return None
        updated = self.task_store.update(task.id, assigned_to=assignee, status=TaskStatus.ASSIGNED)
        logger.info("Task assigned: task=%s agent=%s", task.id, assignee)
        self.event_bus.emit(Events.TASK_UPDATED, {"task": updated})
        return updated

    def assign_pending(self) -> list[Task]:
        assigned: list[Task] = []
        for task in self.task_store.list(TaskFilter(status=TaskStatus.PENDING)):
            if task.assigned_to:
                continue
            updated = self.assign(task)
            if updated is not None:
                assigned.append(updated)
        return assigned

    def _on_task_created(self, payload: dict[str, Any]) -> None:
        task: Task = payload["task"]
        if task.assigned_to is None:
            self.assign(task)

    def _on_task_completed(self, payload: dict[str, Any]) -> None:
        task: Task = payload["task"]
        duration_ms = int(payload.get("duration_ms") or 0)
        success = task.status == TaskStatus.COMPLETED
        if task.assigned_to is None:
            return

        self.stats_store.record_execution(task.assigned_to, duration_ms, success)
        usage: TokenUsage | None = payload.get("usage")
        if usage is not None:
            self.stats_store.increment_tokens(task.assigned_to, usage.input_tokens, usage.output_tokens)
        self.event_bus.emit(
            Events.STATS_UPDATED,
            {"agent_id": task.assigned_to, "stats": self.stats_store.get(task.assigned_to)},
        )

        if is_delegated(task):
            relationship = self.relationship_store.update_trust(task.created_by, task.assigned_to, success)
            self.event_bus.emit(Events.TRUST_UPDATED, {"relationship": relationship})

        self._broadcast(task)
        if self._wants_reply(task):
            self._reply_to_sender(task)
        # a freed slot may let a waiting task through
        self.assign_pending()

    def _broadcast(self, task: Task) -> None:
        if self.communication_hub is None or task.assigned_to is None:
            return
        names = {profile.id: profile.name for profile in self.get_profiles()}
        try:
            channel_id = self._feed_channel(self.communication_hub)
            self.communication_hub.send_message(
                channel_id,
                task.assigned_to,
                feed_message(task, names.get(task.assigned_to, task.assigned_to)),
            )
        except OSError as error:
            logger.warning("Failed to broadcast to team feed: task=%s error=%s", task.id, error)

    def _feed_channel(self, hub: CommunicationHub) -> str:
        if self._feed_channel_id is None:
            existing = next(
                (
                    channel
                    for channel in hub.list_channels()
                    if channel.name == TEAM_FEED_CHANNEL
                ),
                None,
            )
            if existing is None:
                existing = hub.create_channel(
                    TEAM_FEED_CHANNEL,
                    ChannelType.BROADCAST,
                    [profile.id for profile in self.get_profiles()],
                )
                logger.info("Created team feed channel: channel=%s", existing.id)
            self._feed_channel_id = existing.id
        return self._feed_channel_id

    def _wants_reply(self, task: Task) -> bool:
        return (
            is_delegated(task)
            and task.source != TaskSource.SYSTEM
            and task.created_by != SYSTEM_AGENT_ID
            and RESULT_REPLY_TAG not in task.tags
        )

    def _reply_to_sender(self, task: Task) -> None:
        sender = next((profile for profile in self.get_profiles() if profile.id == task.created_by), None)
        if sender is None or sender.cwd is None:
            return
        if task.status == TaskStatus.COMPLETED:
            description = f"{task.assigned_to} completed your task.\n\n{task.result or ''}".rstrip()
        else:
            description = f"{task.assigned_to} could not finish your task.\n\n{task.error or 'Unknown error'}"
        record = {
            "title": f"Result: {task.title}",
            "description": description,
            "from": task.assigned_to,
            "assignedTo": task.created_by,
            "tags": [RESULT_REPLY_TAG],
        }
        try:
            append_to_inbox(sender.cwd, record)
        except OSError as error:
            logger.warning("Failed to write inbox reply: task=%s sender=%s error=%s", task.id, sender.id, error)
            return
        logger.info("Inbox reply sent: task=%s to=%s", task.id, sender.id)
