"""File-backed stores with debounced persistence."""

from team_conductor.stores.communication_hub import ChannelNotFoundError, FileCommunicationHub
from team_conductor.stores.relationship_store import TRUST_ALPHA, FileRelationshipStore
from team_conductor.stores.schedule_store import (
    FileScheduleStore,
    ScheduleNotFound,
    SystemScheduleProtected,
)
from team_conductor.stores.stats_store import FileStatsStore
from team_conductor.stores.task_store import FileTaskStore, TaskNotFoundError

__all__ = [
    "TRUST_ALPHA",
    "ChannelNotFoundError",
    "FileCommunicationHub",
    "FileRelationshipStore",
    "FileScheduleStore",
    "FileStatsStore",
    "FileTaskStore",
    "ScheduleNotFound",
    "SystemScheduleProtected",
    "TaskNotFoundError",
]
