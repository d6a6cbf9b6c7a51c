"""Team coordination: scheduling, assignment, delegation and task execution."""

from team_conductor.team.assigner import TaskAssigner, score_agent
from team_conductor.team.cron import CronParseError, cron_to_human, next_cron_run, parse_cron
from team_conductor.team.event_handler import TEAM_FEED_CHANNEL, TeamEventHandler
from team_conductor.team.executor_queue import TeamExecutor, TeamExecutorClosed
from team_conductor.team.inbox import InboxWatcher
from team_conductor.team.model_resolver import ModelResolver, TeamOperation
from team_conductor.team.scheduler import SYSTEM_SCHEDULES, TaskScheduler, is_due
from team_conductor.team.self_improvement import SelfImprovementEngine, SoulManager
from team_conductor.team.task_executor import TaskExecutor

__all__ = [
    "SYSTEM_SCHEDULES",
    "TEAM_FEED_CHANNEL",
    "CronParseError",
    "InboxWatcher",
    "ModelResolver",
    "SelfImprovementEngine",
    "SoulManager",
    "TaskAssigner",
    "TaskExecutor",
    "TaskScheduler",
    "TeamEventHandler",
    "TeamExecutor",
    "TeamExecutorClosed",
    "TeamOperation",
    "cron_to_human",
    "is_due",
    "next_cron_run",
    "parse_cron",
    "score_agent",
]
