"""Domain models shared by the runtime, sandbox and team layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

SYSTEM_AGENT_ID = "conductor-system"
USER_ID = "user"


def utc_now() -> datetime:
    """Return timezone-aware current UTC datetime."""

    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class InvalidTaskTransition(ValueError):
    """Raised when a task status change skips or reverses the lifecycle."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id}: transition {current.value} -> {requested.value} is not allowed.",
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    """Return True when ``requested`` may follow ``current``; same-status updates are allowed."""

    if current == requested:
        return True
    return requested in _ALLOWED_TRANSITIONS[current]


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class TaskSource(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"
    SCHEDULE = "schedule"


class ScheduleSource(str, Enum):
    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"


@dataclass(slots=True)
class AgentProfile:
    """Configured agent identity; immutable for the duration of a run."""

    id: str
    name: str
    runtime: str
    model: str | None = None
    system_prompt: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    allow_full_access: bool = False
    is_system: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentProfile:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            runtime=str(raw["runtime"]),
            model=raw.get("model"),
            system_prompt=raw.get("system_prompt", raw.get("systemPrompt")),
            cwd=raw.get("cwd"),
            env={str(key): str(value) for key, value in (raw.get("env") or {}).items()},
            allow_full_access=bool(raw.get("allow_full_access", raw.get("allowFullAccess", False))),
            is_system=bool(raw.get("is_system", raw.get("isSystem", False))),
        )


SYSTEM_AGENT_PROFILE = AgentProfile(
    id=SYSTEM_AGENT_ID,
    name="Conductor",
    runtime="claude-code",
    model="sonnet",
    system_prompt=(
        "You are the built-in system agent of the team conductor. You handle "
        "maintenance tasks only: stats aggregation, self-reflection and code review. "
        "Keep answers short. Do not create files, install packages or invent new "
        "protocols; agent workspaces, inbox.jsonl files and the team stores already exist."
    ),
    allow_full_access=True,
    is_system=True,
)


@dataclass(slots=True)
class Task:
    """Unit of work routed to an agent."""

    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    source: TaskSource = TaskSource.USER
    created_by: str = USER_ID
    assigned_to: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    started_at: str | None = None
    completed_at: str | None = None
    result: str | None = None
    error: str | None = None
    tags: list[str] = field(default_factory=list)
    parent_task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["priority"] = self.priority.value
        payload["source"] = self.source.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in raw.items() if key in known}
        data["status"] = TaskStatus(data.get("status", TaskStatus.PENDING.value))
        data["priority"] = TaskPriority(data.get("priority", TaskPriority.NORMAL.value))
        data["source"] = TaskSource(data.get("source", TaskSource.USER.value))
        data["tags"] = list(data.get("tags") or [])
        return cls(**data)


@dataclass(slots=True)
class TaskTemplate:
    """Task fields copied into every task a schedule fires."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    source: TaskSource = TaskSource.SCHEDULE
    created_by: str = SYSTEM_AGENT_ID
    assigned_to: str | None = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "source": self.source.value,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskTemplate:
        return cls(
            title=str(raw.get("title", "")),
            description=str(raw.get("description", "")),
            priority=TaskPriority(raw.get("priority", TaskPriority.NORMAL.value)),
            source=TaskSource(raw.get("source", TaskSource.SCHEDULE.value)),
            created_by=str(raw.get("created_by", SYSTEM_AGENT_ID)),
            assigned_to=raw.get("assigned_to"),
            tags=list(raw.get("tags") or []),
        )


@dataclass(slots=True)
class SchedulePattern:
    """Recurrence definition: a cron expression, an interval, or a time of day."""

    cron: str | None = None
    interval_ms: int | None = None
    hour: int | None = None
    minute: int | None = None
    day_of_week: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SchedulePattern:
        return cls(
            cron=raw.get("cron"),
            interval_ms=raw.get("interval_ms", raw.get("intervalMs")),
            hour=raw.get("hour"),
            minute=raw.get("minute"),
            day_of_week=raw.get("day_of_week", raw.get("dayOfWeek")),
        )


@dataclass(slots=True)
class PersistedSchedule:
    """Stored recurring task template."""

    id: str
    name: str
    pattern: SchedulePattern
    task_template: TaskTemplate
    enabled: bool = True
    last_run: str | None = None
    source: ScheduleSource = ScheduleSource.USER
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pattern": self.pattern.to_dict(),
            "task_template": self.task_template.to_dict(),
            "enabled": self.enabled,
            "last_run": self.last_run,
            "source": self.source.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PersistedSchedule:
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            pattern=SchedulePattern.from_dict(raw.get("pattern") or {}),
            task_template=TaskTemplate.from_dict(raw.get("task_template") or {}),
            enabled=bool(raw.get("enabled", True)),
            last_run=raw.get("last_run"),
            source=ScheduleSource(raw.get("source", ScheduleSource.USER.value)),
            created_at=str(raw.get("created_at") or utc_now_iso()),
        )


@dataclass(slots=True)
class AgentRelationship:
    """Directed trust edge between two agents."""

    source_agent_id: str
    target_agent_id: str
    trust_score: float = 0.5
    interaction_count: int = 0
    last_interaction: str = field(default_factory=utc_now_iso)
    delegation_count: int = 0
    delegation_success_rate: float = 0.0
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentRelationship:
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})


@dataclass(slots=True)
class Streaks:
    current: int = 0
    best: int = 0


@dataclass(slots=True)
class AgentStats:
    """Per-agent performance counters."""

    agent_id: str
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_execution_ms: int = 0
    average_response_ms: float = 0.0
    uptime: int = 0
    last_active: str = field(default_factory=utc_now_iso)
    streaks: Streaks = field(default_factory=Streaks)

    @property
    def success_rate(self) -> float | None:
        total = self.tasks_completed + self.tasks_failed
        if total == 0:
            return None
        return self.tasks_completed / total

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentStats:
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in raw.items() if key in known}
        streaks = data.pop("streaks", None) or {}
        return cls(**data, streaks=Streaks(**streaks))


class ChannelType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    BROADCAST = "broadcast"


@dataclass(slots=True)
class Channel:
    id: str
    name: str
    type: ChannelType
    participants: list[str]
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Channel:
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            type=ChannelType(raw.get("type", ChannelType.GROUP.value)),
            participants=list(raw.get("participants") or []),
            created_at=str(raw.get("created_at") or utc_now_iso()),
        )


@dataclass(slots=True)
class ChannelMessage:
    id: str
    channel_id: str
    sender_id: str
    content: str
    timestamp: str = field(default_factory=utc_now_iso)
    reply_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChannelMessage:
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})
