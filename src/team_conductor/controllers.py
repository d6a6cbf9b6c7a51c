"""Controllers for team-conductor CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from team_conductor.config import Settings
from team_conductor.events import EventBus
from team_conductor.models import AgentProfile, Task, TaskPriority, TaskStatus
from team_conductor.orchestrator import Orchestrator
from team_conductor.ports import TaskFilter
from team_conductor.runtime.base import ExecutionOptions, ExecutionProgress
from team_conductor.runtime.driver import RuntimeDriver
from team_conductor.runtime.runtimes import RuntimeRegistry
from team_conductor.sandbox.container_manager import ContainerManager
from team_conductor.sandbox.docker_client import DockerClient
from team_conductor.sandbox.port_allocator import PortAllocator
from team_conductor.stores.relationship_store import FileRelationshipStore
from team_conductor.stores.schedule_store import FileScheduleStore
from team_conductor.stores.task_store import FileTaskStore
from team_conductor.team.cron import cron_to_human
from team_conductor.team.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the long-running control process."""

    home_dir: Path | None
    sandbox: bool | None = None


@dataclass(slots=True)
class ExecCommand:
    """CLI input for a one-shot execution."""

    runtime: str
    prompt: str
    model: str | None = None
    cwd: Path | None = None
    timeout_seconds: float | None = None
    session_id: str | None = None


@dataclass(slots=True)
class ExecResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class TaskCreateCommand:
    home_dir: Path | None
    title: str
    description: str
    priority: str
    assigned_to: str | None
    tags: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    home_dir: Path | None
    status: str | None
    assigned_to: str | None
    limit: int


@dataclass(slots=True)
class TrustShowCommand:
    home_dir: Path | None
    agent_id: str


class TeamCliController:
    """Coordinates control-process, task and inspection CLI operations."""

    def serve(self, command: ServeCommand, stop_event: threading.Event | None = None) -> list[str]:
        settings = Settings.from_env(home_dir=command.home_dir)
        if command.sandbox is not None:
            settings.sandbox.enabled = command.sandbox
        settings.validate()
        stop_event = stop_event or threading.Event()
        orchestrator = Orchestrator(settings)
        orchestrator.start()
        try:
            with _signal_handlers(stop_event):
                while not stop_event.wait(0.5):
                    pass
        finally:
            orchestrator.stop()
        return [f"Control process stopped: home={settings.home_dir}"]

    def execute(self, command: ExecCommand, on_progress: ProgressSink | None = None) -> ExecResult:
        registry = RuntimeRegistry()
        spec = registry.get(command.runtime)
        cwd = str(command.cwd or Path.cwd())
        profile = AgentProfile(
            id=f"exec-{spec.id}",
            name=spec.display_name,
            runtime=spec.id,
            model=command.model,
            cwd=cwd,
        )

        def _progress(progress: ExecutionProgress) -> None:
            if on_progress is not None:
                on_progress(f"[{progress.type.value}] {progress.summary}")

        result = RuntimeDriver(spec).execute(
            profile,
            command.prompt,
            ExecutionOptions(
                cwd=cwd,
                session_id=command.session_id,
                timeout_seconds=command.timeout_seconds,
                on_progress=_progress,
            ),
        )
        if not result.success:
            failure = result.failure_class.value if result.failure_class else "unknown"
            return ExecResult(
                lines=[f"Execution failed ({failure}): {result.error}"],
                success=False,
            )
        lines = [result.text]
        if result.session_id:
            lines.append(f"session_id={result.session_id}")
        if result.usage is not None:
            lines.append(f"tokens_in={result.usage.input_tokens} tokens_out={result.usage.output_tokens}")
        return ExecResult(lines=lines, success=True)

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(home_dir=command.home_dir)
        store = FileTaskStore(settings.team_dir)
        try:
            task = store.create(
                Task(
                    id="",
                    title=command.title,
                    description=command.description,
                    priority=TaskPriority(command.priority),
                    status=TaskStatus.ASSIGNED if command.assigned_to else TaskStatus.PENDING,
                    assigned_to=command.assigned_to,
                    tags=list(command.tags),
                ),
            )
        finally:
            store.stop()
        return [f"Task created: task_id={task.id} status={task.status.value} assigned_to={task.assigned_to or '-'}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(home_dir=command.home_dir)
        store = FileTaskStore(settings.team_dir)
        tasks = store.list(
            TaskFilter(
                status=TaskStatus(command.status) if command.status else None,
                assigned_to=command.assigned_to,
            ),
        )
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        if not tasks:
            return ["No tasks found."]
        return [
            f"{task.id}  {task.status.value:<9}  {task.priority.value:<8}  "
            f"{task.assigned_to or '-':<20}  {task.title}"
            for task in tasks[: command.limit]
        ]

    def list_schedules(self, home_dir: Path | None) -> list[str]:
        settings = Settings.from_env(home_dir=home_dir)
        store = FileScheduleStore(settings.team_dir)
        scheduler = TaskScheduler(FileTaskStore(settings.team_dir), store, EventBus())
        try:
            scheduler.sync_system_schedules()
            schedules = scheduler.list_schedules()
        finally:
            store.stop()
        return [
            f"{'on ' if item.enabled else 'off'}  {item.source.value:<6}  {item.name:<24}  "
            f"{_describe_pattern(item.pattern.cron, item.pattern.interval_ms, item.pattern.hour, item.pattern.minute)}"
            f"  last_run={_short_time(item.last_run)}"
            for item in schedules
        ]

    def show_trust(self, command: TrustShowCommand) -> list[str]:
        settings = Settings.from_env(home_dir=command.home_dir)
        store = FileRelationshipStore(settings.team_dir)
        edges = store.get_all(command.agent_id)
        if not edges:
            return [f"No relationships recorded for agent {command.agent_id}."]
        return [
            f"{edge.source_agent_id} -> {edge.target_agent_id}: trust={edge.trust_score:.3f} "
            f"delegations={edge.delegation_count} success_rate={edge.delegation_success_rate:.2f}"
            for edge in sorted(edges, key=lambda edge: edge.trust_score, reverse=True)
        ]

    def reclaim_containers(self, home_dir: Path | None) -> list[str]:
        settings = Settings.from_env(home_dir=home_dir)
        sandbox = settings.sandbox
        docker = DockerClient(sandbox.docker_binary)
        if not docker.is_available():
            return ["Docker is not available."]
        manager = ContainerManager(
            docker,
            PortAllocator(sandbox.port_range_start, sandbox.ports_per_agent, sandbox.container_base_port),
            sandbox,
        )
        reclaimed = manager.reclaim_existing()
        lines = [f"Reclaimed {len(reclaimed)} running container(s)."]
        lines.extend(f"  {agent_id}" for agent_id in sorted(reclaimed))
        return lines


def _describe_pattern(cron: str | None, interval_ms: int | None, hour: int | None, minute: int | None) -> str:
    if cron:
        return cron_to_human(cron)
    if interval_ms:
        return f"Every {interval_ms // 1000}s"
    if hour is not None and minute is not None:
        return f"Daily at {hour:02d}:{minute:02d}"
    return "never"


def _short_time(value: str | None) -> str:
    if not value:
        return "-"
    return datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M")


@contextmanager
def _signal_handlers(stop_event: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    originals = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        for sig in originals:
            signal.signal(sig, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        originals = {}
    try:
        yield
    finally:
        for sig, original in originals.items():
            signal.signal(sig, original)
