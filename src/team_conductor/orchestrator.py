"""Wires stores, runtimes, terminals, the sandbox and the team layer into one process."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path

from team_conductor.config import Settings
from team_conductor.events import EventBus, Events
from team_conductor.models import (
    SYSTEM_AGENT_PROFILE,
    USER_ID,
    AgentProfile,
    Task,
    TaskPriority,
    TaskSource,
    TaskStatus,
)
from team_conductor.runtime.base import ExecutionOptions, ExecutionResult, FailureClass
from team_conductor.runtime.driver import DirectLauncher, ProcessLauncher, RuntimeDriver
from team_conductor.runtime.runtimes import RuntimeRegistry, UnknownRuntimeError
from team_conductor.runtime.text import truncate
from team_conductor.sandbox.container_manager import ContainerManager, CreateContainerOptions
from team_conductor.sandbox.docker_client import DockerClient, DockerCommandError
from team_conductor.sandbox.image_manager import ImageManager
from team_conductor.sandbox.launcher import ContainerLauncher
from team_conductor.sandbox.port_allocator import PortAllocator
from team_conductor.sandbox.sandboxed_pty import SandboxedPtyManager
from team_conductor.stores.communication_hub import FileCommunicationHub
from team_conductor.stores.relationship_store import FileRelationshipStore
from team_conductor.stores.schedule_store import FileScheduleStore
from team_conductor.stores.stats_store import FileStatsStore
from team_conductor.stores.task_store import FileTaskStore
from team_conductor.team.assigner import TaskAssigner
from team_conductor.team.event_handler import TeamEventHandler
from team_conductor.team.executor_queue import TeamExecutor
from team_conductor.team.inbox import InboxWatcher
from team_conductor.team.model_resolver import ModelResolver, TeamOperation
from team_conductor.team.scheduler import TaskScheduler
from team_conductor.team.self_improvement import SelfImprovementEngine, SoulManager
from team_conductor.team.task_executor import TaskExecutor, build_task_prompt
from team_conductor.terminal.manager import PtyManager, PtySpawnOptions, PtySpawnResult, TerminalManager

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500
REFLECTION_TAG = "self-improvement"
STATS_TAG = "stats"
SYSTEM_TAG_OPERATIONS: dict[str, TeamOperation] = {
    "code-improvement": TeamOperation.CODE_IMPROVE,
    "inbox": TeamOperation.INBOX_PARSE,
}
_FUTURE_POLL_SECONDS = 0.25


class TeamExecutionError(RuntimeError):
    """A serialized team operation came back unsuccessful."""


class Orchestrator:
    """Owns every long-lived component of the control process."""

    def __init__(
        self,
        settings: Settings,
        *,
        runtimes: RuntimeRegistry | None = None,
        profiles: list[AgentProfile] | None = None,
        docker: DockerClient | None = None,
    ) -> None:
        self.settings = settings
        self.event_bus = EventBus()
        self.runtimes = runtimes or RuntimeRegistry()
        loaded = settings.load_agent_profiles() if profiles is None else profiles
        system_profile = dataclasses.replace(
            SYSTEM_AGENT_PROFILE,
            cwd=str(settings.agents_dir / SYSTEM_AGENT_PROFILE.id),
        )
        self._profiles = {profile.id: profile for profile in [system_profile, *loaded]}

        team_dir = settings.team_dir
        self.task_store = FileTaskStore(team_dir)
        self.stats_store = FileStatsStore(team_dir)
        self.relationship_store = FileRelationshipStore(team_dir)
        self.schedule_store = FileScheduleStore(team_dir)
        self.communication_hub = FileCommunicationHub(team_dir, self.event_bus)

        self.docker: DockerClient | None = None
        self.container_manager: ContainerManager | None = None
        self.image_manager: ImageManager | None = None
        self.terminals: TerminalManager
        self.launcher: ProcessLauncher
        if settings.sandbox.enabled:
            sandbox = settings.sandbox
            self.docker = docker or DockerClient(sandbox.docker_binary)
            self.image_manager = ImageManager(self.docker)
            self.container_manager = ContainerManager(
                self.docker,
                PortAllocator(sandbox.port_range_start, sandbox.ports_per_agent, sandbox.container_base_port),
                sandbox,
                image=self.image_manager.resolve_tag(sandbox.image_name),
                credential_paths=self.runtimes.credential_paths(),
            )
            self.terminals = SandboxedPtyManager(self.container_manager, self.docker)
            self.launcher = ContainerLauncher(self.container_manager, self.docker)
        else:
            self.terminals = PtyManager()
            self.launcher = DirectLauncher()
        self.terminals.on_exit(self._on_terminal_exit)
        self._container_lock = threading.Lock()

        self.scheduler = TaskScheduler(
            self.task_store,
            self.schedule_store,
            self.event_bus,
            tick_seconds=settings.scheduler.tick_seconds,
        )
        self.team_executor = TeamExecutor(ModelResolver(settings.model_tiers), self.run_team_operation)
        self.souls = SoulManager(settings.agents_dir, self.event_bus)
        self.self_improvement = SelfImprovementEngine(
            self.task_store,
            self.stats_store,
            self.souls,
            self.event_bus,
            self.team_executor,
        )
        self.event_handler = TeamEventHandler(
            self.event_bus,
            self.task_store,
            self.stats_store,
            self.relationship_store,
            TaskAssigner(cap=settings.execution.max_concurrent_tasks_per_agent),
            self.profiles,
            self.communication_hub,
        )
        self.task_executor = TaskExecutor(
            self.task_store,
            self.event_bus,
            self.execute_on_agent,
            self.has_agent,
            timeout_seconds=settings.execution.task_timeout_seconds,
            max_concurrent_per_agent=settings.execution.max_concurrent_tasks_per_agent,
            run_system_task=self.run_system_task,
        )
        self.inbox_watcher = InboxWatcher(
            self.task_store,
            self.event_bus,
            poll_interval_seconds=settings.inbox.poll_interval_seconds,
            debounce_seconds=settings.inbox.debounce_seconds,
        )

    def profiles(self) -> list[AgentProfile]:
        return list(self._profiles.values())

    def get_profile(self, agent_id: str) -> AgentProfile | None:
        return self._profiles.get(agent_id)

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._profiles

    def start(self) -> None:
        self.settings.validate()
        if self.container_manager is not None:
            self.prepare_sandbox()
        self.event_handler.start()
        self.event_handler.assign_pending()
        self.scheduler.start()
        self.task_executor.start()
        for profile in self.profiles():
            if profile.cwd is None:
                continue
            Path(profile.cwd).mkdir(parents=True, exist_ok=True)
            self.inbox_watcher.watch_agent(profile.id, profile.cwd)
        self.inbox_watcher.start()
        logger.info(
            "Orchestrator started: agents=%s sandbox=%s home=%s",
            len(self._profiles),
            self.settings.sandbox.enabled,
            self.settings.home_dir,
        )

    def stop(self) -> None:
        """Stop background work, kill sessions and flush every store.

        Agent containers keep running so the next start can reclaim them.
        """

        self.scheduler.stop()
        self.inbox_watcher.stop_all()
        self.task_executor.stop()
        self.event_handler.stop()
        self.team_executor.shutdown(wait=False)
        self.terminals.close()
        for store in (
            self.task_store,
            self.stats_store,
            self.relationship_store,
            self.schedule_store,
            self.communication_hub,
        ):
            store.stop()
        logger.info("Orchestrator stopped")

    def prepare_sandbox(self) -> set[str]:
        """Build the image if needed and adopt containers left by a previous run."""

        if self.container_manager is None or self.image_manager is None or self.docker is None:
            return set()
        if not self.docker.is_available():
            raise DockerCommandError([self.docker.docker_binary, "info"], 1, "Docker daemon is not reachable.")
        self.image_manager.ensure_image(self.settings.sandbox.image_name)
        return self.container_manager.reclaim_existing()

    def ensure_container(self, profile: AgentProfile) -> None:
        if self.container_manager is None:
            return
        with self._container_lock:
            if self.container_manager.is_running(profile.id):
                return
            workspace = profile.cwd or str(self.settings.agents_dir / profile.id)
            Path(workspace).mkdir(parents=True, exist_ok=True)
            shared = self.settings.sandbox.shared_skills_path
            self.container_manager.create_and_start(
                CreateContainerOptions(
                    agent_id=profile.id,
                    agent_name=profile.name,
                    workspace_path=workspace,
                    shared_skills_path=str(shared) if shared else None,
                ),
            )

    def driver_for(self, profile: AgentProfile) -> RuntimeDriver:
        return RuntimeDriver(
            self.runtimes.get(profile.runtime),
            launcher=self.launcher,
            max_output_bytes=self.settings.execution.max_output_bytes,
        )

    def create_task(  # noqa: PLR0913
        self,
        title: str,
        description: str = "",
        *,
        assigned_to: str | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        tags: list[str] | None = None,
        created_by: str = USER_ID,
    ) -> Task:
        task = self.task_store.create(
            Task(
                id="",
                title=title,
                description=description,
                priority=priority,
                source=TaskSource.USER,
                created_by=created_by,
                status=TaskStatus.PENDING if assigned_to is None else TaskStatus.ASSIGNED,
                assigned_to=assigned_to,
                tags=list(tags or []),
            ),
        )
        self.event_bus.emit(Events.TASK_CREATED, {"task": task})
        return self.task_store.get(task.id) or task

    def execute_on_agent(
        self,
        agent_id: str,
        prompt: str,
        cancel: threading.Event,
        timeout_seconds: float,
    ) -> ExecutionResult:
        profile = self._profiles.get(agent_id)
        if profile is None:
            return ExecutionResult(success=False, error=f"Unknown agent: {agent_id}")
        try:
            driver = self.driver_for(profile)
            self.ensure_container(profile)
        except (UnknownRuntimeError, DockerCommandError) as error:
            return ExecutionResult(
                success=False,
                error=truncate(str(error), MAX_ERROR_CHARS),
                failure_class=FailureClass.SPAWN_FAILED,
            )
        return driver.execute(
            profile,
            prompt,
            ExecutionOptions(cwd=profile.cwd, cancel=cancel, timeout_seconds=timeout_seconds),
        )

    def run_team_operation(self, runtime_id: str, model: str, prompt: str, cwd: str | None) -> str:
        profile = dataclasses.replace(
            self._profiles[SYSTEM_AGENT_PROFILE.id],
            runtime=runtime_id,
            model=model,
        )
        result = self.driver_for(profile).execute(
            profile,
            prompt,
            ExecutionOptions(cwd=cwd or profile.cwd, timeout_seconds=self.settings.execution.task_timeout_seconds),
        )
        if not result.success:
            raise TeamExecutionError(result.error or "Team operation failed")
        return result.text

    def run_system_task(self, task: Task, cancel: threading.Event, timeout_seconds: float) -> ExecutionResult:
        """Run a system-agent task; anything needing a model goes through the team queue."""

        if REFLECTION_TAG in task.tags:
            return self.reflect_all(cancel, timeout_seconds)
        if STATS_TAG in task.tags:
            return ExecutionResult(success=True, text=self.stats_summary())
        operation = next(
            (operation for tag, operation in SYSTEM_TAG_OPERATIONS.items() if tag in task.tags),
            TeamOperation.TASK_ANALYZE,
        )
        future = self.team_executor.execute(operation, build_task_prompt(task))
        return _await_team_result(future, cancel, timeout_seconds)

    def reflect_all(self, cancel: threading.Event, timeout_seconds: float) -> ExecutionResult:
        agents = [profile.id for profile in self.profiles() if profile.id != SYSTEM_AGENT_PROFILE.id]
        deadline = time.monotonic() + timeout_seconds
        reflected: list[str] = []
        failed: list[str] = []
        for agent_id in agents:
            if cancel.is_set():
                return ExecutionResult(success=False, error="Cancelled", failure_class=FailureClass.CANCELLED)
            try:
                self.self_improvement.reflect(agent_id, timeout=max(0.0, deadline - time.monotonic()))
            except Exception as error:  # noqa: BLE001
                logger.error("Reflection failed: agent=%s error=%s", agent_id, error)
                failed.append(f"{agent_id} ({truncate(str(error), 120)})")
            else:
                reflected.append(agent_id)
        text = f"Reflected on {len(reflected)} of {len(agents)} agent(s)."
        if not failed:
            return ExecutionResult(success=True, text=text)
        return ExecutionResult(
            success=False,
            text=text,
            error=truncate(f"Reflection failed for: {', '.join(failed)}", MAX_ERROR_CHARS),
        )

    def stats_summary(self) -> str:
        lines = ["Team stats:"]
        for stats in sorted(self.stats_store.all(), key=lambda item: item.agent_id):
            rate = stats.success_rate
            lines.append(
                f"- {stats.agent_id}: completed={stats.tasks_completed} failed={stats.tasks_failed} "
                f"success_rate={'n/a' if rate is None else f'{rate:.0%}'} "
                f"avg_ms={stats.average_response_ms:.0f} "
                f"tokens_in={stats.total_tokens_in} tokens_out={stats.total_tokens_out}",
            )
        if len(lines) == 1:
            lines.append("- no executions recorded yet")
        return "\n".join(lines)

    def spawn_terminal(self, agent_id: str, cols: int = 120, rows: int = 30) -> PtySpawnResult:
        """Start the agent's interactive CLI session."""

        profile = self._profiles.get(agent_id)
        if profile is None:
            return PtySpawnResult(success=False, error=f"Unknown agent: {agent_id}")
        try:
            config = self.driver_for(profile).build_spawn_config(profile)
            self.ensure_container(profile)
        except (UnknownRuntimeError, DockerCommandError) as error:
            return PtySpawnResult(success=False, error=truncate(str(error), MAX_ERROR_CHARS))
        return self.terminals.spawn(
            agent_id,
            config.command,
            config.args,
            PtySpawnOptions(cwd=profile.cwd, env=config.env, cols=cols, rows=rows),
        )

    def _on_terminal_exit(self, agent_id: str, exit_code: int, last_output: str) -> None:
        self.event_bus.emit(
            Events.AGENT_EXITED,
            {"agent_id": agent_id, "exit_code": exit_code, "last_output": last_output},
        )


def _await_team_result(future: Future[str], cancel: threading.Event, timeout_seconds: float) -> ExecutionResult:
    deadline = time.monotonic() + timeout_seconds
    while True:
        if cancel.is_set():
            future.cancel()
            return ExecutionResult(success=False, error="Cancelled", failure_class=FailureClass.CANCELLED)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            return ExecutionResult(success=False, error="Team operation timed out", failure_class=FailureClass.TIMEOUT)
        try:
            text = future.result(timeout=min(_FUTURE_POLL_SECONDS, remaining))
        except TimeoutError:
            continue
        except Exception as error:  # noqa: BLE001
            return ExecutionResult(success=False, error=truncate(str(error), MAX_ERROR_CHARS))
        return ExecutionResult(success=True, text=text)
