"""Runtime configuration for the control process."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from team_conductor.models import AgentProfile

_ENV_PREFIX = "TEAM_CONDUCTOR_"


@dataclass(slots=True)
class SchedulerSettings:
    """Recurring schedule evaluation settings."""

    tick_seconds: float = 60.0


@dataclass(slots=True)
class SandboxSettings:
    """Container sandbox settings."""

    enabled: bool = False
    docker_binary: str = "docker"
    cpus: float = 2.0
    memory_mb: int = 4096
    pids_limit: int = 256
    port_range_start: int = 10_000
    ports_per_agent: int = 20
    container_base_port: int = 3000
    image_name: str = "team-conductor-agent:latest"
    stop_timeout_seconds: int = 10
    shared_skills_path: Path | None = None


@dataclass(slots=True)
class ModelTierSettings:
    """Model per qualitative tier for serialized team operations."""

    team_runtime: str = "claude-code"
    creative: str = "opus"
    analytical: str = "sonnet"
    routine: str = "haiku"


@dataclass(slots=True)
class ExecutionSettings:
    """One-shot task execution limits."""

    task_timeout_seconds: int = 6 * 60 * 60
    max_output_bytes: int = 50 * 1024 * 1024
    max_concurrent_tasks_per_agent: int = 2


@dataclass(slots=True)
class InboxSettings:
    """Delegation inbox watcher settings."""

    poll_interval_seconds: float = 0.5
    debounce_seconds: float = 0.2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    home_dir: Path = field(default_factory=lambda: Path.home() / ".team-conductor")
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    model_tiers: ModelTierSettings = field(default_factory=ModelTierSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    inbox: InboxSettings = field(default_factory=InboxSettings)

    @property
    def team_dir(self) -> Path:
        return self.home_dir / "team"

    @property
    def agents_file(self) -> Path:
        return self.home_dir / "agents.json"

    @property
    def agents_dir(self) -> Path:
        return self.home_dir / "agents"

    @classmethod
    def from_env(cls, home_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for a local workstation."""

        shared_skills = os.getenv(f"{_ENV_PREFIX}SANDBOX_SHARED_SKILLS_PATH", "").strip()
        return cls(
            home_dir=home_dir
            or Path(
                os.getenv(
                    f"{_ENV_PREFIX}HOME",
                    str(Path.home() / ".team-conductor"),
                ),
            ).expanduser(),
            log_level=os.getenv(f"{_ENV_PREFIX}LOG_LEVEL", "INFO").strip().upper(),
            scheduler=SchedulerSettings(
                tick_seconds=float(os.getenv(f"{_ENV_PREFIX}SCHEDULER_TICK_SECONDS", "60")),
            ),
            sandbox=SandboxSettings(
                enabled=_env_bool(f"{_ENV_PREFIX}SANDBOX_ENABLED", default=False),
                docker_binary=os.getenv(f"{_ENV_PREFIX}SANDBOX_DOCKER_BINARY", "docker"),
                cpus=float(os.getenv(f"{_ENV_PREFIX}SANDBOX_CPUS", "2")),
                memory_mb=int(os.getenv(f"{_ENV_PREFIX}SANDBOX_MEMORY_MB", "4096")),
                pids_limit=int(os.getenv(f"{_ENV_PREFIX}SANDBOX_PIDS_LIMIT", "256")),
                port_range_start=int(os.getenv(f"{_ENV_PREFIX}SANDBOX_PORT_RANGE_START", "10000")),
                ports_per_agent=int(os.getenv(f"{_ENV_PREFIX}SANDBOX_PORTS_PER_AGENT", "20")),
                container_base_port=int(
                    os.getenv(f"{_ENV_PREFIX}SANDBOX_CONTAINER_BASE_PORT", "3000"),
                ),
                image_name=os.getenv(
                    f"{_ENV_PREFIX}SANDBOX_IMAGE_NAME",
                    "team-conductor-agent:latest",
                ),
                stop_timeout_seconds=int(
                    os.getenv(f"{_ENV_PREFIX}SANDBOX_STOP_TIMEOUT_SECONDS", "10"),
                ),
                shared_skills_path=Path(shared_skills).expanduser() if shared_skills else None,
            ),
            model_tiers=ModelTierSettings(
                team_runtime=os.getenv(f"{_ENV_PREFIX}TEAM_RUNTIME", "claude-code"),
                creative=os.getenv(f"{_ENV_PREFIX}MODEL_CREATIVE", "opus"),
                analytical=os.getenv(f"{_ENV_PREFIX}MODEL_ANALYTICAL", "sonnet"),
                routine=os.getenv(f"{_ENV_PREFIX}MODEL_ROUTINE", "haiku"),
            ),
            execution=ExecutionSettings(
                task_timeout_seconds=int(
                    os.getenv(f"{_ENV_PREFIX}TASK_TIMEOUT_SECONDS", str(6 * 60 * 60)),
                ),
                max_output_bytes=int(
                    os.getenv(f"{_ENV_PREFIX}MAX_OUTPUT_BYTES", str(50 * 1024 * 1024)),
                ),
                max_concurrent_tasks_per_agent=int(
                    os.getenv(f"{_ENV_PREFIX}MAX_CONCURRENT_TASKS_PER_AGENT", "2"),
                ),
            ),
            inbox=InboxSettings(
                poll_interval_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}INBOX_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                debounce_seconds=float(os.getenv(f"{_ENV_PREFIX}INBOX_DEBOUNCE_SECONDS", "0.2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the control process cannot run with."""

        if self.scheduler.tick_seconds <= 0:
            raise ValueError("TEAM_CONDUCTOR_SCHEDULER_TICK_SECONDS must be > 0.")
        if self.sandbox.ports_per_agent <= 0:
            raise ValueError("TEAM_CONDUCTOR_SANDBOX_PORTS_PER_AGENT must be > 0.")
        if not 0 < self.sandbox.port_range_start <= 65_535:
            raise ValueError("TEAM_CONDUCTOR_SANDBOX_PORT_RANGE_START must be a valid port.")
        if self.sandbox.memory_mb <= 0 or self.sandbox.cpus <= 0:
            raise ValueError("Sandbox CPU and memory limits must be positive.")
        if self.execution.task_timeout_seconds <= 0:
            raise ValueError("TEAM_CONDUCTOR_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.execution.max_concurrent_tasks_per_agent <= 0:
            raise ValueError("TEAM_CONDUCTOR_MAX_CONCURRENT_TASKS_PER_AGENT must be > 0.")
        if self.inbox.poll_interval_seconds <= 0 or self.inbox.debounce_seconds < 0:
            raise ValueError("Inbox poll interval must be > 0 and debounce must be >= 0.")
        for tier, model in (
            ("creative", self.model_tiers.creative),
            ("analytical", self.model_tiers.analytical),
            ("routine", self.model_tiers.routine),
        ):
            if not model.strip():
                raise ValueError(f"Empty model id for tier={tier!r}")

    def load_agent_profiles(self) -> list[AgentProfile]:
        """Read configured agent profiles; a missing file means no agents yet."""

        if not self.agents_file.exists():
            return []
        raw = json.loads(self.agents_file.read_text("utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"{self.agents_file} must contain a JSON array of agent profiles.")
        profiles = [AgentProfile.from_dict(item) for item in raw]
        for profile in profiles:
            if profile.cwd is None:
                profile.cwd = str(self.agents_dir / profile.id)
        return profiles


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
