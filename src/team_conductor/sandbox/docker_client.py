"""Thin wrapper that drives the docker CLI through argument vectors."""

from __future__ import annotations

import logging
import re
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "tc-"
LABEL_APP = "com.team-conductor.app"
LABEL_AGENT_ID = "com.team-conductor.agent-id"
LABEL_HOST_PORT_START = "com.team-conductor.host-port-start"
CONTAINER_WORKDIR = "/workspace"
AGENT_HOME = "/home/agent"

CommandRunner = Callable[[list[str], float], subprocess.CompletedProcess[str]]


def run_command(argv: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        argv,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


class DockerCommandError(RuntimeError):
    """A docker CLI invocation exited non-zero."""

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        super().__init__(
            f"docker {' '.join(argv[1:3])} failed with exit code {returncode}: {stderr.strip()[:500]}",
        )
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True)
class VolumeMount:
    host_path: str
    container_path: str
    read_only: bool = False

    def flag(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host_path}:{self.container_path}{suffix}"


@dataclass(slots=True)
class NamedVolume:
    volume_name: str
    container_path: str


@dataclass(slots=True)
class PortMapping:
    host_port: int
    container_port: int


@dataclass(slots=True)
class CreateContainerArgs:
    name: str
    image: str
    cpus: float
    memory_mb: int
    pids_limit: int
    labels: dict[str, str] = field(default_factory=dict)
    volumes: list[VolumeMount] = field(default_factory=list)
    named_volumes: list[NamedVolume] = field(default_factory=list)
    port_mappings: list[PortMapping] = field(default_factory=list)
    workdir: str = CONTAINER_WORKDIR
    env: dict[str, str] = field(default_factory=dict)
    command: list[str] = field(default_factory=lambda: ["sleep", "infinity"])


@dataclass(slots=True)
class ContainerListEntry:
    id: str
    name: str
    status: str
    agent_id: str
    host_port_start: int | None = None


def sanitize_name(agent_name: str) -> str:
    """Lowercase, collapse disallowed characters to ``-`` and prefix."""

    cleaned = re.sub(r"[^a-z0-9_.-]", "-", agent_name.lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return CONTAINER_PREFIX + cleaned


class DockerClient:
    def __init__(
        self,
        docker_binary: str = "docker",
        *,
        runner: CommandRunner = run_command,
        platform: str = sys.platform,
    ) -> None:
        self.docker_binary = docker_binary
        self._run = runner
        self._platform = platform

    def is_available(self) -> bool:
        try:
            completed = self._run([self.docker_binary, "info", "--format", "{{.ID}}"], 5)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0

    def image_exists(self, tag: str) -> bool:
        try:
            completed = self._run([self.docker_binary, "image", "inspect", tag], 5)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0

    def build_image(
        self,
        context_dir: str,
        tag: str,
        on_output: Callable[[str], None] | None = None,
        timeout: float = 600,
    ) -> None:
        logger.info("Building docker image: tag=%s context=%s", tag, context_dir)
        completed = self._checked([self.docker_binary, "build", "-t", tag, context_dir], timeout)
        for line in (completed.stdout + completed.stderr).splitlines():
            if line.strip():
                logger.debug("docker build: %s", line)
                if on_output is not None:
                    on_output(line)
        logger.info("Docker image built: tag=%s", tag)

    def create_container_argv(self, args: CreateContainerArgs) -> list[str]:
        argv = [self.docker_binary, "create", "--name", args.name, "--init"]
        if self._platform.startswith("linux"):
            argv.extend(["--add-host", "host.docker.internal:host-gateway"])
        argv.extend(["--label", f"{LABEL_APP}=true"])
        for key, value in args.labels.items():
            argv.extend(["--label", f"{key}={value}"])
        argv.extend(
            [
                "--cpus",
                f"{args.cpus:g}",
                "--memory",
                f"{args.memory_mb}m",
                "--pids-limit",
                str(args.pids_limit),
            ],
        )
        for volume in args.volumes:
            argv.extend(["-v", volume.flag()])
        for named in args.named_volumes:
            argv.extend(["-v", f"{named.volume_name}:{named.container_path}"])
        for mapping in args.port_mappings:
            argv.extend(["-p", f"{mapping.host_port}:{mapping.container_port}"])
        argv.extend(["-w", args.workdir])
        for key, value in args.env.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(args.image)
        argv.extend(args.command)
        return argv

    def create_container(self, args: CreateContainerArgs) -> str:
        completed = self._checked(self.create_container_argv(args), 30)
        container_id = completed.stdout.strip()
        logger.info("Created container: name=%s id=%s", args.name, container_id[:12])
        return container_id

    def start_container(self, container_id: str) -> None:
        self._checked([self.docker_binary, "start", container_id], 10)

    def stop_container(self, container_id: str, timeout_seconds: int = 10) -> None:
        argv = [self.docker_binary, "stop", "--time", str(timeout_seconds), container_id]
        try:
            self._checked(argv, timeout_seconds + 5)
        except (DockerCommandError, OSError, subprocess.TimeoutExpired) as error:
            logger.warning("Failed to stop container gracefully: id=%s error=%s", container_id[:12], error)

    def remove_container(self, container_id: str) -> None:
        try:
            self._checked([self.docker_binary, "rm", "-f", container_id], 10)
        except DockerCommandError as error:
            if "No such container" in error.stderr:
                logger.debug("Container already gone: id=%s", container_id[:12])
                return
            logger.warning("Failed to remove container: id=%s error=%s", container_id[:12], error)
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("Failed to remove container: id=%s error=%s", container_id[:12], error)

    def container_status(self, container_id: str) -> str:
        """Return ``running``, ``stopped`` or ``not-found``."""

        argv = [self.docker_binary, "inspect", "--format", "{{.State.Status}}", container_id]
        try:
            completed = self._run(argv, 5)
        except (OSError, subprocess.TimeoutExpired):
            return "not-found"
        if completed.returncode != 0:
            return "not-found"
        return "running" if completed.stdout.strip() == "running" else "stopped"

    def exec_interactive_argv(
        self,
        container_id: str,
        command: list[str],
        env: Mapping[str, str],
        workdir: str = CONTAINER_WORKDIR,
    ) -> list[str]:
        return self._exec_argv("-it", container_id, command, env, workdir)

    def exec_piped_argv(
        self,
        container_id: str,
        command: list[str],
        env: Mapping[str, str],
        workdir: str = CONTAINER_WORKDIR,
    ) -> list[str]:
        return self._exec_argv("-i", container_id, command, env, workdir)

    def list_managed_containers(self) -> list[ContainerListEntry]:
        """List every container carrying the app label, running or not."""

        argv = [
            self.docker_binary,
            "ps",
            "-a",
            "--filter",
            f"label={LABEL_APP}=true",
            "--format",
            f'{{{{.ID}}}}\t{{{{.Names}}}}\t{{{{.Status}}}}\t{{{{.Label "{LABEL_AGENT_ID}"}}}}'
            f'\t{{{{.Label "{LABEL_HOST_PORT_START}"}}}}',
        ]
        try:
            completed = self._checked(argv, 5)
        except (DockerCommandError, OSError, subprocess.TimeoutExpired) as error:
            logger.warning("Listing managed containers failed: %s", error)
            return []
        entries: list[ContainerListEntry] = []
        for line in completed.stdout.strip().splitlines():
            if not line.strip():
                continue
            fields = line.split("\t")
            fields += [""] * (5 - len(fields))
            container_id, name, status, agent_id, port_start = fields[:5]
            entries.append(
                ContainerListEntry(
                    id=container_id,
                    name=name,
                    status=status,
                    agent_id=agent_id,
                    host_port_start=int(port_start) if port_start.strip().isdigit() else None,
                ),
            )
        return entries

    def _exec_argv(
        self,
        mode: str,
        container_id: str,
        command: list[str],
        env: Mapping[str, str],
        workdir: str,
    ) -> list[str]:
        argv = [self.docker_binary, "exec", mode, "-w", workdir]
        for key, value in env.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(container_id)
        argv.extend(command)
        return argv

    def _checked(self, argv: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        completed = self._run(argv, timeout)
        if completed.returncode != 0:
            raise DockerCommandError(argv, completed.returncode, completed.stderr)
        return completed
