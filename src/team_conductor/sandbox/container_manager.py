"""One long-lived sandbox container per agent."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from team_conductor.config import SandboxSettings
from team_conductor.sandbox.docker_client import (
    AGENT_HOME,
    CONTAINER_PREFIX,
    CONTAINER_WORKDIR,
    LABEL_AGENT_ID,
    LABEL_HOST_PORT_START,
    CreateContainerArgs,
    DockerClient,
    NamedVolume,
    VolumeMount,
    sanitize_name,
)
from team_conductor.sandbox.port_allocator import PortAllocator

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_PATHS = (
    ".claude",
    ".claude.json",
    ".codex",
    ".cursor",
    ".config/opencode",
)


class ContainerStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(slots=True)
class CredentialMount:
    host_path: str
    container_path: str


@dataclass(slots=True)
class CreateContainerOptions:
    agent_id: str
    agent_name: str
    workspace_path: str
    shared_skills_path: str | None = None
    credential_mounts: list[CredentialMount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ContainerInfo:
    container_id: str
    agent_id: str
    agent_name: str
    status: ContainerStatus
    port_mappings: dict[int, int] = field(default_factory=dict)


class ContainerManager:
    """Creates, adopts and removes agent containers through ``DockerClient``."""

    def __init__(  # noqa: PLR0913
        self,
        docker: DockerClient,
        port_allocator: PortAllocator,
        settings: SandboxSettings,
        *,
        image: str | None = None,
        home_dir: Path | None = None,
        credential_paths: tuple[str, ...] | list[str] = DEFAULT_CREDENTIAL_PATHS,
    ) -> None:
        self.docker = docker
        self.port_allocator = port_allocator
        self.settings = settings
        self.image = image or settings.image_name
        self.home_dir = home_dir or Path.home()
        self.credential_paths = tuple(credential_paths)
        self._containers: dict[str, ContainerInfo] = {}
        self._lock = threading.RLock()

    def create_and_start(self, options: CreateContainerOptions) -> ContainerInfo:
        with self._lock:
            existing = self._containers.get(options.agent_id)
            if existing is not None and existing.status == ContainerStatus.RUNNING:
                return existing

            name = sanitize_name(options.agent_name)
            self.docker.remove_container(name)
            port_mappings = self.port_allocator.build_port_mappings(options.agent_id)
            info = ContainerInfo(
                container_id="",
                agent_id=options.agent_id,
                agent_name=options.agent_name,
                status=ContainerStatus.CREATING,
                port_mappings={item.container_port: item.host_port for item in port_mappings},
            )
            volume_prefix = re.sub(r"[^a-z0-9_-]", "-", name)
            args = CreateContainerArgs(
                name=name,
                image=self.image,
                cpus=self.settings.cpus,
                memory_mb=self.settings.memory_mb,
                pids_limit=self.settings.pids_limit,
                labels={
                    LABEL_AGENT_ID: options.agent_id,
                    LABEL_HOST_PORT_START: str(port_mappings[0].host_port),
                },
                volumes=self._volumes(options),
                named_volumes=[
                    NamedVolume(f"{volume_prefix}-local", f"{AGENT_HOME}/.local"),
                    NamedVolume(f"{volume_prefix}-cache", f"{AGENT_HOME}/.cache"),
                ],
                port_mappings=port_mappings,
                workdir=CONTAINER_WORKDIR,
                env=dict(options.env),
            )
            try:
                info.container_id = self.docker.create_container(args)
                self.docker.start_container(info.container_id)
            except Exception:
                info.status = ContainerStatus.STOPPED
                self.port_allocator.release(options.agent_id)
                logger.exception("Failed to create container: agent=%s name=%s", options.agent_id, name)
                raise
            info.status = ContainerStatus.RUNNING
            self._containers[options.agent_id] = info
            logger.info(
                "Container started: agent=%s name=%s id=%s",
                options.agent_id,
                name,
                info.container_id[:12],
            )
            return info

    def stop(self, agent_id: str) -> None:
        with self._lock:
            info = self._containers.get(agent_id)
            if info is None:
                return
            info.status = ContainerStatus.STOPPING
            logger.info("Stopping container: agent=%s id=%s", agent_id, info.container_id[:12])
            self.docker.stop_container(info.container_id, self.settings.stop_timeout_seconds)
            self.docker.remove_container(info.container_id)
            self.port_allocator.release(agent_id)
            del self._containers[agent_id]

    def stop_all(self) -> None:
        with self._lock:
            agent_ids = list(self._containers)
        for agent_id in agent_ids:
            self.stop(agent_id)

    def reclaim_existing(self) -> set[str]:
        """Adopt running managed containers and remove the rest.

        An adopted container keeps the host block recorded in its port label.
        One whose block is unknown or already taken is removed and gets
        recreated on demand.
        """

        reclaimed: set[str] = set()
        for entry in self.docker.list_managed_containers():
            allocation = None
            if entry.status.startswith("Up") and entry.agent_id and entry.host_port_start is not None:
                allocation = self.port_allocator.reserve(entry.agent_id, entry.host_port_start)
                if allocation is None:
                    logger.warning(
                        "Container port block unavailable: agent=%s name=%s host_port_start=%s",
                        entry.agent_id,
                        entry.name,
                        entry.host_port_start,
                    )
            if allocation is None:
                logger.info("Removing stale container: name=%s status=%s", entry.name, entry.status)
                self.docker.remove_container(entry.id)
                continue
            with self._lock:
                self._containers[entry.agent_id] = ContainerInfo(
                    container_id=entry.id,
                    agent_id=entry.agent_id,
                    agent_name=entry.name.removeprefix(CONTAINER_PREFIX),
                    status=ContainerStatus.RUNNING,
                    port_mappings={
                        allocation.container_start + offset: allocation.host_start + offset
                        for offset in range(allocation.count)
                    },
                )
            reclaimed.add(entry.agent_id)
            logger.info(
                "Reclaimed container: agent=%s name=%s host_port_start=%s",
                entry.agent_id,
                entry.name,
                allocation.host_start,
            )
        if reclaimed:
            logger.info("Reclaimed %s running container(s)", len(reclaimed))
        return reclaimed

    def get_container_id(self, agent_id: str) -> str | None:
        with self._lock:
            info = self._containers.get(agent_id)
        return info.container_id if info is not None else None

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            info = self._containers.get(agent_id)
        return info is not None and info.status == ContainerStatus.RUNNING

    def list_containers(self) -> list[ContainerInfo]:
        with self._lock:
            return list(self._containers.values())

    def _volumes(self, options: CreateContainerOptions) -> list[VolumeMount]:
        volumes = [VolumeMount(options.workspace_path, CONTAINER_WORKDIR)]
        if options.shared_skills_path:
            volumes.append(VolumeMount(options.shared_skills_path, "/shared-skills", read_only=True))
        volumes.extend(
            VolumeMount(mount.host_path, mount.container_path, read_only=True)
            for mount in options.credential_mounts
        )
        for relative in self.credential_paths:
            host_path = self.home_dir / relative
            if host_path.exists():
                volumes.append(
                    VolumeMount(str(host_path), f"{AGENT_HOME}/{relative}", read_only=True),
                )
        return volumes
