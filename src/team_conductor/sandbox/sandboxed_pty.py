"""Interactive sessions that run inside the agent's container."""

from __future__ import annotations

import logging
import shlex

from team_conductor.runtime.text import build_clean_env
from team_conductor.sandbox.container_manager import ContainerManager
from team_conductor.sandbox.docker_client import CONTAINER_WORKDIR, DockerClient
from team_conductor.terminal.manager import (
    TERMINAL_ENV,
    LaunchPlan,
    PtyManager,
    PtySession,
    PtySpawnOptions,
)
from team_conductor.timers import TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class NoContainerError(LookupError):
    """The agent has no running container to exec into."""


class SandboxedPtyManager(PtyManager):
    """Bridges the terminal through ``docker exec -it``.

    Killing a session stops the whole container, which takes every process
    started inside it along.
    """

    def __init__(
        self,
        container_manager: ContainerManager,
        docker: DockerClient,
        *,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        super().__init__(timer_factory=timer_factory)
        self.container_manager = container_manager
        self.docker = docker

    def _plan(
        self,
        agent_id: str,
        command: str,
        args: list[str],
        options: PtySpawnOptions,
    ) -> LaunchPlan:
        container_id = self.container_manager.get_container_id(agent_id)
        if container_id is None:
            raise NoContainerError("No running container for this agent")
        agent_command = " ".join(shlex.quote(part) for part in [command, *args])
        argv = self.docker.exec_interactive_argv(
            container_id,
            ["/bin/bash", "-c", agent_command],
            {**options.env, **TERMINAL_ENV},
            workdir=CONTAINER_WORKDIR,
        )
        logger.info("Spawning in container: agent=%s container=%s", agent_id, container_id[:12])
        # cwd only matters inside the container, where -w sets it
        return LaunchPlan(argv=argv, cwd=options.cwd or "/", env=build_clean_env(TERMINAL_ENV))

    def _terminate(self, session: PtySession) -> None:
        self.container_manager.stop(session.agent_id)
