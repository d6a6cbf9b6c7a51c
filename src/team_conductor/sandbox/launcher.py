"""One-shot executions inside the agent's container."""

from __future__ import annotations

import logging
import subprocess

from team_conductor.runtime.text import build_clean_env
from team_conductor.sandbox.container_manager import ContainerManager
from team_conductor.sandbox.docker_client import CONTAINER_WORKDIR, DockerClient

logger = logging.getLogger(__name__)


class ContainerLauncher:
    """Runs the agent CLI through ``docker exec -i`` with piped stdio.

    Only the runtime's own variables cross into the container; the host
    environment stays on the host.
    """

    def __init__(self, container_manager: ContainerManager, docker: DockerClient) -> None:
        self.container_manager = container_manager
        self.docker = docker

    def launch(
        self,
        agent_id: str,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
    ) -> subprocess.Popen[bytes]:
        container_id = self.container_manager.get_container_id(agent_id)
        if container_id is None:
            raise FileNotFoundError(f"No running container for agent {agent_id}")
        exec_argv = self.docker.exec_piped_argv(container_id, argv, env, workdir=CONTAINER_WORKDIR)
        logger.debug("Container exec: agent=%s container=%s host_cwd=%s", agent_id, container_id[:12], cwd)
        return subprocess.Popen(  # noqa: S603
            exec_argv,
            env=build_clean_env({}),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
