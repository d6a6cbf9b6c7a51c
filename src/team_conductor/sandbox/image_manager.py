"""Agent sandbox image provisioning keyed by a content hash."""

from __future__ import annotations

import hashlib
import logging
import tempfile
from collections.abc import Callable
from pathlib import Path

from team_conductor.sandbox.docker_client import DockerClient

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE = """\
FROM node:22-bookworm-slim

RUN apt-get update \\
    && apt-get install -y --no-install-recommends \\
        bash ca-certificates curl git python3 python3-pip ripgrep \\
    && rm -rf /var/lib/apt/lists/*

RUN npm install -g @anthropic-ai/claude-code @openai/codex opencode-ai \\
    && npm cache clean --force

RUN useradd --create-home --shell /bin/bash agent \\
    && mkdir -p /workspace /home/agent/.local /home/agent/.cache \\
    && chown -R agent:agent /workspace /home/agent

USER agent
ENV PATH="/home/agent/.local/bin:${PATH}"
WORKDIR /workspace
CMD ["sleep", "infinity"]
"""


class ImageManager:
    """Builds the sandbox image when the tag for the current definition is missing."""

    def __init__(self, docker: DockerClient, dockerfile: str = DEFAULT_DOCKERFILE) -> None:
        self.docker = docker
        self.dockerfile = dockerfile
        self.content_hash = hashlib.sha256(dockerfile.encode("utf-8")).hexdigest()[:8]

    def resolve_tag(self, base_tag: str) -> str:
        name = base_tag.split(":", 1)[0]
        return f"{name}:{self.content_hash}"

    def ensure_image(self, base_tag: str, on_output: Callable[[str], None] | None = None) -> str:
        """Return the versioned tag, building the image first when it does not exist."""

        tag = self.resolve_tag(base_tag)
        if self.docker.image_exists(tag):
            logger.info("Sandbox image present: tag=%s", tag)
            return tag
        logger.info("Sandbox image missing, building: tag=%s", tag)
        with tempfile.TemporaryDirectory(prefix="team-conductor-build-") as context_dir:
            (Path(context_dir) / "Dockerfile").write_text(self.dockerfile, "utf-8")
            self.docker.build_image(context_dir, tag, on_output)
        return tag
