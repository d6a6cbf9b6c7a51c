"""Container sandbox: docker CLI driving, ports, images and container sessions."""

from team_conductor.sandbox.container_manager import (
    ContainerInfo,
    ContainerManager,
    ContainerStatus,
    CreateContainerOptions,
    CredentialMount,
)
from team_conductor.sandbox.docker_client import DockerClient, DockerCommandError
from team_conductor.sandbox.image_manager import ImageManager
from team_conductor.sandbox.launcher import ContainerLauncher
from team_conductor.sandbox.port_allocator import PortAllocation, PortAllocator
from team_conductor.sandbox.sandboxed_pty import NoContainerError, SandboxedPtyManager

__all__ = [
    "ContainerInfo",
    "ContainerLauncher",
    "ContainerManager",
    "ContainerStatus",
    "CreateContainerOptions",
    "CredentialMount",
    "DockerClient",
    "DockerCommandError",
    "ImageManager",
    "NoContainerError",
    "PortAllocation",
    "PortAllocator",
    "SandboxedPtyManager",
]
