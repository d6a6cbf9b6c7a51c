from __future__ import annotations

from pathlib import Path

import allure
import pytest

from team_conductor.config import SandboxSettings
from team_conductor.sandbox import (
    ContainerLauncher,
    ContainerManager,
    CreateContainerOptions,
    CredentialMount,
    DockerClient,
    DockerCommandError,
    ImageManager,
    NoContainerError,
    PortAllocator,
    SandboxedPtyManager,
)
from team_conductor.sandbox.docker_client import (
    LABEL_AGENT_ID,
    LABEL_HOST_PORT_START,
    CreateContainerArgs,
    PortMapping,
    sanitize_name,
)
from team_conductor.terminal.manager import PtySpawnOptions

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Container Sandbox"),
]


def _flag_values(argv: list[str], flag: str) -> list[str]:
    return [argv[index + 1] for index, item in enumerate(argv[:-1]) if item == flag]


def _manager(fake_docker, tmp_path: Path, **kwargs) -> ContainerManager:
    home = tmp_path / "home"
    (home / ".claude").mkdir(parents=True)
    return ContainerManager(
        DockerClient(runner=fake_docker, platform="linux"),
        PortAllocator(10_000, 20, 3000),
        SandboxSettings(cpus=1.5, memory_mb=2048, pids_limit=128),
        image="team-conductor-agent:abc12345",
        home_dir=home,
        credential_paths=(".claude", ".codex"),
        **kwargs,
    )


def test_sanitize_name_lowercases_and_prefixes() -> None:
    assert sanitize_name("Backend Dev #1") == "tc-backend-dev-1"
    assert sanitize_name("--QA__bot--") == "tc-qa__bot"


def test_port_allocator_hands_out_disjoint_blocks_and_reuses_slots() -> None:
    allocator = PortAllocator(base_port=10_000, ports_per_agent=20, container_base_port=3000)

    alice = allocator.allocate("alice")
    bob = allocator.allocate("bob")
    assert (alice.host_start, bob.host_start) == (10_000, 10_020)
    assert allocator.allocate("alice") == alice

    allocator.release("alice")
    carol = allocator.allocate("carol")
    assert carol.host_start == 10_000
    assert allocator.resolve_host_port("bob", 3005) == 10_025
    assert allocator.resolve_host_port("bob", 3020) is None
    assert allocator.resolve_host_port("alice", 3000) is None


def test_port_mappings_cover_whole_block() -> None:
    mappings = PortAllocator(20_000, 3, 8000).build_port_mappings("alice")

    assert mappings == [PortMapping(20_000, 8000), PortMapping(20_001, 8001), PortMapping(20_002, 8002)]


def test_create_container_argv_includes_limits_labels_and_host_gateway(fake_docker) -> None:
    argv = DockerClient(runner=fake_docker, platform="linux").create_container_argv(
        CreateContainerArgs(
            name="tc-alice",
            image="img:1",
            cpus=2,
            memory_mb=4096,
            pids_limit=256,
            labels={LABEL_AGENT_ID: "alice"},
            port_mappings=[PortMapping(10_000, 3000)],
            env={"FOO": "bar"},
        ),
    )

    assert argv[:5] == ["docker", "create", "--name", "tc-alice", "--init"]
    assert "host.docker.internal:host-gateway" in _flag_values(argv, "--add-host")
    assert f"{LABEL_AGENT_ID}=alice" in _flag_values(argv, "--label")
    assert _flag_values(argv, "--memory") == ["4096m"]
    assert _flag_values(argv, "--cpus") == ["2"]
    assert _flag_values(argv, "-p") == ["10000:3000"]
    assert _flag_values(argv, "-e") == ["FOO=bar"]
    assert argv[-3:] == ["img:1", "sleep", "infinity"]

    mac_argv = DockerClient(runner=fake_docker, platform="darwin").create_container_argv(
        CreateContainerArgs(name="tc-alice", image="img:1", cpus=1, memory_mb=1, pids_limit=1),
    )
    assert "--add-host" not in mac_argv


def test_list_managed_containers_parses_tab_separated_rows(fake_docker) -> None:
    fake_docker.respond(
        "ps",
        stdout="abc123\ttc-alice\tUp 3 hours\talice\ndef456\ttc-bob\tExited (0) 2 days ago\tbob\n",
    )

    entries = DockerClient(runner=fake_docker).list_managed_containers()

    assert [(entry.id, entry.name, entry.status, entry.agent_id) for entry in entries] == [
        ("abc123", "tc-alice", "Up 3 hours", "alice"),
        ("def456", "tc-bob", "Exited (0) 2 days ago", "bob"),
    ]


def test_container_status_maps_inspect_results(fake_docker) -> None:
    docker = DockerClient(runner=fake_docker)
    fake_docker.respond("inspect", stdout="running\n")
    fake_docker.respond("inspect", stdout="exited\n")
    fake_docker.respond("inspect", returncode=1, stderr="No such object")

    assert [docker.container_status("c") for _ in range(3)] == ["running", "stopped", "not-found"]


def test_failed_docker_command_raises_with_stderr(fake_docker) -> None:
    fake_docker.respond("start", returncode=125, stderr="driver failed programming external connectivity")

    with pytest.raises(DockerCommandError, match="external connectivity"):
        DockerClient(runner=fake_docker).start_container("abc")


def test_create_and_start_mounts_workspace_credentials_and_volumes(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond("create", stdout="c0ffee\n")
    manager = _manager(fake_docker, tmp_path)

    info = manager.create_and_start(
        CreateContainerOptions(
            agent_id="alice",
            agent_name="Alice Dev",
            workspace_path="/work/alice",
            shared_skills_path="/skills",
            credential_mounts=[CredentialMount("/secrets/token", "/home/agent/.token")],
            env={"GIT_AUTHOR_NAME": "Alice"},
        ),
    )

    assert info.container_id == "c0ffee"
    assert info.port_mappings[3000] == 10_000
    assert fake_docker.subcommands() == ["rm", "create", "start"]
    create_argv = fake_docker.calls[1]
    volumes = _flag_values(create_argv, "-v")
    assert "/work/alice:/workspace" in volumes
    assert "/skills:/shared-skills:ro" in volumes
    assert "/secrets/token:/home/agent/.token:ro" in volumes
    assert f"{tmp_path / 'home' / '.claude'}:/home/agent/.claude:ro" in volumes
    assert not any(".codex" in volume for volume in volumes)
    assert "tc-alice-dev-local:/home/agent/.local" in volumes
    assert "tc-alice-dev-cache:/home/agent/.cache" in volumes
    assert _flag_values(create_argv, "--cpus") == ["1.5"]
    assert manager.is_running("alice")

    again = manager.create_and_start(CreateContainerOptions("alice", "Alice Dev", "/work/alice"))
    assert again is info
    assert fake_docker.subcommands() == ["rm", "create", "start"]


def test_failed_create_releases_ports(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond("create", returncode=1, stderr="image not found")
    manager = _manager(fake_docker, tmp_path)

    with pytest.raises(DockerCommandError):
        manager.create_and_start(CreateContainerOptions("alice", "Alice", "/work/alice"))

    assert manager.port_allocator.get("alice") is None
    assert not manager.is_running("alice")


def test_stop_removes_container_and_frees_ports(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond("create", stdout="c0ffee\n")
    manager = _manager(fake_docker, tmp_path)
    manager.create_and_start(CreateContainerOptions("alice", "Alice", "/work/alice"))

    manager.stop("alice")

    assert fake_docker.calls[-2][:2] == ["docker", "stop"]
    assert fake_docker.calls[-1] == ["docker", "rm", "-f", "c0ffee"]
    assert manager.get_container_id("alice") is None
    assert manager.port_allocator.get("alice") is None


def test_reclaim_adopts_running_and_removes_stopped(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond(
        "ps",
        stdout=(
            "aaa\ttc-alice\tUp 5 minutes\talice\t10000\n"
            "bbb\ttc-bob\tExited (137) 1 hour ago\tbob\t10020\n"
            "ccc\ttc-orphan\tUp 2 days\t\t10040\n"
            "ddd\ttc-dave\tUp 2 days\tdave\t\n"
        ),
    )
    manager = _manager(fake_docker, tmp_path)

    reclaimed = manager.reclaim_existing()

    assert reclaimed == {"alice"}
    assert manager.get_container_id("alice") == "aaa"
    assert manager.port_allocator.get("alice").host_start == 10_000
    removed = [argv[-1] for argv in fake_docker.calls if argv[1] == "rm"]
    assert removed == ["bbb", "ccc", "ddd"]
    assert [info.agent_name for info in manager.list_containers()] == ["alice"]


def test_reclaimed_container_keeps_its_port_block(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond("ps", stdout="aaa\ttc-alice\tUp 5 minutes\talice\t10020\n")
    fake_docker.respond("create", stdout="b0b\n")
    fake_docker.respond("create", stdout="ca401\n")
    manager = _manager(fake_docker, tmp_path)

    manager.reclaim_existing()
    bob = manager.create_and_start(CreateContainerOptions("bob", "Bob", "/work/bob"))
    carol = manager.create_and_start(CreateContainerOptions("carol", "Carol", "/work/carol"))

    alice = next(info for info in manager.list_containers() if info.agent_id == "alice")
    assert alice.port_mappings[3000] == 10_020
    assert bob.port_mappings[3000] == 10_000
    assert carol.port_mappings[3000] == 10_040
    assert manager.port_allocator.resolve_host_port("alice", 3001) == 10_021
    create_argv = [argv for argv in fake_docker.calls if argv[1] == "create"][0]
    assert f"{LABEL_HOST_PORT_START}=10000" in _flag_values(create_argv, "--label")


def test_port_allocator_reserve_rejects_taken_or_misaligned_blocks() -> None:
    allocator = PortAllocator(base_port=10_000, ports_per_agent=20, container_base_port=3000)
    allocator.allocate("alice")

    assert allocator.reserve("bob", 10_000) is None
    assert allocator.reserve("bob", 10_005) is None
    assert allocator.reserve("bob", 9_980) is None
    assert allocator.reserve("bob", 10_040).host_start == 10_040
    assert allocator.allocate("carol").host_start == 10_020


def test_image_manager_builds_only_when_tag_missing(fake_docker) -> None:
    docker = DockerClient(runner=fake_docker)
    images = ImageManager(docker, dockerfile="FROM scratch\n")
    fake_docker.respond("image", returncode=1)
    lines: list[str] = []
    fake_docker.respond("build", stdout="Step 1/1 : FROM scratch\n")

    tag = images.ensure_image("team-conductor-agent:latest", lines.append)

    assert tag == f"team-conductor-agent:{images.content_hash}"
    assert len(images.content_hash) == 8
    assert fake_docker.subcommands() == ["image", "build"]
    assert lines == ["Step 1/1 : FROM scratch"]

    assert images.ensure_image("team-conductor-agent:latest") == tag
    assert fake_docker.subcommands() == ["image", "build", "image"]


def test_sandboxed_terminal_execs_into_container(fake_docker, tmp_path: Path) -> None:
    fake_docker.respond("create", stdout="c0ffee\n")
    manager = _manager(fake_docker, tmp_path)
    manager.create_and_start(CreateContainerOptions("alice", "Alice", "/work/alice"))
    terminals = SandboxedPtyManager(manager, DockerClient(runner=fake_docker))
    try:
        plan = terminals._plan(
            "alice",
            "claude",
            ["--model", "sonnet", "it's done"],
            PtySpawnOptions(env={"A": "1"}),
        )
        with pytest.raises(NoContainerError):
            terminals._plan("bob", "claude", [], PtySpawnOptions())
        missing = terminals.spawn("bob", "claude", [])
    finally:
        terminals.close()

    assert plan.argv[:6] == ["docker", "exec", "-it", "-w", "/workspace", "-e"]
    assert "A=1" in _flag_values(plan.argv, "-e")
    assert plan.argv[-4:] == ["c0ffee", "/bin/bash", "-c", "claude --model sonnet 'it'\"'\"'s done'"]
    assert not missing.success
    assert missing.error == "No running container for this agent"


def test_container_launcher_requires_running_container(fake_docker, tmp_path: Path) -> None:
    launcher = ContainerLauncher(_manager(fake_docker, tmp_path), DockerClient(runner=fake_docker))

    with pytest.raises(FileNotFoundError, match="No running container"):
        launcher.launch("alice", ["claude", "-p"], cwd="/work/alice", env={})
