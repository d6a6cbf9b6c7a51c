"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from team_conductor.models import AgentProfile
from team_conductor.runtime import jsonl_parser
from team_conductor.runtime.base import InputMode, OutputMode
from team_conductor.runtime.runtimes import RuntimeSpec, _raw_result

_ECHO_AGENT_MODULE = "team_conductor.runtime.echo_agent"
_SRC_DIR = str(Path(__file__).resolve().parents[1] / "src")


@dataclass
class ManualTimer:
    delay: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualTimers:
    """Timer factory that only fires when the test says so."""

    created: list[ManualTimer] = field(default_factory=list)

    def __call__(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.created.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self.created if not timer.cancelled]

    def fire_all(self) -> None:
        for timer in self.pending:
            timer.cancelled = True
            timer.callback()


@pytest.fixture()
def manual_timers() -> ManualTimers:
    return ManualTimers()


@dataclass
class FakeDocker:
    """Records docker argv and answers from a queue of canned results keyed by subcommand."""

    calls: list[list[str]] = field(default_factory=list)
    responses: dict[str, list[subprocess.CompletedProcess[str]]] = field(default_factory=dict)

    def respond(self, subcommand: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses.setdefault(subcommand, []).append(
            subprocess.CompletedProcess(["docker", subcommand], returncode, stdout, stderr),
        )

    def __call__(self, argv: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        queued = self.responses.get(argv[1])
        if queued:
            return queued.pop(0)
        return subprocess.CompletedProcess(argv, 0, "", "")

    def subcommands(self) -> list[str]:
        return [argv[1] for argv in self.calls]


@pytest.fixture()
def fake_docker() -> FakeDocker:
    return FakeDocker()


def _echo_runtime(
    *extra_args: str,
    runtime_id: str = "echo",
    output_mode: OutputMode = OutputMode.STRUCTURED,
) -> RuntimeSpec:
    """Runtime spec that runs the bundled echo agent under the current interpreter."""

    return RuntimeSpec(
        id=runtime_id,
        display_name="Echo",
        command=sys.executable,
        build_interactive_args=lambda profile: ["-m", _ECHO_AGENT_MODULE],
        build_execute_args=lambda profile, options, text: ["-m", _ECHO_AGENT_MODULE, *extra_args],
        input_mode=InputMode.STDIN,
        output_mode=output_mode,
        build_env=lambda profile: {"PYTHONPATH": _SRC_DIR},
        parse_result=_raw_result if output_mode == OutputMode.THROTTLED else jsonl_parser.parse_result,
    )


@pytest.fixture()
def echo_profile(tmp_path) -> AgentProfile:
    workspace = tmp_path / "echo-agent"
    workspace.mkdir()
    return AgentProfile(id="echo-agent", name="Echo Agent", runtime="echo", cwd=str(workspace))


@pytest.fixture()
def echo_runtime() -> Callable[..., RuntimeSpec]:
    return _echo_runtime
