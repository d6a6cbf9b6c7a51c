"""Data-driven descriptions of the supported agent CLIs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from team_conductor.models import AgentProfile
from team_conductor.runtime import jsonl_parser
from team_conductor.runtime.base import (
    AgentOutput,
    ExecutionOptions,
    ExecutionResult,
    InputContext,
    InputMode,
    OutputMode,
    ProgressKind,
    SpawnConfig,
)
from team_conductor.runtime.output_strategy import (
    OutputStrategy,
    StructuredOutputStrategy,
    ThrottledOutputStrategy,
)
from team_conductor.runtime.text import strip_ansi_simple
from team_conductor.runtime.usage import extract_textual_usage

ArgsBuilder = Callable[[AgentProfile, ExecutionOptions, str], list[str]]
InteractiveArgsBuilder = Callable[[AgentProfile], list[str]]
EnvBuilder = Callable[[AgentProfile], dict[str, str]]
ResultParser = Callable[[str], ExecutionResult]


def _no_env(profile: AgentProfile) -> dict[str, str]:
    return {}


def _model_args(profile: AgentProfile) -> list[str]:
    return ["--model", profile.model] if profile.model else []


def _raw_result(stdout: str) -> ExecutionResult:
    text = strip_ansi_simple(stdout).strip()
    return ExecutionResult(success=True, text=text, usage=extract_textual_usage(stdout))


@dataclass(slots=True)
class RuntimeSpec:
    """Everything that differs between agent CLIs, as data plus small hooks.

    A single ``RuntimeDriver`` turns a spec into interactive spawn configs and
    one-shot executions.
    """

    id: str
    display_name: str
    command: str
    build_interactive_args: InteractiveArgsBuilder
    build_execute_args: ArgsBuilder
    input_mode: InputMode = InputMode.STDIN
    output_mode: OutputMode = OutputMode.STRUCTURED
    build_env: EnvBuilder = _no_env
    build_interactive_env: EnvBuilder = _no_env
    tool_markers: tuple[str, ...] = ()
    thinking_markers: tuple[str, ...] = ()
    context_label: str = "Context from other agents"
    parse_result: ResultParser = jsonl_parser.parse_result
    credential_paths: tuple[str, ...] = field(default_factory=tuple)

    def build_spawn_config(self, profile: AgentProfile) -> SpawnConfig:
        return SpawnConfig(
            command=self.command,
            args=self.build_interactive_args(profile),
            env=self.build_interactive_env(profile),
        )

    def format_input(self, text: str, context: InputContext | None = None) -> str:
        if context is not None and context.shared_context:
            return f"[{self.context_label}: {context.shared_context}]\n\n{text}"
        return text

    def classify(self, cleaned: str) -> ProgressKind:
        if any(marker in cleaned for marker in self.tool_markers):
            return ProgressKind.TOOL_USE
        if any(marker in cleaned for marker in self.thinking_markers):
            return ProgressKind.THINKING
        return ProgressKind.TEXT

    def parse_output(self, raw: str) -> AgentOutput:
        cleaned = strip_ansi_simple(raw)
        return AgentOutput(type=self.classify(cleaned), content=cleaned.strip(), raw=raw)

    def create_output_strategy(self) -> OutputStrategy:
        if self.output_mode == OutputMode.STRUCTURED:
            return StructuredOutputStrategy(
                jsonl_parser.parse_stream_event,
                jsonl_parser.render_terminal_line,
            )
        return ThrottledOutputStrategy(self.classify)


def default_system_prompt(profile: AgentProfile) -> str:
    if profile.system_prompt:
        return profile.system_prompt
    return f"Your name is {profile.name}. When asked who you are, respond as {profile.name}."


def _claude_interactive_args(profile: AgentProfile) -> list[str]:
    args: list[str] = []
    if profile.allow_full_access:
        args.append("--dangerously-skip-permissions")
    args.extend(_model_args(profile))
    args.extend(["--system-prompt", default_system_prompt(profile)])
    return args


def _claude_execute_args(profile: AgentProfile, options: ExecutionOptions, text: str) -> list[str]:
    args = ["-p", "--output-format", "stream-json", "--verbose"]
    args.extend(_claude_interactive_args(profile))
    if options.session_id:
        args.extend(["--resume", options.session_id])
    return args


def _claude_env(profile: AgentProfile) -> dict[str, str]:
    return {"CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": "1"}


def _codex_execute_args(profile: AgentProfile, options: ExecutionOptions, text: str) -> list[str]:
    return ["exec", *_model_args(profile), text]


def _cursor_execute_args(profile: AgentProfile, options: ExecutionOptions, text: str) -> list[str]:
    args = ["-p", "--output-format", "stream-json", "--trust", *_model_args(profile)]
    if profile.allow_full_access:
        args.append("--force")
    if options.session_id:
        args.extend(["--resume", options.session_id])
    return args


def _opencode_execute_args(profile: AgentProfile, options: ExecutionOptions, text: str) -> list[str]:
    return ["run", *_model_args(profile), text]


def _opencode_env(profile: AgentProfile) -> dict[str, str]:
    return {"OPENCODE_MODEL": profile.model} if profile.model else {}


CLAUDE_CODE = RuntimeSpec(
    id="claude-code",
    display_name="Claude Code",
    command="claude",
    build_interactive_args=_claude_interactive_args,
    build_execute_args=_claude_execute_args,
    build_env=_claude_env,
    build_interactive_env=_claude_env,
    tool_markers=("Tool use:", "Running:"),
    thinking_markers=("Thinking...", "thinking"),
    credential_paths=(".claude", ".claude.json"),
)

CODEX = RuntimeSpec(
    id="codex",
    display_name="Codex CLI",
    command="codex",
    build_interactive_args=_model_args,
    build_execute_args=_codex_execute_args,
    input_mode=InputMode.ARGUMENT,
    output_mode=OutputMode.THROTTLED,
    tool_markers=("executing", "Running", "shell"),
    thinking_markers=("Thinking", "thinking"),
    parse_result=_raw_result,
    credential_paths=(".codex",),
)

CURSOR = RuntimeSpec(
    id="cursor",
    display_name="Cursor",
    command="cursor-agent",
    build_interactive_args=_model_args,
    build_execute_args=_cursor_execute_args,
    tool_markers=("Tool:", "Running", "executing"),
    thinking_markers=("Thinking", "thinking"),
    credential_paths=(".cursor",),
)

OPENCODE = RuntimeSpec(
    id="opencode",
    display_name="OpenCode",
    command="opencode",
    build_interactive_args=lambda profile: [],
    build_execute_args=_opencode_execute_args,
    input_mode=InputMode.ARGUMENT,
    output_mode=OutputMode.THROTTLED,
    build_interactive_env=_opencode_env,
    tool_markers=("executing", "running"),
    context_label="Shared context",
    parse_result=_raw_result,
    credential_paths=(".config/opencode",),
)

BUILTIN_RUNTIMES: tuple[RuntimeSpec, ...] = (CLAUDE_CODE, CODEX, CURSOR, OPENCODE)


class UnknownRuntimeError(LookupError):
    """Raised when an agent profile names a runtime nobody registered."""


class RuntimeRegistry:
    def __init__(self, specs: tuple[RuntimeSpec, ...] | list[RuntimeSpec] = BUILTIN_RUNTIMES) -> None:
        self._specs: dict[str, RuntimeSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: RuntimeSpec) -> None:
        self._specs[spec.id] = spec

    def get(self, runtime_id: str) -> RuntimeSpec:
        try:
            return self._specs[runtime_id]
        except KeyError as error:
            raise UnknownRuntimeError(f"Unknown runtime: {runtime_id}") from error

    def has(self, runtime_id: str) -> bool:
        return runtime_id in self._specs

    def list(self) -> list[RuntimeSpec]:
        return list(self._specs.values())

    def credential_paths(self) -> list[str]:
        """Home-relative credential locations of every registered runtime."""

        paths: list[str] = []
        for spec in self._specs.values():
            paths.extend(path for path in spec.credential_paths if path not in paths)
        return paths
