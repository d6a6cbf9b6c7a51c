"""Agent CLI runtimes: specs, output protocol and the execution driver."""

from team_conductor.runtime.base import (
    AgentOutput,
    ExecutionOptions,
    ExecutionProgress,
    ExecutionResult,
    FailureClass,
    InputContext,
    InputMode,
    OutputMode,
    ProgressKind,
    SpawnConfig,
    TokenUsage,
)
from team_conductor.runtime.driver import DirectLauncher, ProcessLauncher, RuntimeDriver
from team_conductor.runtime.runtimes import (
    BUILTIN_RUNTIMES,
    RuntimeRegistry,
    RuntimeSpec,
    UnknownRuntimeError,
)

__all__ = [
    "BUILTIN_RUNTIMES",
    "AgentOutput",
    "DirectLauncher",
    "ExecutionOptions",
    "ExecutionProgress",
    "ExecutionResult",
    "FailureClass",
    "InputContext",
    "InputMode",
    "OutputMode",
    "ProcessLauncher",
    "ProgressKind",
    "RuntimeDriver",
    "RuntimeRegistry",
    "RuntimeSpec",
    "SpawnConfig",
    "TokenUsage",
    "UnknownRuntimeError",
]
