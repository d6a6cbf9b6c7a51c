"""Runtime contract types shared by the execution driver and its callers."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum


class ProgressKind(str, Enum):
    TOOL_USE = "tool-use"
    THINKING = "thinking"
    TEXT = "text"


class InputMode(str, Enum):
    """How prompt text reaches the agent CLI."""

    STDIN = "stdin"
    ARGUMENT = "argument"


class OutputMode(str, Enum):
    STRUCTURED = "structured"
    THROTTLED = "throttled"


class FailureClass(str, Enum):
    """Deterministic category of a failed one-shot execution."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SPAWN_FAILED = "spawn_failed"


@dataclass(slots=True)
class ExecutionProgress:
    type: ProgressKind
    summary: str


ProgressCallback = Callable[[ExecutionProgress], None]
OutputCallback = Callable[[str], None]


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class SpawnConfig:
    """Interactive launch description for a terminal session."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class InputContext:
    shared_context: str | None = None


@dataclass(slots=True)
class AgentOutput:
    """Classified chunk of interactive terminal output."""

    type: ProgressKind
    content: str
    raw: str


@dataclass(slots=True)
class ExecutionOptions:
    """Per-call knobs for one-shot execution."""

    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None
    cancel: threading.Event | None = None
    timeout_seconds: float | None = None
    on_progress: ProgressCallback | None = None
    on_output: OutputCallback | None = None


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    text: str = ""
    session_id: str | None = None
    error: str | None = None
    usage: TokenUsage | None = None
    failure_class: FailureClass | None = None
    exit_code: int | None = None
