"""Single execution driver for every runtime spec."""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Protocol

from team_conductor.models import AgentProfile
from team_conductor.runtime.base import (
    AgentOutput,
    ExecutionOptions,
    ExecutionResult,
    FailureClass,
    InputContext,
    InputMode,
    OutputMode,
    SpawnConfig,
)
from team_conductor.runtime.failure_classifier import classify_failure
from team_conductor.runtime.jsonl_parser import find_result_event
from team_conductor.runtime.output_strategy import OutputCallbacks, OutputStrategy
from team_conductor.runtime.runtimes import RuntimeSpec
from team_conductor.runtime.text import (
    build_clean_env,
    create_secret_redactor,
    strip_ansi_simple,
    truncate,
)

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024 * 1024
_POLL_SECONDS = 0.1
_READ_CHUNK = 64 * 1024
READER_JOIN_SECONDS = 5.0


class ProcessLauncher(Protocol):
    """Starts the one-shot child process for an agent."""

    def launch(
        self,
        agent_id: str,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
    ) -> subprocess.Popen[bytes]:
        """Start ``argv`` with piped stdio in its own process group.

        ``env`` holds only the variables the runtime adds; the launcher decides
        what base environment they are layered on.
        """


class DirectLauncher:
    """Runs the agent CLI on the host."""

    def launch(
        self,
        agent_id: str,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
    ) -> subprocess.Popen[bytes]:
        if not Path(cwd).is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {cwd}")
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            env=build_clean_env(env),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )


class _Capture:
    """Bounded text accumulator fed from a reader thread."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.parts: list[str] = []
        self.size = 0
        self.capped = False

    def add(self, text: str) -> None:
        if self.capped:
            return
        remaining = self.limit - self.size
        if len(text) > remaining:
            text = text[:remaining]
            self.capped = True
        self.parts.append(text)
        self.size += len(text)

    def text(self) -> str:
        return "".join(self.parts)


class RuntimeDriver:
    """Executes one-shot prompts for the runtime described by ``spec``."""

    def __init__(
        self,
        spec: RuntimeSpec,
        *,
        launcher: ProcessLauncher | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        reader_join_seconds: float = READER_JOIN_SECONDS,
    ) -> None:
        self.spec = spec
        self.launcher = launcher or DirectLauncher()
        self.max_output_bytes = max_output_bytes
        self.reader_join_seconds = reader_join_seconds

    @property
    def runtime_id(self) -> str:
        return self.spec.id

    def build_spawn_config(self, profile: AgentProfile) -> SpawnConfig:
        config = self.spec.build_spawn_config(profile)
        config.env = {**config.env, **profile.env}
        return config

    def format_input(self, text: str, context: InputContext | None = None) -> str:
        return self.spec.format_input(text, context)

    def parse_output(self, raw: str) -> AgentOutput:
        return self.spec.parse_output(raw)

    def execute(  # noqa: C901
        self,
        profile: AgentProfile,
        text: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Run the agent CLI once and return its final answer.

        Never raises for runtime failures: spawn errors, timeouts, cancellation
        and non-zero exits all come back as ``success=False`` results.
        """

        options = options or ExecutionOptions()
        argv = [self.spec.command, *self.spec.build_execute_args(profile, options, text)]
        env = {**self.spec.build_env(profile), **profile.env, **options.env}
        cwd = options.cwd or profile.cwd or str(Path.home())
        redact = create_secret_redactor([*profile.env.values(), *options.env.values()])
        logger.info(
            "Executing: agent=%s runtime=%s command=%s",
            profile.id,
            self.spec.id,
            truncate(redact(" ".join(argv)), 120),
        )

        started = time.monotonic()
        try:
            process = self.launcher.launch(profile.id, argv, cwd=cwd, env=env)
        except FileNotFoundError as error:
            message = truncate(f"Command not found: {error.filename or error}", MAX_ERROR_CHARS)
            logger.error("Spawn failed: agent=%s error=%s", profile.id, message)
            return ExecutionResult(
                success=False,
                error=message,
                failure_class=FailureClass.SPAWN_FAILED,
            )
        except OSError as error:
            message = truncate(f"Failed to start {self.spec.command}: {error}", MAX_ERROR_CHARS)
            logger.error("Spawn failed: agent=%s error=%s", profile.id, message)
            return ExecutionResult(
                success=False,
                error=message,
                failure_class=FailureClass.SPAWN_FAILED,
            )

        strategy = self.spec.create_output_strategy()
        callbacks = OutputCallbacks(on_progress=options.on_progress, on_output=options.on_output)
        stdout = _Capture(self.max_output_bytes)
        stderr = _Capture(self.max_output_bytes)
        readers = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, stdout, strategy, callbacks),
                name=f"stdout-{profile.id}",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, stderr, None, None),
                name=f"stderr-{profile.id}",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        _write_input(process, text if self.spec.input_mode == InputMode.STDIN else None)

        stopped_reason = self._wait(process, options, started)
        for reader in readers:
            reader.join(timeout=self.reader_join_seconds)
        if readers[0].is_alive():
            # a grandchild still holds stdout; the reader owns the strategy until EOF
            logger.warning("Stdout still open after exit, skipping flush: agent=%s", profile.id)
        else:
            _flush(strategy, callbacks)
        duration = time.monotonic() - started

        if stopped_reason == FailureClass.TIMEOUT:
            logger.warning("Execution timed out: agent=%s seconds=%.1f", profile.id, duration)
            return ExecutionResult(
                success=False,
                error=f"Timed out after {options.timeout_seconds:g}s",
                failure_class=FailureClass.TIMEOUT,
                exit_code=process.returncode,
            )
        if stopped_reason == FailureClass.CANCELLED:
            logger.info("Execution cancelled: agent=%s", profile.id)
            return ExecutionResult(
                success=False,
                error="Execution cancelled",
                failure_class=FailureClass.CANCELLED,
                exit_code=process.returncode,
            )

        return self._finish(profile, process.returncode, stdout.text(), stderr.text())

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        options: ExecutionOptions,
        started: float,
    ) -> FailureClass | None:
        while True:
            if process.poll() is not None:
                return None
            if (
                options.timeout_seconds is not None
                and time.monotonic() - started >= options.timeout_seconds
            ):
                terminate_process_group(process)
                return FailureClass.TIMEOUT
            if options.cancel is not None:
                if options.cancel.wait(_POLL_SECONDS):
                    terminate_process_group(process)
                    return FailureClass.CANCELLED
            else:
                time.sleep(_POLL_SECONDS)

    def _finish(
        self,
        profile: AgentProfile,
        exit_code: int,
        stdout: str,
        stderr: str,
    ) -> ExecutionResult:
        if exit_code != 0:
            has_result = (
                self.spec.output_mode == OutputMode.STRUCTURED
                and find_result_event(stdout) is not None
            )
            if not has_result:
                message = failure_message(stdout, stderr, exit_code)
                classification = classify_failure(
                    runtime_id=self.spec.id,
                    stdout=stdout,
                    stderr=stderr,
                )
                logger.error(
                    "Execution failed: agent=%s exit=%s class=%s error=%s",
                    profile.id,
                    exit_code,
                    classification.failure_class.value,
                    message,
                )
                return ExecutionResult(
                    success=False,
                    error=message,
                    failure_class=classification.failure_class,
                    exit_code=exit_code,
                )
            # Some CLIs exit non-zero after emitting a complete result.
            logger.warning(
                "Non-zero exit with result event treated as success: agent=%s exit=%s",
                profile.id,
                exit_code,
            )

        result = self.spec.parse_result(stdout)
        result.exit_code = exit_code
        logger.info("Execution complete: agent=%s chars=%d", profile.id, len(result.text))
        return result


def failure_message(stdout: str, stderr: str, exit_code: int) -> str:
    """stderr, else the last stdout line, else the exit code; at most 500 chars."""

    lines = strip_ansi_simple(stdout).strip().split("\n")
    last_line = lines[-1].strip() if lines else ""
    return truncate(stderr.strip() or last_line or f"Exit code {exit_code}", MAX_ERROR_CHARS)


def terminate_process_group(process: subprocess.Popen[bytes], grace_seconds: float = 2.0) -> None:
    """SIGTERM the child's process group, escalating to SIGKILL."""

    try:
        os.killpg(process.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            return
        process.wait(timeout=grace_seconds)


def _write_input(process: subprocess.Popen[bytes], text: str | None) -> None:
    if process.stdin is None:
        return
    try:
        if text:
            process.stdin.write(text.encode("utf-8"))
        process.stdin.close()
    except (BrokenPipeError, OSError):
        logger.debug("Agent closed stdin before input was written: pid=%s", process.pid)


def _pump(
    stream: IO[bytes] | None,
    capture: _Capture,
    strategy: OutputStrategy | None,
    callbacks: OutputCallbacks | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    read = getattr(stream, "read1", stream.read)
    while True:
        data = read(_READ_CHUNK)
        if not data:
            break
        chunk = decoder.decode(data)
        if not chunk:
            continue
        capture.add(chunk)
        if strategy is not None and callbacks is not None:
            try:
                strategy.process_chunk(chunk, callbacks)
            except Exception:
                logger.exception("Output callback failed")
    tail = decoder.decode(b"", final=True)
    if tail:
        capture.add(tail)
        if strategy is not None and callbacks is not None:
            try:
                strategy.process_chunk(tail, callbacks)
            except Exception:
                logger.exception("Output callback failed")
    stream.close()


def _flush(strategy: OutputStrategy, callbacks: OutputCallbacks) -> None:
    try:
        strategy.flush(callbacks)
    except Exception:
        logger.exception("Output callback failed")
