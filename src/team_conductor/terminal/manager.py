"""Interactive terminal sessions, at most one per agent."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from team_conductor.runtime.text import build_clean_env, truncate
from team_conductor.terminal.channel import (
    ChannelClosedError,
    ExitEvent,
    ExitHandler,
    OutputEvent,
    OutputHandler,
    SessionChannel,
)
from team_conductor.terminal.data_handler import PtyDataHandler
from team_conductor.terminal.process import PtyProcess, kill_process_tree
from team_conductor.timers import TimerFactory, thread_timer

logger = logging.getLogger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
TERMINAL_ENV = {"TERM": "xterm-256color", "COLORTERM": "truecolor"}
MAX_ERROR_CHARS = 500


@dataclass(slots=True)
class PtySpawnOptions:
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS


@dataclass(slots=True)
class PtySpawnResult:
    success: bool
    pid: int | None = None
    error: str | None = None


@dataclass(slots=True)
class PtySession:
    agent_id: str
    process: PtyProcess
    data_handler: PtyDataHandler


class SessionExistsError(RuntimeError):
    """Raised when registering a second session for the same agent."""


class SessionRegistry:
    """Live sessions keyed by agent id, owned by one manager."""

    def __init__(self) -> None:
        self._sessions: dict[str, PtySession] = {}
        self._lock = threading.Lock()

    def add(self, session: PtySession) -> None:
        with self._lock:
            if session.agent_id in self._sessions:
                raise SessionExistsError(f"PTY already exists for agent {session.agent_id}")
            self._sessions[session.agent_id] = session

    def get(self, agent_id: str) -> PtySession | None:
        with self._lock:
            return self._sessions.get(agent_id)

    def pop(self, agent_id: str, session: PtySession | None = None) -> PtySession | None:
        """Remove the agent's session; with ``session`` given, only if it is still current."""

        with self._lock:
            current = self._sessions.get(agent_id)
            if current is None or (session is not None and current is not session):
                return None
            return self._sessions.pop(agent_id)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._sessions

    def agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class TerminalManager(Protocol):
    """Contract shared by host and container terminal managers."""

    def spawn(
        self,
        agent_id: str,
        command: str,
        args: list[str],
        options: PtySpawnOptions | None = None,
    ) -> PtySpawnResult: ...

    def write(self, agent_id: str, data: str) -> None: ...

    def resize(self, agent_id: str, cols: int, rows: int) -> None: ...

    def kill(self, agent_id: str) -> None: ...

    def get_scrollback(self, agent_id: str) -> str: ...

    def is_running(self, agent_id: str) -> bool: ...

    def kill_all(self) -> None: ...

    def on_output(self, handler: OutputHandler) -> Callable[[], None]: ...

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]: ...

    def close(self) -> None: ...


@dataclass(slots=True)
class LaunchPlan:
    argv: list[str]
    cwd: str
    env: dict[str, str]


class PtyManager:
    """Runs agent CLIs on the host through ``$SHELL -c``.

    The shell is started without ``-l`` so login profiles cannot override the
    environment passed in.
    """

    def __init__(
        self,
        *,
        channel: SessionChannel | None = None,
        registry: SessionRegistry | None = None,
        shell: str | None = None,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.channel = channel or SessionChannel(name="pty")
        self.registry = registry or SessionRegistry()
        self.shell = shell or os.environ.get("SHELL") or "/bin/sh"
        self._timer_factory = timer_factory

    def on_output(self, handler: OutputHandler) -> Callable[[], None]:
        return self.channel.on_output(handler)

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        return self.channel.on_exit(handler)

    def spawn(
        self,
        agent_id: str,
        command: str,
        args: list[str],
        options: PtySpawnOptions | None = None,
    ) -> PtySpawnResult:
        options = options or PtySpawnOptions()
        if agent_id in self.registry:
            return PtySpawnResult(success=False, error="PTY already exists for this agent")
        try:
            plan = self._plan(agent_id, command, args, options)
            process = PtyProcess.spawn(
                plan.argv,
                cwd=plan.cwd,
                env=plan.env,
                cols=options.cols,
                rows=options.rows,
            )
        except (OSError, ValueError, LookupError) as error:
            message = truncate(str(error), MAX_ERROR_CHARS)
            logger.error("Failed to spawn PTY: agent=%s command=%s error=%s", agent_id, command, message)
            return PtySpawnResult(success=False, error=message)

        handler = PtyDataHandler(
            agent_id,
            process.write,
            self._publish_output,
            timer_factory=self._timer_factory,
        )
        session = PtySession(agent_id=agent_id, process=process, data_handler=handler)
        try:
            self.registry.add(session)
        except SessionExistsError as error:
            kill_process_tree(process.pid)
            return PtySpawnResult(success=False, error=str(error))
        process.start_reader(
            handler.on_data,
            lambda exit_code: self._handle_exit(session, exit_code),
            name=agent_id,
        )
        logger.info("Spawned PTY: agent=%s pid=%s command=%s", agent_id, process.pid, command)
        return PtySpawnResult(success=True, pid=process.pid)

    def write(self, agent_id: str, data: str) -> None:
        session = self.registry.get(agent_id)
        if session is not None:
            session.process.write(data)

    def resize(self, agent_id: str, cols: int, rows: int) -> None:
        session = self.registry.get(agent_id)
        if session is not None:
            session.process.resize(cols, rows)

    def kill(self, agent_id: str) -> None:
        session = self.registry.get(agent_id)
        if session is None:
            return
        # stays registered until the tree is gone so a respawn cannot overlap it
        self._terminate(session)
        self.registry.pop(agent_id, session)

    def get_scrollback(self, agent_id: str) -> str:
        session = self.registry.get(agent_id)
        return session.data_handler.scrollback() if session is not None else ""

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self.registry

    def kill_all(self) -> None:
        for agent_id in self.registry.agent_ids():
            self.kill(agent_id)

    def close(self) -> None:
        self.kill_all()
        self.channel.close()

    def _plan(
        self,
        agent_id: str,
        command: str,
        args: list[str],
        options: PtySpawnOptions,
    ) -> LaunchPlan:
        shell = shutil.which(self.shell) or (self.shell if os.access(self.shell, os.X_OK) else None)
        if shell is None:
            raise FileNotFoundError(f"Shell not found: {self.shell}")
        cwd = options.cwd or str(Path.home())
        if not Path(cwd).is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {cwd}")
        agent_command = " ".join(shlex.quote(part) for part in [command, *args])
        return LaunchPlan(
            argv=[shell, "-c", agent_command],
            cwd=cwd,
            env=build_clean_env({**options.env, **TERMINAL_ENV}),
        )

    def _terminate(self, session: PtySession) -> None:
        signalled = kill_process_tree(session.process.pid)
        logger.info("Killed PTY tree: agent=%s pids=%s", session.agent_id, signalled)

    def _publish_output(self, agent_id: str, data: str) -> None:
        self._publish(OutputEvent(agent_id, data))

    def _publish(self, event: OutputEvent | ExitEvent) -> None:
        try:
            self.channel.publish(event)
        except ChannelClosedError:
            logger.debug("Dropping session event after close: agent=%s", event.agent_id)

    def _handle_exit(self, session: PtySession, exit_code: int) -> None:
        session.data_handler.flush()
        last_output = session.data_handler.last_output()
        self.registry.pop(session.agent_id, session)
        logger.info("PTY exited: agent=%s exit=%s", session.agent_id, exit_code)
        self._publish(ExitEvent(session.agent_id, exit_code, last_output))
