"""Pseudo-terminal child processes and process-tree termination."""

from __future__ import annotations

import codecs
import contextlib
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_KILL_POLL_SECONDS = 0.05
KILL_GRACE_SECONDS = 2.0


class PtyProcess:
    """A child running on the slave side of a pseudo-terminal.

    The child is a session leader (``pty.fork`` calls ``setsid``), so its
    process group id equals its pid.
    """

    def __init__(self, pid: int, fd: int) -> None:
        self.pid = pid
        self.fd = fd
        self._write_lock = threading.Lock()
        self._closed = False
        self._reader: threading.Thread | None = None

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
    ) -> PtyProcess:
        pid, fd = pty.fork()
        if pid == 0:  # pragma: no cover - child
            try:
                _set_window_size(0, cols, rows)
                os.chdir(cwd)
                os.execvpe(argv[0], argv, env)
            except OSError as error:
                os.write(2, f"exec failed: {error}\n".encode())
            finally:
                os._exit(127)
        return cls(pid, fd)

    def start_reader(
        self,
        on_data: Callable[[str], None],
        on_exit: Callable[[int], None],
        *,
        name: str,
    ) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(on_data, on_exit),
            name=f"pty-{name}",
            daemon=True,
        )
        self._reader.start()

    def join(self, timeout: float | None = None) -> None:
        if self._reader is not None:
            self._reader.join(timeout)

    def write(self, data: str) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8")
        with self._write_lock:
            while payload:
                try:
                    written = os.write(self.fd, payload)
                except OSError as error:
                    logger.debug("PTY write failed: pid=%s error=%s", self.pid, error)
                    return
                payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        try:
            _set_window_size(self.fd, cols, rows)
        except OSError as error:
            logger.debug("PTY resize failed: pid=%s error=%s", self.pid, error)

    def _read_loop(self, on_data: Callable[[str], None], on_exit: Callable[[int], None]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                data = os.read(self.fd, _READ_CHUNK)
            except OSError as error:
                # Linux reports EIO once the slave side has no more writers.
                if error.errno != errno.EIO:
                    logger.warning("PTY read failed: pid=%s error=%s", self.pid, error)
                break
            if not data:
                break
            text = decoder.decode(data)
            if text:
                on_data(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            on_data(tail)
        exit_code = self._reap()
        self._close_fd()
        on_exit(exit_code)

    def _reap(self) -> int:
        try:
            _, status = os.waitpid(self.pid, 0)
        except ChildProcessError:
            return -1
        return os.waitstatus_to_exitcode(status)

    def _close_fd(self) -> None:
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            with contextlib.suppress(OSError):
                os.close(self.fd)


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def list_descendants(root_pid: int) -> list[int]:
    """Return every descendant pid of ``root_pid``, parents before children."""

    completed = subprocess.run(  # noqa: S603
        ["ps", "-A", "-o", "pid=,ppid="],  # noqa: S607
        capture_output=True,
        text=True,
        check=False,
    )
    children: dict[int, list[int]] = {}
    for line in completed.stdout.splitlines():
        parts = line.split()
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            continue
        pid, ppid = int(parts[0]), int(parts[1])
        children.setdefault(ppid, []).append(pid)

    ordered: list[int] = []
    frontier = [root_pid]
    while frontier:
        current = frontier.pop(0)
        for child in children.get(current, []):
            if child not in ordered:
                ordered.append(child)
                frontier.append(child)
    return ordered


def kill_process_tree(
    root_pid: int,
    sig: int = signal.SIGTERM,
    grace_seconds: float = KILL_GRACE_SECONDS,
) -> list[int]:
    """Signal ``root_pid``, its process group and every descendant found by ``ps``.

    Descendants are collected before any signal is sent so reparented
    grandchildren are not missed. Anything still running ``grace_seconds``
    after ``sig`` gets SIGKILL; the call returns once the tree is gone or the
    SIGKILL has been sent.
    """

    targets = [root_pid, *list_descendants(root_pid)]
    signalled = _signal_tree(root_pid, targets, sig)
    if sig == signal.SIGKILL or grace_seconds <= 0:
        return signalled
    deadline = time.monotonic() + grace_seconds
    survivors = running_pids(targets)
    while survivors and time.monotonic() < deadline:
        time.sleep(_KILL_POLL_SECONDS)
        survivors = running_pids(targets)
    if survivors:
        logger.warning("Process tree ignored %s, sending SIGKILL: pids=%s", signal.Signals(sig).name, survivors)
        _signal_tree(root_pid, survivors, signal.SIGKILL)
    return signalled


def running_pids(pids: list[int]) -> list[int]:
    """Return the pids in ``pids`` that exist and are not zombies."""

    completed = subprocess.run(  # noqa: S603
        ["ps", "-A", "-o", "pid=,stat="],  # noqa: S607
        capture_output=True,
        text=True,
        check=False,
    )
    states: dict[int, str] = {}
    for line in completed.stdout.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[0].isdigit():
            states[int(parts[0])] = parts[1]
    return [pid for pid in pids if pid in states and not states[pid].startswith("Z")]


def _signal_tree(root_pid: int, targets: list[int], sig: int) -> list[int]:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(root_pid, sig)
    signalled: list[int] = []
    for pid in reversed(targets):
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            continue
        except PermissionError:
            logger.warning("Cannot signal process: pid=%s", pid)
            continue
        signalled.append(pid)
    return signalled
