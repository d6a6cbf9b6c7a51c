"""Per-agent delegation inboxes: ``<agent cwd>/inbox.jsonl`` lines become tasks."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from team_conductor.events import EventBus, Events
from team_conductor.models import Task, TaskPriority, TaskSource, TaskStatus
from team_conductor.ports import TaskStore
from team_conductor.runtime.text import truncate

logger = logging.getLogger(__name__)

INBOX_FILENAME = "inbox.jsonl"
MAX_DERIVED_TITLE_CHARS = 80
PLACEHOLDER_TITLES = frozenset({"", "task", "new task", "untitled", "todo", "...", "n/a", "none"})

_Signature = tuple[int, int] | None


def inbox_path(cwd: str | Path) -> Path:
    return Path(cwd) / INBOX_FILENAME


def append_to_inbox(cwd: str | Path, record: dict[str, Any]) -> None:
    """Append one request line while holding the inbox lock."""

    path = inbox_path(cwd)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
            handle.flush()
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def derive_title(title: Any, description: str) -> str:
    """Keep a real title; otherwise use the first non-empty description line."""

    candidate = str(title or "").strip()
    if candidate.lower() not in PLACEHOLDER_TITLES:
        return candidate
    for line in description.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return truncate(line, MAX_DERIVED_TITLE_CHARS)
    return "Untitled task"


@dataclass(slots=True)
class InboxRequest:
    title: str
    description: str
    priority: TaskPriority
    assigned_to: str
    sender: str
    tags: list[str]

    @classmethod
    def from_line(cls, line: str, owner_id: str) -> InboxRequest:
        raw = json.loads(line)
        if not isinstance(raw, dict):
            raise ValueError("Inbox line must be a JSON object.")
        description = str(raw.get("description") or "")
        tags = raw.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError("Inbox tags must be a list.")
        return cls(
            title=derive_title(raw.get("title"), description),
            description=description,
            priority=TaskPriority(raw.get("priority") or TaskPriority.NORMAL.value),
            assigned_to=str(raw.get("assignedTo") or raw.get("assigned_to") or owner_id),
            sender=str(raw.get("from") or owner_id),
            tags=[str(tag) for tag in tags],
        )


@dataclass(slots=True)
class _WatchedInbox:
    agent_id: str
    path: Path
    signature: _Signature
    due_at: float | None = None
    offset: int = 0
    inode: int | None = None


def _signature(path: Path) -> _Signature:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


class InboxWatcher:
    """Polls watched inbox files and coalesces bursts of writes.

    Consumed bytes are tracked as an offset under an advisory ``flock`` and the
    file is truncated only once everything in it has been read; the signature
    left by that truncation is recorded so the watcher does not react to it.
    """

    def __init__(  # noqa: PLR0913
        self,
        task_store: TaskStore,
        event_bus: EventBus,
        *,
        poll_interval_seconds: float = 0.5,
        debounce_seconds: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.task_store = task_store
        self.event_bus = event_bus
        self.poll_interval_seconds = poll_interval_seconds
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._inboxes: dict[str, _WatchedInbox] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def watch_agent(self, agent_id: str, cwd: str | Path) -> None:
        """Start watching; lines already waiting in the file are processed on the next poll."""

        with self._lock:
            if agent_id in self._inboxes:
                return
            path = inbox_path(cwd)
            self._inboxes[agent_id] = _WatchedInbox(
                agent_id=agent_id,
                path=path,
                signature=None,
            )
        logger.debug("Watching inbox: agent=%s path=%s", agent_id, path)

    def unwatch_agent(self, agent_id: str) -> None:
        with self._lock:
            self._inboxes.pop(agent_id, None)

    def watched_agents(self) -> list[str]:
        with self._lock:
            return list(self._inboxes)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="inbox-watcher", daemon=True)
        self._thread.start()

    def stop_all(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval_seconds + 1)
            self._thread = None
        with self._lock:
            self._inboxes.clear()

    def poll_once(self) -> list[Task]:
        """Check every inbox once; process those whose quiet period has elapsed."""

        now = self._clock()
        created: list[Task] = []
        with self._lock:
            inboxes = list(self._inboxes.values())
        for inbox in inboxes:
            current = _signature(inbox.path)
            if current != inbox.signature:
                inbox.signature = current
                inbox.due_at = now + self.debounce_seconds if current is not None else None
            if inbox.due_at is not None and now >= inbox.due_at:
                inbox.due_at = None
                created.extend(self.process_inbox(inbox.agent_id))
        return created

    def process_inbox(self, agent_id: str) -> list[Task]:
        with self._lock:
            inbox = self._inboxes.get(agent_id)
            if inbox is None:
                return []
            try:
                handle = inbox.path.open("r+b")
            except FileNotFoundError:
                inbox.offset = 0
                return []
            with handle:
                fcntl.flock(handle, fcntl.LOCK_EX)
                try:
                    lines = self._claim_lines(inbox, handle)
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)
            created: list[Task] = []
            for line in lines:
                task = self._create_task(agent_id, line)
                if task is not None:
                    created.append(task)
            inbox.signature = _signature(inbox.path)
            unread = inbox.signature is not None and inbox.signature[1] > inbox.offset
            inbox.due_at = self._clock() + self.debounce_seconds if lines and unread else None
        return created

    def _claim_lines(self, inbox: _WatchedInbox, handle: BinaryIO) -> list[str]:
        """Read complete lines past the offset; truncate only once nothing unread is left."""

        stat = os.fstat(handle.fileno())
        if stat.st_ino != inbox.inode or stat.st_size < inbox.offset:
            inbox.inode = stat.st_ino
            inbox.offset = 0
        handle.seek(inbox.offset)
        complete, newline, _ = handle.read().rpartition(b"\n")
        if not newline:
            return []
        inbox.offset += len(complete) + 1
        # a writer that appended after the read keeps its bytes past the offset
        if os.fstat(handle.fileno()).st_size == inbox.offset:
            handle.truncate(0)
            inbox.offset = 0
        text = complete.decode("utf-8", errors="replace")
        return [line for line in text.splitlines() if line.strip()]

    def _create_task(self, owner_id: str, line: str) -> Task | None:
        try:
            request = InboxRequest.from_line(line, owner_id)
        except (ValueError, TypeError) as error:
            logger.warning("Skipping malformed inbox line: agent=%s error=%s", owner_id, error)
            return None
        task = self.task_store.create(
            Task(
                id="",
                title=request.title,
                description=request.description,
                status=TaskStatus.ASSIGNED,
                priority=request.priority,
                source=TaskSource.AGENT,
                created_by=request.sender,
                assigned_to=request.assigned_to,
                tags=request.tags,
            ),
        )
        logger.info(
            "Inbox task: from=%s to=%s task=%s title=%s",
            request.sender,
            request.assigned_to,
            task.id,
            request.title,
        )
        self.event_bus.emit(Events.TASK_CREATED, {"task": task})
        self.event_bus.emit(
            Events.TASK_RESULT_READY,
            {
                "task_id": task.id,
                "agent_id": request.sender,
                "title": request.title,
                "text": f'Delegated task to {request.assigned_to}: "{request.title}"',
                "success": True,
            },
        )
        return task

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except OSError:
                logger.exception("Inbox poll failed")
            self._stop.wait(self.poll_interval_seconds)
