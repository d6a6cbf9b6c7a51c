"""Channels stored as ``<base>/channels/<id>/meta.json`` plus a JSONL message log."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path

from team_conductor.events import EventBus, Events
from team_conductor.models import Channel, ChannelMessage, ChannelType
from team_conductor.stores.json_files import read_json_object, read_jsonl, write_json_file
from team_conductor.timers import DebouncedWriter, TimerFactory, thread_timer

logger = logging.getLogger(__name__)


class ChannelNotFoundError(LookupError):
    """Raised when sending to a channel that does not exist."""


class FileCommunicationHub:
    """Channel registry with buffered, debounced message appends."""

    def __init__(
        self,
        base_dir: Path,
        event_bus: EventBus,
        *,
        flush_delay_seconds: float = 0.5,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.channels_dir = base_dir / "channels"
        self._event_bus = event_bus
        self._lock = threading.RLock()
        self._channels: dict[str, Channel] | None = None
        self._pending: dict[str, list[ChannelMessage]] = {}
        self._writer = DebouncedWriter(
            flush_delay_seconds,
            timer_factory=timer_factory,
            name="messages",
        )

    def create_channel(self, name: str, type: ChannelType, participants: list[str]) -> Channel:  # noqa: A002
        channel = Channel(
            id=str(uuid.uuid4()),
            name=name,
            type=ChannelType(type),
            participants=list(participants),
        )
        write_json_file(self.channels_dir / channel.id / "meta.json", channel.to_dict())
        with self._lock:
            self._load_channels()[channel.id] = channel
        logger.info("Channel created: channel=%s name=%s", channel.id, name)
        return channel

    def get_channel(self, channel_id: str) -> Channel | None:
        with self._lock:
            return self._load_channels().get(channel_id)

    def find_channel(self, name: str) -> Channel | None:
        with self._lock:
            for channel in self._load_channels().values():
                if channel.name == name:
                    return channel
        return None

    def list_channels(self, agent_id: str | None = None) -> list[Channel]:
        with self._lock:
            channels = list(self._load_channels().values())
        if agent_id is None:
            return channels
        return [channel for channel in channels if agent_id in channel.participants]

    def send_message(
        self,
        channel_id: str,
        sender_id: str,
        content: str,
        reply_to: str | None = None,
    ) -> ChannelMessage:
        channel = self.get_channel(channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"Channel not found: {channel_id}")
        message = ChannelMessage(
            id=str(uuid.uuid4()),
            channel_id=channel_id,
            sender_id=sender_id,
            content=content,
            reply_to=reply_to,
        )
        with self._lock:
            self._pending.setdefault(channel_id, []).append(message)
        self._writer.schedule(self._flush)
        self._event_bus.emit(
            Events.MESSAGE_RECEIVED,
            {"message": message, "channel": channel},
        )
        return message

    def get_messages(
        self,
        channel_id: str,
        limit: int = 50,
        before: str | None = None,
    ) -> list[ChannelMessage]:
        """Return up to ``limit`` most recent messages, oldest first.

        ``before`` restricts the window to messages older than the given id.
        """

        messages = [
            ChannelMessage.from_dict(raw)
            for raw in read_jsonl(self.channels_dir / channel_id / "messages.jsonl")
        ]
        with self._lock:
            messages.extend(self._pending.get(channel_id, []))
        if before is not None:
            for index, message in enumerate(messages):
                if message.id == before:
                    messages = messages[:index]
                    break
        return messages[-limit:] if limit > 0 else []

    def stop(self) -> None:
        self._writer.flush_now(self._flush)

    def _load_channels(self) -> dict[str, Channel]:
        if self._channels is None:
            self._channels = {}
            if self.channels_dir.exists():
                for meta_path in sorted(self.channels_dir.glob("*/meta.json")):
                    raw = read_json_object(meta_path)
                    if raw is None:
                        continue
                    try:
                        channel = Channel.from_dict(raw)
                    except (KeyError, ValueError):
                        logger.warning("Skipping invalid channel metadata: %s", meta_path)
                        continue
                    self._channels[channel.id] = channel
        return self._channels

    def _flush(self) -> None:
        with self._lock:
            pending = self._pending
            self._pending = {}
        for channel_id, messages in pending.items():
            path = self.channels_dir / channel_id / "messages.jsonl"
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                for message in messages:
                    handle.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
