"""Parsing of newline-delimited JSON agent event streams."""

from __future__ import annotations

import json
import logging
from typing import Any

from team_conductor.runtime.base import (
    ExecutionProgress,
    ExecutionResult,
    OutputCallback,
    ProgressCallback,
    ProgressKind,
    TokenUsage,
)
from team_conductor.runtime.text import strip_ansi_simple

logger = logging.getLogger(__name__)

TOOL_SUMMARY_ARG_CHARS = 60
TOOL_RENDER_ARG_CHARS = 200
TOOL_RESULT_RENDER_CHARS = 500


def _decode(line: str) -> dict[str, Any] | None:
    try:
        value = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _unwrap(event: dict[str, Any]) -> dict[str, Any]:
    inner = event.get("event")
    if event.get("type") == "stream_event" and isinstance(inner, dict):
        return inner
    return event


def _tool_argument(source: dict[str, Any]) -> str:
    tool_input = source.get("input")
    if not isinstance(tool_input, dict):
        return ""
    value = tool_input.get("command")
    if value is None:
        value = tool_input.get("file_path")
    return "" if value is None else str(value)


def _block_type(event: dict[str, Any]) -> str | None:
    block = event.get("content_block")
    return block.get("type") if isinstance(block, dict) else None


def _is_tool_event(event: dict[str, Any]) -> bool:
    return event.get("type") == "tool_use" or bool(event.get("tool_name"))


def parse_stream_event(line: str, on_progress: ProgressCallback) -> None:
    """Map one decoded event to a progress notification; other lines are ignored."""

    event = _decode(line)
    if event is None:
        return
    event = _unwrap(event)
    event_type = event.get("type")

    if _is_tool_event(event):
        tool_name = event.get("tool_name") or event.get("name") or "a tool"
        argument = _tool_argument(event)
        summary = (
            f"Using {tool_name}: {argument[:TOOL_SUMMARY_ARG_CHARS]}"
            if argument
            else f"Using {tool_name}"
        )
        on_progress(ExecutionProgress(ProgressKind.TOOL_USE, summary))
    elif event_type == "content_block_start" and _block_type(event) == "tool_use":
        name = event["content_block"].get("name") or "a tool"
        on_progress(ExecutionProgress(ProgressKind.TOOL_USE, f"Using {name}"))
    elif event_type == "thinking" or (
        event_type == "content_block_start" and _block_type(event) == "thinking"
    ):
        on_progress(ExecutionProgress(ProgressKind.THINKING, "Thinking..."))
    elif event_type == "message_start":
        on_progress(ExecutionProgress(ProgressKind.THINKING, "Processing request..."))
    elif event_type == "content_block_start" and _block_type(event) == "text":
        on_progress(ExecutionProgress(ProgressKind.TEXT, "Composing response..."))


def render_terminal_line(line: str, on_output: OutputCallback) -> None:  # noqa: C901, PLR0911, PLR0912
    """Render one event as a markdown fragment; non-JSON lines pass through raw."""

    decoded = _decode(line)
    if decoded is None:
        stripped = line.strip()
        if stripped:
            on_output(stripped + "\n")
        return
    event = _unwrap(decoded)
    event_type = event.get("type")

    if _is_tool_event(event):
        tool_name = event.get("tool_name") or event.get("name") or "tool"
        argument = _tool_argument(event)[:TOOL_RENDER_ARG_CHARS]
        on_output(f"\n`{tool_name}` {argument}\n")
        return
    if event_type == "content_block_start" and _block_type(event) == "tool_use":
        on_output(f"\n`{event['content_block'].get('name') or 'tool'}` ")
        return
    if event_type == "tool_result" or event.get("content_type") == "tool_result":
        output = event.get("output") or event.get("content") or ""
        if output:
            on_output(f"\n```\n{str(output)[:TOOL_RESULT_RENDER_CHARS]}\n```\n")
        return
    if event_type == "content_block_delta":
        delta = event.get("delta") or {}
        text = (delta.get("text") or delta.get("thinking")) if isinstance(delta, dict) else None
        if text:
            on_output(text)
            return
    if event_type == "thinking" or (
        event_type == "content_block_start" and _block_type(event) == "thinking"
    ):
        on_output("\n*thinking...*\n")
        return
    message = event.get("message")
    if event_type == "assistant" and isinstance(message, dict) and message.get("content"):
        for block in message["content"]:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                on_output(block["text"])
            elif block.get("type") == "tool_use":
                argument = _tool_argument(block)[:TOOL_RENDER_ARG_CHARS]
                on_output(f"\n`{block.get('name')}` {argument}\n")
        return
    if event_type == "result" and event.get("result"):
        on_output(f"\n{event['result']}\n")


def extract_token_usage(lines: list[str]) -> TokenUsage | None:
    """Aggregate usage; an explicit total on a result event wins outright."""

    input_tokens = 0
    output_tokens = 0
    found = False
    for line in lines:
        event = _decode(line)
        if event is None:
            continue
        usage = event.get("usage") if isinstance(event.get("usage"), dict) else None
        if event.get("type") == "result":
            if event.get("total_input_tokens") is not None:
                return TokenUsage(
                    input_tokens=int(event["total_input_tokens"]),
                    output_tokens=int(event.get("total_output_tokens") or 0),
                )
            if usage is not None:
                return TokenUsage(
                    input_tokens=int(usage.get("input_tokens") or 0),
                    output_tokens=int(usage.get("output_tokens") or 0),
                )
        if usage is not None and (
            usage.get("input_tokens") is not None or usage.get("output_tokens") is not None
        ):
            input_tokens += int(usage.get("input_tokens") or 0)
            output_tokens += int(usage.get("output_tokens") or 0)
            found = True
            continue
        message = event.get("message")
        message_usage = message.get("usage") if isinstance(message, dict) else None
        if isinstance(message_usage, dict) and message_usage.get("input_tokens") is not None:
            input_tokens += int(message_usage.get("input_tokens") or 0)
            output_tokens += int(message_usage.get("output_tokens") or 0)
            found = True
    return TokenUsage(input_tokens, output_tokens) if found else None


def find_result_event(stdout: str) -> dict[str, Any] | None:
    """Return the last ``result`` event in the stream."""

    for line in reversed(stdout.strip().split("\n")):
        event = _decode(line)
        if event is not None and event.get("type") == "result":
            return event
    return None


def parse_result(stdout: str) -> ExecutionResult:
    """Extract the final answer: last result event, whole-document JSON, or raw text."""

    usage = extract_token_usage(stdout.strip().split("\n"))
    result_event = find_result_event(stdout)
    if result_event is not None:
        return ExecutionResult(
            success=True,
            text=str(result_event.get("result") or ""),
            session_id=result_event.get("session_id"),
            usage=usage,
        )

    document = _decode(stdout)
    if document is not None:
        text = document.get("result") or document.get("text") or document.get("content")
        return ExecutionResult(
            success=True,
            text=str(text) if text is not None else stdout,
            session_id=document.get("session_id"),
            usage=usage,
        )

    return ExecutionResult(success=True, text=strip_ansi_simple(stdout).strip(), usage=usage)
