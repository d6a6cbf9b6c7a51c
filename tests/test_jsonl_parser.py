from __future__ import annotations

import json

import allure

from team_conductor.runtime.base import ExecutionProgress, ProgressKind, TokenUsage
from team_conductor.runtime.jsonl_parser import (
    extract_token_usage,
    parse_result,
    parse_stream_event,
    render_terminal_line,
)
from team_conductor.runtime.output_strategy import (
    FIRST_CHUNK_SUMMARY,
    OutputCallbacks,
    StructuredOutputStrategy,
    ThrottledOutputStrategy,
)

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Event Stream Parsing"),
]


def _progress(event: dict) -> list[ExecutionProgress]:
    seen: list[ExecutionProgress] = []
    parse_stream_event(json.dumps(event), seen.append)
    return seen


def test_tool_use_summary_truncates_argument_to_sixty_chars() -> None:
    command = "x" * 200

    [progress] = _progress({"type": "tool_use", "name": "Bash", "input": {"command": command}})

    assert progress.type == ProgressKind.TOOL_USE
    assert progress.summary == f"Using Bash: {'x' * 60}"


def test_tool_use_summary_falls_back_to_file_path_and_bare_name() -> None:
    [with_path] = _progress({"tool_name": "Read", "input": {"file_path": "src/app.py"}})
    [bare] = _progress({"type": "tool_use", "name": "Glob", "input": {}})

    assert with_path.summary == "Using Read: src/app.py"
    assert bare.summary == "Using Glob"


def test_stream_wrapped_events_are_unwrapped() -> None:
    [progress] = _progress(
        {"type": "stream_event", "event": {"type": "content_block_start", "content_block": {"type": "thinking"}}},
    )

    assert progress == ExecutionProgress(ProgressKind.THINKING, "Thinking...")


def test_non_json_and_unknown_events_are_ignored() -> None:
    seen: list[ExecutionProgress] = []
    parse_stream_event("plain text line", seen.append)
    parse_stream_event(json.dumps({"type": "system", "subtype": "init"}), seen.append)

    assert seen == []


def test_render_terminal_line_formats_markdown_fragments() -> None:
    rendered: list[str] = []
    render_terminal_line(json.dumps({"type": "tool_use", "name": "Bash", "input": {"command": "ls"}}), rendered.append)
    render_terminal_line(json.dumps({"type": "tool_result", "output": "a.txt"}), rendered.append)
    render_terminal_line(
        json.dumps({"type": "content_block_delta", "delta": {"text": "Hello"}}),
        rendered.append,
    )
    render_terminal_line("raw line  ", rendered.append)

    assert rendered == ["\n`Bash` ls\n", "\n```\na.txt\n```\n", "Hello", "raw line\n"]


def test_last_result_event_wins() -> None:
    stdout = "\n".join(
        json.dumps(event)
        for event in (
            {"type": "result", "result": "draft", "session_id": "s1"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "more"}]}},
            {"type": "result", "result": "final", "session_id": "s2"},
        )
    )

    result = parse_result(stdout)

    assert result.success
    assert result.text == "final"
    assert result.session_id == "s2"


def test_parse_result_accepts_whole_document_and_raw_text() -> None:
    document = parse_result(json.dumps({"text": "from document", "session_id": "abc"}))
    raw = parse_result("\x1b[1mplain answer\x1b[0m\n")

    assert (document.text, document.session_id) == ("from document", "abc")
    assert raw.text == "plain answer"
    assert raw.session_id is None


def test_result_totals_override_streamed_usage() -> None:
    lines = [
        json.dumps({"type": "message_start", "message": {"usage": {"input_tokens": 5, "output_tokens": 1}}}),
        json.dumps({"type": "message_delta", "usage": {"output_tokens": 7}}),
        json.dumps({"type": "result", "total_input_tokens": 100, "total_output_tokens": 40}),
    ]

    assert extract_token_usage(lines[:2]) == TokenUsage(5, 8)
    assert extract_token_usage(lines) == TokenUsage(100, 40)
    assert extract_token_usage(["not json"]) is None


def test_structured_strategy_only_parses_complete_lines() -> None:
    progress: list[ExecutionProgress] = []
    output: list[str] = []
    callbacks = OutputCallbacks(on_progress=progress.append, on_output=output.append)
    strategy = StructuredOutputStrategy(parse_stream_event, render_terminal_line)
    line = json.dumps({"type": "message_start"})

    strategy.process_chunk(line[:10], callbacks)
    assert progress == []
    strategy.process_chunk(line[10:] + "\n" + '{"type": "thinking"', callbacks)
    assert [item.summary for item in progress] == ["Processing request..."]
    strategy.process_chunk("}", callbacks)
    strategy.flush(callbacks)

    assert [item.summary for item in progress] == ["Processing request...", "Thinking..."]
    assert output == ["\n*thinking...*\n"]


def test_throttled_strategy_reports_first_chunk_then_rate_limits() -> None:
    now = [100.0]
    progress: list[ExecutionProgress] = []
    output: list[str] = []
    callbacks = OutputCallbacks(on_progress=progress.append, on_output=output.append)
    strategy = ThrottledOutputStrategy(lambda text: ProgressKind.TOOL_USE, clock=lambda: now[0])

    strategy.process_chunk("\x1b[32mstarting\x1b[0m", callbacks)
    now[0] += 1
    strategy.process_chunk("quiet", callbacks)
    now[0] += 5
    strategy.process_chunk("Running tests " + "y" * 100, callbacks)

    assert output == ["starting", "quiet", "Running tests " + "y" * 100]
    assert progress[0] == ExecutionProgress(ProgressKind.THINKING, FIRST_CHUNK_SUMMARY)
    assert len(progress) == 2
    assert progress[1].type == ProgressKind.TOOL_USE
    assert len(progress[1].summary) == 80
