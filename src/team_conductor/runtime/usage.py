"""Token usage recovered from plain-text agent output."""

from __future__ import annotations

import re

from team_conductor.runtime.base import TokenUsage

_TOKENS_USED = re.compile(r"tokens used\s*[:\r\n ]+\s*([\d,]+)", re.IGNORECASE)
_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


def extract_textual_usage(stdout: str, stderr: str = "") -> TokenUsage | None:
    """Find ``input_tokens=``/``output_tokens=`` markers, else a ``tokens used N`` total.

    A bare total is attributed to output tokens since raw CLIs do not split it.
    """

    input_tokens: int | None = None
    output_tokens: int | None = None
    for text in (stderr, stdout):
        if input_tokens is None:
            input_tokens = _extract_int(_INPUT_TOKENS, text)
        if output_tokens is None:
            output_tokens = _extract_int(_OUTPUT_TOKENS, text)
    if input_tokens is not None or output_tokens is not None:
        return TokenUsage(input_tokens or 0, output_tokens or 0)

    for text in (stderr, stdout):
        total = _extract_int(_TOKENS_USED, text)
        if total is not None:
            return TokenUsage(0, total)
    return None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
