"""Terminal text helpers shared by runtimes and terminal sessions."""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable, Mapping

_ANSI_FULL = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI, including DEC private modes
    r"|\x1b[()][A-Za-z0-9]"  # charset selection
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
    r"|\r",
)
_ANSI_SIMPLE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

# Markers that make a nested agent CLI believe it runs inside another session.
NESTED_SESSION_ENV_VARS = frozenset({"CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_PARENT_CLI"})

_MIN_SECRET_LENGTH = 8


def strip_ansi(text: str) -> str:
    """Remove CSI, OSC, charset and two-byte escapes plus carriage returns."""

    return _ANSI_FULL.sub("", text)


def strip_ansi_simple(text: str) -> str:
    """Remove only ``ESC [ params letter`` sequences."""

    return _ANSI_SIMPLE.sub("", text)


def build_clean_env(
    extra: Mapping[str, str] | None = None,
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Copy the process environment without nested-session markers, then apply ``extra``."""

    source = os.environ if base is None else base
    env = {key: value for key, value in source.items() if key not in NESTED_SESSION_ENV_VARS}
    if extra:
        env.update(extra)
    return env


def create_secret_redactor(secrets: Iterable[str]) -> Callable[[str], str]:
    """Return a function masking every secret of at least 8 characters with ``***``."""

    usable = sorted({secret for secret in secrets if len(secret) >= _MIN_SECRET_LENGTH}, key=len)
    if not usable:
        return lambda text: text
    pattern = re.compile("|".join(re.escape(secret) for secret in reversed(usable)))
    return lambda text: pattern.sub("***", text)


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]
