"""Interactive terminal sessions for agents."""

from team_conductor.terminal.channel import ExitEvent, OutputEvent, SessionChannel
from team_conductor.terminal.data_handler import PtyDataHandler
from team_conductor.terminal.manager import (
    PtyManager,
    PtySpawnOptions,
    PtySpawnResult,
    SessionRegistry,
    TerminalManager,
)

__all__ = [
    "ExitEvent",
    "OutputEvent",
    "PtyDataHandler",
    "PtyManager",
    "PtySpawnOptions",
    "PtySpawnResult",
    "SessionChannel",
    "SessionRegistry",
    "TerminalManager",
]
