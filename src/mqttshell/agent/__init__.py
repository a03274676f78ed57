"""Agent side: a supervised shell on a PTY, bridged to the session channels."""

from __future__ import annotations

from ..protocol import TerminalSize
from .pty import ShellProcess, SpawnError
from .supervisor import (
    AgentSupervisor,
    Exited,
    RestartPolicy,
    Restarting,
    Running,
    SessionStartError,
    ShellState,
    Starting,
    Stopped,
)

__all__ = [
    # Supervisor
    "AgentSupervisor",
    "RestartPolicy",
    "SessionStartError",
    # Shell states
    "ShellState",
    "Starting",
    "Running",
    "Exited",
    "Restarting",
    "Stopped",
    # PTY
    "ShellProcess",
    "SpawnError",
    "TerminalSize",
]
