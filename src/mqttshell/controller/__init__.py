"""Controller side: the local terminal bridged to a remote shell session."""

from __future__ import annotations

from .bridge import BridgeState, DetachReason, ResizeWatcher, TerminalBridge
from .terminal import RawTerminal, TerminalError, get_terminal_size

__all__ = [
    # Bridge
    "TerminalBridge",
    "BridgeState",
    "DetachReason",
    "ResizeWatcher",
    # Terminal
    "RawTerminal",
    "TerminalError",
    "get_terminal_size",
]
