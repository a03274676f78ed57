"""Remote full-TTY shell sessions over an MQTT broker.

An Agent runs next to the shell and a Controller next to the user's
terminal. Both only ever connect out to the broker.
"""

from __future__ import annotations

from .agent import AgentSupervisor, RestartPolicy, SessionStartError
from .controller import DetachReason, RawTerminal, TerminalBridge, TerminalError
from .protocol import Channel, StatusEvent, StatusMessage, TerminalSize, Topics
from .transport import MemoryBroker, MemoryTransport, MqttTransport, Transport, TransportError

__version__ = "0.1.0"

__all__ = [
    # Agent
    "AgentSupervisor",
    "RestartPolicy",
    "SessionStartError",
    # Controller
    "TerminalBridge",
    "DetachReason",
    "RawTerminal",
    "TerminalError",
    # Protocol
    "Channel",
    "Topics",
    "TerminalSize",
    "StatusEvent",
    "StatusMessage",
    # Transport
    "Transport",
    "TransportError",
    "MqttTransport",
    "MemoryBroker",
    "MemoryTransport",
]
