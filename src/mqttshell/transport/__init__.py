"""Publish/subscribe transports.

``MqttTransport`` talks to a real MQTT broker; ``MemoryTransport`` connects
peers inside one process.
"""

from __future__ import annotations

from .base import ConnectionState, Subscription, Transport, TransportError
from .memory import MemoryBroker, MemoryTransport
from .mqtt import MqttTransport

__all__ = [
    # Contract
    "Transport",
    "Subscription",
    "ConnectionState",
    "TransportError",
    # Implementations
    "MemoryBroker",
    "MemoryTransport",
    "MqttTransport",
]
