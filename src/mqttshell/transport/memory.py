"""In-process broker and transport.

Lets an Agent and a Controller talk inside one event loop, with the same
semantics as the MQTT transport: per-topic FIFO delivery, fan-out to every
subscriber, and publishes that wait out a (simulated) disconnect.
"""

from __future__ import annotations

from .base import Transport, TransportError


class MemoryBroker:
    def __init__(self) -> None:
        self._clients: list[MemoryTransport] = []
        self.published: list[tuple[str, bytes]] = []

    def attach(self, client: MemoryTransport) -> None:
        if client not in self._clients:
            self._clients.append(client)

    def detach(self, client: MemoryTransport) -> None:
        if client in self._clients:
            self._clients.remove(client)

    def route(self, topic: str, payload: bytes) -> None:
        self.published.append((topic, payload))
        for client in list(self._clients):
            # Like a clean MQTT session, an offline client misses messages.
            if client.is_connected:
                client._dispatch(topic, payload)

    def messages(self, topic: str) -> list[bytes]:
        """Payloads published on ``topic`` so far, in order."""
        return [payload for t, payload in self.published if t == topic]


class MemoryTransport(Transport):
    """Transport bound to a ``MemoryBroker``."""

    def __init__(self, broker: MemoryBroker) -> None:
        super().__init__()
        self._broker = broker

    async def connect(self) -> None:
        if self._closed:
            raise TransportError("Transport is closed")
        self._broker.attach(self)
        self._set_connected(True)

    async def publish(self, topic: str, payload: bytes) -> None:
        await self._wait_connected()
        self._broker.route(topic, bytes(payload))

    async def close(self) -> None:
        if self._closed:
            return
        self._broker.detach(self)
        self._shutdown()

    def set_connected(self, connected: bool) -> None:
        """Simulate the broker link going down or coming back."""
        self._set_connected(connected)

    def fail(self, error: TransportError) -> None:
        """Simulate an unrecoverable transport error."""
        self._broker.detach(self)
        self._fail(error)

    def _subscribe_topic(self, topic: str) -> None:
        pass

    def _unsubscribe_topic(self, topic: str) -> None:
        pass


__all__ = ["MemoryBroker", "MemoryTransport"]
