"""Publish/subscribe transport contract used by both peers."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class TransportError(Exception):
    """Unrecoverable transport failure. Transient disconnects are not errors."""

    def __init__(self, message: str, cause: BaseException | None = None):
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Subscription(Generic[T]):
    """An async iterator over the items delivered for one topic.

    Items are yielded in delivery order. Iteration ends when the subscription
    or its transport is closed, and raises if the transport failed.
    """

    def __init__(self, topic: str, on_close: Callable[[Subscription[T]], None] | None = None):
        self.topic = topic
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._on_close = on_close
        self._ended = False
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._ended

    def deliver(self, item: T) -> None:
        if not self._ended:
            self._queue.put_nowait(item)

    def end(self, error: BaseException | None = None) -> None:
        """Stop iteration after the items already delivered."""
        if self._ended:
            return
        self._ended = True
        self._error = error
        self._queue.put_nowait(_END)

    def close(self) -> None:
        """Unsubscribe and end iteration."""
        if self._ended:
            return
        if self._on_close is not None:
            self._on_close(self)
        self.end()

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any later __anext__ call.
            self._queue.put_nowait(_END)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class Transport(abc.ABC):
    """Abstract base class for publish/subscribe transports.

    Subclasses implement the broker connection and call ``_dispatch`` for
    each received message and ``_set_connected`` on link changes, always from
    the event loop thread. Subscriptions are kept here and must survive
    reconnects.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription[bytes]]] = {}
        self._watchers: list[Subscription[ConnectionState]] = []
        # Also set on failure and shutdown, so that waiters wake up.
        self._connected = asyncio.Event()
        self._error: TransportError | None = None
        self._closed = False

    @abc.abstractmethod
    async def connect(self) -> None:
        """Connect to the broker, raising ``TransportError`` if it is unreachable."""
        ...

    @abc.abstractmethod
    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish a payload, waiting out disconnects instead of dropping it."""
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Disconnect and end every subscription."""
        ...

    @abc.abstractmethod
    def _subscribe_topic(self, topic: str) -> None: ...

    @abc.abstractmethod
    def _unsubscribe_topic(self, topic: str) -> None: ...

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set() and self._error is None and not self._closed

    def subscribe(self, topic: str) -> Subscription[bytes]:
        """Subscribe to a topic and return an async iterator of payloads."""
        if self._error is not None:
            raise self._error
        if self._closed:
            raise TransportError("Transport is closed")
        sub: Subscription[bytes] = Subscription(topic, on_close=self._remove_subscription)
        subs = self._subscriptions.setdefault(topic, [])
        subs.append(sub)
        if len(subs) == 1:
            self._subscribe_topic(topic)
        return sub

    def connection_events(self) -> Subscription[ConnectionState]:
        """Return an async iterator of connectivity changes."""
        watcher: Subscription[ConnectionState] = Subscription(
            "", on_close=self._watchers.remove
        )
        self._watchers.append(watcher)
        return watcher

    def _remove_subscription(self, sub: Subscription[bytes]) -> None:
        subs = self._subscriptions.get(sub.topic)
        if not subs or sub not in subs:
            return
        subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.topic]
            if not self._closed:
                self._unsubscribe_topic(sub.topic)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        for sub in list(self._subscriptions.get(topic, ())):
            sub.deliver(payload)

    def _set_connected(self, connected: bool) -> None:
        if self._error is not None or self._closed:
            return
        if connected == self._connected.is_set():
            return
        if connected:
            self._connected.set()
        else:
            self._connected.clear()
        state = ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
        logger.info("Broker %s", state.value)
        for watcher in list(self._watchers):
            watcher.deliver(state)

    def _fail(self, error: TransportError) -> None:
        """Mark the transport as failed and end every subscription with ``error``."""
        if self._error is not None:
            return
        logger.error("Transport failed: %s", error)
        self._error = error
        self._connected.set()
        self._end_all(error)

    def _end_all(self, error: BaseException | None = None) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in subs:
                sub.end(error)
        self._subscriptions.clear()
        for watcher in list(self._watchers):
            watcher.end(error)
        self._watchers.clear()

    def _shutdown(self) -> None:
        self._closed = True
        self._end_all()
        self._connected.set()

    async def _wait_connected(self) -> None:
        await self._connected.wait()
        if self._error is not None:
            raise self._error
        if self._closed:
            raise TransportError("Transport is closed")

    async def __aenter__(self) -> Transport:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
