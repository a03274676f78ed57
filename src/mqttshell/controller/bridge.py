"""Controller side of a session: the local terminal bridged to the channels.

While attached, four loops run side by side:

1. keystrokes: local terminal -> ``<prefix>/in``
2. output: ``<prefix>/out`` -> local terminal
3. resize: local size changes -> ``<prefix>/resize``
4. status: ``<prefix>/status`` and broker connectivity -> inline notices

The local terminal is in raw mode only while attached, and every way out of
``run`` restores it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import BinaryIO

from ..keys import translate_input
from ..protocol import (
    StatusEvent,
    StatusMessage,
    TerminalSize,
    Topics,
    decode_status,
    encode_resize,
)
from ..transport import ConnectionState, Subscription, Transport, TransportError
from .terminal import RawTerminal, get_terminal_size

logger = logging.getLogger(__name__)

READ_SIZE = 4096

# Local size is re-checked this often even without SIGWINCH.
POLL_INTERVAL = 0.2

NOTICE_PREFIX = b"[mqttshell] "

# Keystroke batches held while the broker is unreachable. Beyond this, input
# is dropped with a notice.
KEYSTROKE_BACKLOG = 256

# Keystrokes typed before a detach get this long to reach the broker.
FLUSH_TIMEOUT = 0.5

_DETACH_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


class BridgeState(str, Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"


class DetachReason(str, Enum):
    """Why a bridge left the attached state."""

    DETACH_KEY = "detach_key"
    INPUT_CLOSED = "input_closed"
    SIGNAL = "signal"
    TRANSPORT_CLOSED = "transport_closed"
    TRANSPORT_ERROR = "transport_error"
    ERROR = "error"


class ResizeWatcher:
    """Coalesces local size-change notifications into distinct sizes.

    ``notify`` only marks the size as possibly changed, so a burst of
    notifications collapses into a single query of the size at the time the
    watcher wakes up. The size is also polled every ``poll_interval``
    seconds for terminals that never deliver SIGWINCH.
    """

    def __init__(self, query: Callable[[], TerminalSize], poll_interval: float = POLL_INTERVAL):
        self._query = query
        self._poll_interval = poll_interval
        self._changed = asyncio.Event()
        self._last: TerminalSize | None = None

    @property
    def last(self) -> TerminalSize | None:
        return self._last

    def query(self) -> TerminalSize:
        return self._query()

    def seed(self, size: TerminalSize) -> None:
        """Record ``size`` as already published."""
        self._last = size

    def notify(self) -> None:
        self._changed.set()

    def refresh(self) -> None:
        """Yield the current size on the next wake-up even if unchanged."""
        self._last = None
        self._changed.set()

    async def sizes(self) -> AsyncIterator[TerminalSize]:
        while True:
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._changed.clear()
            size = self._query()
            if size != self._last:
                self._last = size
                yield size


class TerminalBridge:
    """Bridges a local terminal to one session's channels.

    Args:
        transport: Connected transport shared with nothing else in the process.
        topics: Channel names of the session.
        terminal: The local terminal; keystrokes are read from its descriptor.
        output: Where shell output and notices are written. Defaults to
            ``sys.stdout.buffer``.
        size_query: Returns the current local size. Defaults to the size of
            the terminal.
        poll_interval: Seconds between size polls.
        handle_signals: Install SIGWINCH and termination signal handlers on
            the running loop for the duration of ``run``.

    Example:
        terminal = RawTerminal(sys.stdin.fileno())
        bridge = TerminalBridge(transport, Topics("shell"), terminal)
        reason = await bridge.run()
    """

    def __init__(
        self,
        transport: Transport,
        topics: Topics,
        terminal: RawTerminal,
        *,
        output: BinaryIO | None = None,
        size_query: Callable[[], TerminalSize] | None = None,
        poll_interval: float = POLL_INTERVAL,
        handle_signals: bool = True,
    ) -> None:
        self._transport = transport
        self._topics = topics
        self._terminal = terminal
        self._output = output if output is not None else sys.stdout.buffer
        self._watcher = ResizeWatcher(
            size_query or (lambda: get_terminal_size(terminal.fd)), poll_interval
        )
        self._handle_signals = handle_signals
        self._state = BridgeState.DETACHED
        self._subscriptions: list[Subscription] = []
        self._keystrokes: asyncio.Queue[bytes] = asyncio.Queue(maxsize=KEYSTROKE_BACKLOG)
        self._detach_requested = asyncio.Event()
        self._reason: DetachReason | None = None
        self.last_status: StatusMessage | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def terminal(self) -> RawTerminal:
        return self._terminal

    @property
    def watcher(self) -> ResizeWatcher:
        return self._watcher

    def _set_state(self, state: BridgeState) -> None:
        logger.debug("Bridge %s -> %s", self._state.value, state.value)
        self._state = state

    async def attach(self) -> None:
        """Subscribe, publish the local size and switch the terminal to raw mode.

        Raises:
            TerminalError: If the terminal cannot be put into raw mode.
            TransportError: If the transport has failed.
        """
        if self._state is not BridgeState.DETACHED:
            raise RuntimeError(f"Cannot attach a bridge that is {self._state.value}")
        self._set_state(BridgeState.ATTACHING)
        self._detach_requested.clear()
        self._reason = None
        try:
            size = self._watcher.query()
            self._subscriptions.append(self._transport.subscribe(self._topics.output))
            self._subscriptions.append(self._transport.subscribe(self._topics.status))
            self._subscriptions.append(self._transport.connection_events())
            await self._publish_size(size)
            self._watcher.seed(size)
            self._terminal.acquire()
        except BaseException:
            self._close_subscriptions()
            self._set_state(BridgeState.DETACHED)
            raise
        self._set_state(BridgeState.ATTACHED)

    def request_detach(self, reason: DetachReason = DetachReason.DETACH_KEY) -> None:
        """Ask ``run`` to detach. The first reason given wins."""
        if self._reason is None:
            self._reason = reason
        self._detach_requested.set()

    def detach(self) -> None:
        """Restore the terminal mode and unsubscribe. Safe to call repeatedly."""
        if self._state in (BridgeState.DETACHED, BridgeState.DETACHING):
            return
        self._set_state(BridgeState.DETACHING)
        try:
            self._terminal.release()
        finally:
            self._close_subscriptions()
            self._set_state(BridgeState.DETACHED)
            self.request_detach()

    async def run(self) -> DetachReason:
        """Attach, bridge until detached, and detach.

        Returns:
            Why the session ended.

        Raises:
            TerminalError: If the terminal cannot be put into raw mode.
            TransportError: If the transport fails while attached. The
                terminal is restored before this propagates.
        """
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        workers: list[asyncio.Task] = []
        attached = False
        error: BaseException | None = None
        try:
            # Handlers go in before raw mode so a termination signal can
            # never kill the process with the terminal still raw.
            self._install_signal_handlers(loop, installed)
            if not await self._attach_unless_detached():
                logger.info("Detached before attaching: %s", self._reason.value)
                return self._reason
            attached = True
            self._keystrokes = asyncio.Queue(maxsize=KEYSTROKE_BACKLOG)
            output_sub, status_sub, link_sub = self._subscriptions
            publisher = asyncio.create_task(self._publish_keystrokes(), name="controller-input")
            workers = [
                asyncio.create_task(self._forward_keystrokes(), name="controller-keystrokes"),
                publisher,
                asyncio.create_task(self._forward_output(output_sub), name="controller-output"),
                asyncio.create_task(self._publish_resizes(), name="controller-resize"),
                asyncio.create_task(self._show_status(status_sub), name="controller-status"),
                asyncio.create_task(self._show_connectivity(link_sub), name="controller-link"),
                asyncio.create_task(self._detach_requested.wait(), name="controller-detach"),
            ]
            done, _ = await asyncio.wait(workers, return_when=asyncio.FIRST_COMPLETED)
            for task in workers:
                if task in done and not task.cancelled() and task.exception() is not None:
                    error = task.exception()
                    break
            if error is not None:
                self.request_detach(
                    DetachReason.TRANSPORT_ERROR
                    if isinstance(error, TransportError)
                    else DetachReason.ERROR
                )
            else:
                self.request_detach(DetachReason.TRANSPORT_CLOSED)
                await self._flush_keystrokes(publisher)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            for signum in installed:
                loop.remove_signal_handler(signum)
            if attached:
                self.detach()
        if error is not None:
            raise error
        logger.info("Detached: %s", self._reason.value)
        return self._reason

    async def _attach_unless_detached(self) -> bool:
        """Attach, giving up if a detach is requested before attaching completes.

        The initial size publish waits out broker outages, so a signal that
        arrives meanwhile must still be able to end the session.

        Returns:
            True once attached, False if the attach was abandoned. Nothing is
            acquired in the latter case.
        """
        attaching = asyncio.ensure_future(self.attach())
        stopper = asyncio.ensure_future(self._detach_requested.wait())
        try:
            done, _ = await asyncio.wait({attaching, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not attaching.done():
                attaching.cancel()
            await asyncio.gather(attaching, stopper, return_exceptions=True)
        if attaching in done:
            attaching.result()
            return True
        return False

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop, installed: list[int]) -> None:
        """Install the bridge's signal handlers, recording each in ``installed``.

        Args:
            loop: The running loop.
            installed: Receives every signal whose handler was installed, so
                the caller can remove exactly those even if this raises.
        """
        if not self._handle_signals:
            return
        loop.add_signal_handler(signal.SIGWINCH, self._watcher.notify)
        installed.append(signal.SIGWINCH)
        for signum in _DETACH_SIGNALS:
            loop.add_signal_handler(signum, self.request_detach, DetachReason.SIGNAL)
            installed.append(signum)

    def _close_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            sub.close()

    def _write(self, data: bytes) -> None:
        self._output.write(data)
        self._output.flush()

    def _notice(self, text: str) -> None:
        self._write(b"\r\n" + NOTICE_PREFIX + text.encode("utf-8") + b"\r\n")

    async def _publish_size(self, size: TerminalSize) -> None:
        await self._transport.publish(self._topics.resize, encode_resize(size.rows, size.columns))

    async def _forward_keystrokes(self) -> None:
        """Read the local terminal and queue keystrokes for publishing.

        Reading never waits on the broker, so the detach key is seen even
        while publishes are held up by an outage.
        """
        loop = asyncio.get_running_loop()
        fd = self._terminal.fd
        ready = asyncio.Event()
        dropping = False
        loop.add_reader(fd, ready.set)
        try:
            while True:
                await ready.wait()
                ready.clear()
                try:
                    data = os.read(fd, READ_SIZE)
                except BlockingIOError:
                    continue
                except OSError as e:
                    logger.debug("Terminal read failed: %s", e)
                    data = b""
                if not data:
                    self.request_detach(DetachReason.INPUT_CLOSED)
                    return
                payload, detach = translate_input(data)
                if payload:
                    try:
                        self._keystrokes.put_nowait(payload)
                        dropping = False
                    except asyncio.QueueFull:
                        if not dropping:
                            self._notice("broker unreachable, dropping input")
                            dropping = True
                        logger.debug("Dropped %d input bytes", len(payload))
                if detach:
                    self.request_detach(DetachReason.DETACH_KEY)
                    return
        finally:
            loop.remove_reader(fd)

    async def _publish_keystrokes(self) -> None:
        while True:
            payload = await self._keystrokes.get()
            try:
                await self._transport.publish(self._topics.input, payload)
            finally:
                self._keystrokes.task_done()

    async def _flush_keystrokes(self, publisher: asyncio.Task) -> None:
        """Give keystrokes read before a detach up to ``FLUSH_TIMEOUT`` to go out.

        Args:
            publisher: The task draining the keystroke queue.
        """
        joined = asyncio.ensure_future(self._keystrokes.join())
        try:
            done, _ = await asyncio.wait(
                {joined, publisher}, timeout=FLUSH_TIMEOUT, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            joined.cancel()
            await asyncio.gather(joined, return_exceptions=True)
        if joined not in done:
            logger.debug("Detaching with %d keystroke batches unsent", self._keystrokes.qsize())

    async def _forward_output(self, output_sub: Subscription[bytes]) -> None:
        async for data in output_sub:
            self._write(data)

    async def _publish_resizes(self) -> None:
        async for size in self._watcher.sizes():
            logger.debug("Local terminal is now %dx%d", size.columns, size.rows)
            await self._publish_size(size)

    async def _show_status(self, status_sub: Subscription[bytes]) -> None:
        async for payload in status_sub:
            message = decode_status(payload)
            if message is None:
                logger.debug("Ignoring status payload %r", payload[:64])
                continue
            self.last_status = message
            self._notice(message.describe())
            if message.event == StatusEvent.AGENT_STARTED:
                # A restarted Agent starts from its default size.
                self._watcher.refresh()

    async def _show_connectivity(self, link_sub: Subscription[ConnectionState]) -> None:
        async for state in link_sub:
            if state == ConnectionState.DISCONNECTED:
                self._notice("broker connection lost, reconnecting")
            else:
                self._notice("broker connection restored")


__all__ = ["BridgeState", "DetachReason", "ResizeWatcher", "TerminalBridge"]
