"""Agent session supervisor.

Keeps one shell attached to a PTY alive for as long as the Agent runs and
bridges it to the session channels:

    <prefix>/in      -> PTY master write
    PTY master read  -> <prefix>/out
    <prefix>/resize  -> PTY resize
    liveness changes -> <prefix>/status

When the shell exits it is restarted with the last known size after a
backoff delay. Broker outages never touch the shell: publishes wait for the
transport to reconnect and the PTY bridge stays up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass

from ..protocol import (
    ResizeDecodeError,
    StatusEvent,
    TerminalSize,
    Topics,
    decode_resize,
    encode_status,
)
from ..transport import ConnectionState, Subscription, Transport, TransportError
from .pty import ShellProcess, SpawnError

logger = logging.getLogger(__name__)

# Output still buffered in the PTY when the shell exits is forwarded for at
# most this long before the generation is torn down.
DRAIN_TIMEOUT = 0.5

# Exit code reported when a restart fails to spawn the shell at all.
SPAWN_FAILED_CODE = 127

# How long a stopping Agent waits for the broker to take ``agent_stopping``.
STOP_ANNOUNCE_TIMEOUT = 2.0


class SessionStartError(RuntimeError):
    """The shell could not be started when the Agent came up."""


# Shell liveness. Exactly one of these is current at any time.


@dataclass(frozen=True)
class Starting:
    attempt: int


@dataclass(frozen=True)
class Running:
    pid: int


@dataclass(frozen=True)
class Exited:
    code: int


@dataclass(frozen=True)
class Restarting:
    delay: float


@dataclass(frozen=True)
class Stopped:
    pass


ShellState = Starting | Running | Exited | Restarting | Stopped


@dataclass
class RestartPolicy:
    """Capped exponential backoff between shell restarts.

    A shell that stayed up for ``stable_after`` seconds resets the delay, so
    only a command that keeps dying quickly backs off.
    """

    initial_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    stable_after: float = 10.0

    def __post_init__(self) -> None:
        self._next = self.initial_delay

    def next_delay(self, uptime: float) -> float:
        if uptime >= self.stable_after:
            self._next = self.initial_delay
        delay = self._next
        self._next = min(self._next * self.factor, self.max_delay)
        return delay

    def reset(self) -> None:
        self._next = self.initial_delay


SpawnFn = Callable[..., Awaitable[ShellProcess]]


class AgentSupervisor:
    """Runs the shell and bridges it to the transport until stopped."""

    def __init__(
        self,
        transport: Transport,
        topics: Topics,
        command: Sequence[str],
        *,
        initial_size: TerminalSize = TerminalSize(24, 80),
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        policy: RestartPolicy | None = None,
        start_retries: int = 3,
        spawn: SpawnFn = ShellProcess.spawn,
    ) -> None:
        if not command:
            raise ValueError("Shell command must not be empty")
        self._transport = transport
        self._topics = topics
        self._command = list(command)
        self._size = initial_size
        self._env = env
        self._cwd = cwd
        self._policy = policy or RestartPolicy()
        self._start_retries = start_retries
        self._spawn = spawn
        self._state: ShellState = Stopped()
        self._shell: ShellProcess | None = None
        self._input_backlog = bytearray()
        self._stop = asyncio.Event()
        self.transitions: deque[ShellState] = deque(maxlen=64)

    @property
    def state(self) -> ShellState:
        return self._state

    @property
    def size(self) -> TerminalSize:
        """The last size requested by a Controller (or the initial size)."""
        return self._size

    def request_stop(self) -> None:
        """Ask ``run`` to stop the shell and return. Safe to call repeatedly."""
        self._stop.set()

    def _transition(self, state: ShellState) -> None:
        logger.debug("Shell state %s -> %s", self._state, state)
        self._state = state
        self.transitions.append(state)

    async def _publish_status(self, event: StatusEvent, code: int | None = None) -> bool:
        """Publish a status event unless a stop is requested first.

        Publishing waits out broker outages, so a pending publish is abandoned
        as soon as ``request_stop`` is called.

        Args:
            event: Status event to publish.
            code: Exit code carried by ``shell_exited``.

        Returns:
            True if the event was published, False if a stop cut it short.
        """
        publish = asyncio.ensure_future(
            self._transport.publish(self._topics.status, encode_status(event, code))
        )
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({publish, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (publish, stopper):
                task.cancel()
            await asyncio.gather(publish, stopper, return_exceptions=True)
        if publish in done:
            publish.result()
            return True
        logger.debug("Stop requested, dropping %s status", event.value)
        return False

    async def run(self) -> None:
        """Start the shell and supervise it until ``request_stop`` is called.

        Raises:
            SessionStartError: If the first shell cannot be started within
                ``start_retries`` attempts.
        """
        input_sub = self._transport.subscribe(self._topics.input)
        resize_sub = self._transport.subscribe(self._topics.resize)
        link_sub = self._transport.connection_events()
        background = [
            asyncio.create_task(self._apply_resizes(resize_sub), name="agent-resize"),
            asyncio.create_task(self._announce_on_reconnect(link_sub), name="agent-announce"),
        ]
        try:
            await self._publish_status(StatusEvent.AGENT_STARTED)
            # Returns None at once if a stop was requested meanwhile.
            shell = await self._start_first()
            while shell is not None:
                code, uptime = await self._run_generation(shell, input_sub)
                if code is None:
                    break
                shell = await self._restart(code, uptime)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            input_sub.close()
            resize_sub.close()
            link_sub.close()
            if self._shell is not None:
                await self._reap(self._shell)
            self._transition(Stopped())
        await self._announce_stop()

    async def _start_first(self) -> ShellProcess | None:
        last_error: SpawnError | None = None
        for attempt in range(1, self._start_retries + 1):
            if self._stop.is_set():
                return None
            self._transition(Starting(attempt))
            try:
                shell = await self._start_shell()
            except SpawnError as e:
                last_error = e
                logger.error("Cannot start shell (attempt %d/%d): %s", attempt, self._start_retries, e)
                if attempt < self._start_retries:
                    await self._sleep_unless_stopped(self._policy.next_delay(0.0))
            else:
                self._policy.reset()
                return shell
        raise SessionStartError(f"Cannot start shell {self._command!r}: {last_error}") from last_error

    async def _start_shell(self) -> ShellProcess:
        shell = await self._spawn(self._command, self._size, env=self._env, cwd=self._cwd)
        self._shell = shell
        self._transition(Running(shell.pid))
        logger.info("Shell %r started (pid %d, %dx%d)", self._command[0], shell.pid, self._size.columns, self._size.rows)
        await self._publish_status(StatusEvent.SHELL_STARTED)
        return shell

    async def _restart(self, code: int, uptime: float) -> ShellProcess | None:
        """Report the exit, back off, and start a replacement shell.

        Returns None if a stop was requested meanwhile.
        """
        while True:
            self._transition(Exited(code))
            if not await self._publish_status(StatusEvent.SHELL_EXITED, code):
                return None
            delay = self._policy.next_delay(uptime)
            self._transition(Restarting(delay))
            logger.warning("Shell exited with code %d, restarting in %.1fs", code, delay)
            if not await self._publish_status(StatusEvent.SHELL_RESTARTING):
                return None
            if await self._sleep_unless_stopped(delay):
                return None
            try:
                return await self._start_shell()
            except SpawnError as e:
                logger.error("Cannot restart shell: %s", e)
                code, uptime = SPAWN_FAILED_CODE, 0.0

    async def _run_generation(
        self, shell: ShellProcess, input_sub: Subscription[bytes]
    ) -> tuple[int | None, float]:
        """Bridge one shell until it exits or a stop is requested.

        Returns the exit code (None when stopped) and the shell's uptime.
        The shell is reaped before this returns.
        """
        started = time.monotonic()
        reader = asyncio.create_task(self._forward_output(shell), name="agent-pty-read")
        writer = asyncio.create_task(self._forward_input(shell, input_sub), name="agent-pty-write")
        waiter = asyncio.create_task(shell.wait(), name="agent-shell-wait")
        stopper = asyncio.create_task(self._stop.wait(), name="agent-stop")
        tasks = (reader, writer, waiter, stopper)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in (reader, writer):
                if task in done and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
            if stopper in done or writer in done:
                return None, time.monotonic() - started
            if waiter not in done:
                # PTY hung up first; the process is about to exit.
                done, _ = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
                if waiter not in done:
                    return None, time.monotonic() - started
            code = waiter.result()
            try:
                await asyncio.wait_for(reader, timeout=DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug("PTY still open after shell exit, dropping the reader")
            return code, time.monotonic() - started
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._reap(shell)

    async def _reap(self, shell: ShellProcess) -> None:
        """Terminate ``shell`` if it is still running and close its PTY.

        Args:
            shell: The shell of the generation that just ended.
        """
        if self._shell is shell:
            self._shell = None
        await shell.terminate()
        shell.close()

    async def _forward_output(self, shell: ShellProcess) -> None:
        """Publish PTY output to ``<prefix>/out`` until the PTY hangs up."""
        while True:
            data = await shell.read()
            if not data:
                return
            await self._transport.publish(self._topics.output, data)

    async def _forward_input(self, shell: ShellProcess, input_sub: Subscription[bytes]) -> None:
        """Write ``<prefix>/in`` payloads to the shell.

        Bytes are taken off ``_input_backlog`` only once the PTY accepted
        them, so input cut short by the end of a generation goes to the next
        shell.

        Args:
            shell: The shell of the current generation.
            input_sub: Subscription to the input channel.
        """
        await self._drain_input(shell)
        async for data in input_sub:
            self._input_backlog += data
            await self._drain_input(shell)

    async def _drain_input(self, shell: ShellProcess) -> None:
        if not self._input_backlog:
            return
        try:
            await shell.write_from(self._input_backlog)
        except OSError as e:
            # The shell is going away; its exit is picked up by the waiter.
            logger.debug("Holding %d input bytes for the next shell: %s", len(self._input_backlog), e)

    async def _apply_resizes(self, resize_sub: Subscription[bytes]) -> None:
        """Apply resize events to the live PTY and remember the size.

        Malformed payloads are logged and dropped.

        Args:
            resize_sub: Subscription to the resize channel.
        """
        async for payload in resize_sub:
            try:
                event = decode_resize(payload)
            except ResizeDecodeError as e:
                logger.warning("Ignoring resize: %s", e)
                continue
            self._size = TerminalSize(event.rows, event.columns)
            logger.info("Resize to %dx%d", event.columns, event.rows)
            if self._shell is not None:
                try:
                    self._shell.resize(self._size)
                except OSError as e:
                    logger.warning("Cannot resize PTY: %s", e)

    async def _announce_on_reconnect(self, link_sub: Subscription[ConnectionState]) -> None:
        """Publish ``agent_started`` after every broker reconnect.

        Args:
            link_sub: Connection state changes of the transport.
        """
        async for state in link_sub:
            if state == ConnectionState.CONNECTED:
                await self._publish_status(StatusEvent.AGENT_STARTED)

    async def _announce_stop(self) -> None:
        payload = encode_status(StatusEvent.AGENT_STOPPING)
        try:
            await asyncio.wait_for(
                self._transport.publish(self._topics.status, payload), timeout=STOP_ANNOUNCE_TIMEOUT
            )
        except (asyncio.TimeoutError, TransportError) as e:
            logger.warning("Could not publish %s: %s", StatusEvent.AGENT_STOPPING.value, e)

    async def _sleep_unless_stopped(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; return True early if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = [
    "AgentSupervisor",
    "Exited",
    "RestartPolicy",
    "Restarting",
    "Running",
    "SessionStartError",
    "ShellState",
    "Starting",
    "Stopped",
]
