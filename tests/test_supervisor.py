"""
Tests for AgentSupervisor driving real shells on a PTY over an in-process
broker.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import pytest

from mqttshell.agent import (
    AgentSupervisor,
    Exited,
    RestartPolicy,
    Restarting,
    Running,
    SessionStartError,
    ShellProcess,
    Stopped,
)
from mqttshell.config import shell_environment
from mqttshell.protocol import (
    StatusEvent,
    StatusMessage,
    TerminalSize,
    Topics,
    decode_status,
    encode_resize,
)
from mqttshell.transport import MemoryBroker, MemoryTransport

TOPICS = Topics("test")

# Puts its terminal in raw mode, then echoes the hex of the first N input bytes.
RAW_HEX_ECHO = (
    "import os, sys, tty\n"
    "tty.setraw(0)\n"
    "os.write(1, b'ready')\n"
    "data = b''\n"
    "while len(data) < int(sys.argv[1]):\n"
    "    data += os.read(0, 1024)\n"
    "os.write(1, b'<' + data.hex().encode() + b'>')\n"
)

# Puts its terminal in raw mode and writes every byte value once.
RAW_ALL_BYTES = (
    "import os, tty\n"
    "tty.setraw(0)\n"
    "os.write(1, b'BEGIN' + bytes(range(256)) + b'END')\n"
)


def fast_policy() -> RestartPolicy:
    return RestartPolicy(initial_delay=0.05, max_delay=0.05)


def status_messages(broker: MemoryBroker) -> list[StatusMessage]:
    return [m for m in map(decode_status, broker.messages(TOPICS.status)) if m is not None]


def status_events(broker: MemoryBroker) -> list[StatusEvent]:
    return [m.event for m in status_messages(broker)]


def output(broker: MemoryBroker) -> bytes:
    return b"".join(broker.messages(TOPICS.output))


@asynccontextmanager
async def running(supervisor: AgentSupervisor) -> AsyncGenerator[asyncio.Task, None]:
    task = asyncio.create_task(supervisor.run())
    try:
        yield task
    finally:
        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=10.0)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_exit_is_followed_by_restart(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as transport:
            supervisor = AgentSupervisor(
                transport, TOPICS, [sh, "-c", "exit 3"], policy=fast_policy()
            )
            async with running(supervisor):
                await eventually(lambda: status_events(broker).count(StatusEvent.SHELL_STARTED) >= 2)

        messages = status_messages(broker)
        assert [m.event for m in messages[:5]] == [
            StatusEvent.AGENT_STARTED,
            StatusEvent.SHELL_STARTED,
            StatusEvent.SHELL_EXITED,
            StatusEvent.SHELL_RESTARTING,
            StatusEvent.SHELL_STARTED,
        ]
        assert messages[2].code == 3
        states = list(supervisor.transitions)
        assert isinstance(states[1], Running)
        assert states[2] == Exited(3)
        assert states[3] == Restarting(0.05)
        assert isinstance(states[4], Running)

    @pytest.mark.asyncio
    async def test_stop_announces_and_reaps(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as transport:
            supervisor = AgentSupervisor(transport, TOPICS, [sh], policy=fast_policy())
            async with running(supervisor):
                await eventually(lambda: isinstance(supervisor.state, Running))
                pid = supervisor.state.pid

        assert supervisor.state == Stopped()
        assert status_events(broker)[-1] == StatusEvent.AGENT_STOPPING
        assert StatusEvent.SHELL_EXITED not in status_events(broker)
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_start_failure_is_fatal(self, broker: MemoryBroker) -> None:
        async with MemoryTransport(broker) as transport:
            supervisor = AgentSupervisor(
                transport,
                TOPICS,
                ["/nonexistent/mqttshell-test-shell"],
                policy=fast_policy(),
                start_retries=2,
            )
            with pytest.raises(SessionStartError, match="Cannot start shell"):
                await asyncio.wait_for(supervisor.run(), timeout=10.0)

        assert StatusEvent.SHELL_STARTED not in status_events(broker)
        assert supervisor.state == Stopped()

    def test_empty_command_rejected(self, broker: MemoryBroker) -> None:
        with pytest.raises(ValueError):
            AgentSupervisor(MemoryTransport(broker), TOPICS, [])


class TestBytes:
    @pytest.mark.asyncio
    async def test_input_reaches_shell_unchanged(
        self, broker: MemoryBroker, eventually: Callable
    ) -> None:
        payload = bytes(range(256))
        async with MemoryTransport(broker) as agent, MemoryTransport(broker) as controller:
            supervisor = AgentSupervisor(
                agent,
                TOPICS,
                [sys.executable, "-c", RAW_HEX_ECHO, str(len(payload))],
                policy=fast_policy(),
            )
            async with running(supervisor):
                await eventually(lambda: b"ready" in output(broker))
                # Several publishes, so ordering across messages is covered too.
                for start in range(0, len(payload), 64):
                    await controller.publish(TOPICS.input, payload[start : start + 64])
                await eventually(lambda: b">" in output(broker))

        assert b"<" + payload.hex().encode() + b">" in output(broker)

    @pytest.mark.asyncio
    async def test_output_reaches_channel_unchanged(
        self, broker: MemoryBroker, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent:
            supervisor = AgentSupervisor(
                agent, TOPICS, [sys.executable, "-c", RAW_ALL_BYTES], policy=fast_policy()
            )
            async with running(supervisor):
                await eventually(lambda: b"END" in output(broker))

        assert b"BEGIN" + bytes(range(256)) + b"END" in output(broker)

    @pytest.mark.asyncio
    async def test_shell_environment_and_initial_size(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent:
            supervisor = AgentSupervisor(
                agent,
                TOPICS,
                [sh, "-c", 'echo "term=$TERM"; stty size; sleep 5'],
                initial_size=TerminalSize(30, 100),
                env=shell_environment(),
                policy=fast_policy(),
            )
            async with running(supervisor):
                await eventually(lambda: b"30 100" in output(broker))

        assert b"term=xterm-256color" in output(broker)


class TestResize:
    @pytest.mark.asyncio
    async def test_resize_applied_to_pty(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent, MemoryTransport(broker) as controller:
            supervisor = AgentSupervisor(agent, TOPICS, [sh], policy=fast_policy())
            async with running(supervisor):
                await eventually(lambda: isinstance(supervisor.state, Running))
                await controller.publish(TOPICS.resize, encode_resize(50, 132))
                await eventually(lambda: supervisor.size == TerminalSize(50, 132))
                await controller.publish(TOPICS.input, b"stty size\n")
                await eventually(lambda: b"50 132" in output(broker))

    @pytest.mark.asyncio
    async def test_malformed_resize_ignored(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent, MemoryTransport(broker) as controller:
            supervisor = AgentSupervisor(agent, TOPICS, [sh], policy=fast_policy())
            async with running(supervisor):
                await eventually(lambda: isinstance(supervisor.state, Running))
                pid = supervisor.state.pid
                for garbage in (b"", b"\x00\x18", b'{"rows": "x"}', b"null"):
                    await controller.publish(TOPICS.resize, garbage)
                await controller.publish(TOPICS.resize, encode_resize(40, 90))
                await eventually(lambda: supervisor.size == TerminalSize(40, 90))
                assert supervisor.state == Running(pid)

    @pytest.mark.asyncio
    async def test_size_survives_restart(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent, MemoryTransport(broker) as controller:
            supervisor = AgentSupervisor(
                agent, TOPICS, [sh, "-c", "read line; stty size; exit 1"], policy=fast_policy()
            )
            async with running(supervisor):
                await eventually(lambda: isinstance(supervisor.state, Running))
                await controller.publish(TOPICS.resize, encode_resize(45, 99))
                await eventually(lambda: supervisor.size == TerminalSize(45, 99))
                await controller.publish(TOPICS.input, b"\n")
                await eventually(lambda: status_events(broker).count(StatusEvent.SHELL_STARTED) >= 2)
                await controller.publish(TOPICS.input, b"\n")
                await eventually(lambda: output(broker).count(b"45 99") >= 2)


class TestTransportOutage:
    @pytest.mark.asyncio
    async def test_outage_does_not_touch_shell(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent, MemoryTransport(broker) as controller:
            supervisor = AgentSupervisor(agent, TOPICS, [sh], policy=fast_policy())
            async with running(supervisor):
                await eventually(lambda: isinstance(supervisor.state, Running))
                pid = supervisor.state.pid

                agent.set_connected(False)
                await asyncio.sleep(0.3)
                assert supervisor.state == Running(pid)

                agent.set_connected(True)
                await eventually(lambda: status_events(broker).count(StatusEvent.AGENT_STARTED) == 2)
                await controller.publish(TOPICS.input, b"echo back-$((40+2))\n")
                await eventually(lambda: b"back-42" in output(broker))
                assert supervisor.state == Running(pid)

        assert not any(isinstance(state, Exited) for state in supervisor.transitions)

    @pytest.mark.asyncio
    async def test_stop_after_exit_during_outage(
        self, broker: MemoryBroker, sh: str, eventually: Callable
    ) -> None:
        async with MemoryTransport(broker) as agent:
            supervisor = AgentSupervisor(
                agent, TOPICS, [sh, "-c", "sleep 0.5; exit 3"], policy=fast_policy()
            )
            task = asyncio.create_task(supervisor.run())
            await eventually(lambda: isinstance(supervisor.state, Running))
            agent.set_connected(False)
            await eventually(lambda: supervisor.state == Exited(3))

            supervisor.request_stop()
            await asyncio.wait_for(task, timeout=5.0)

        assert supervisor.state == Stopped()
        assert StatusEvent.SHELL_EXITED not in status_events(broker)
        assert not any(isinstance(state, Restarting) for state in supervisor.transitions)

    @pytest.mark.asyncio
    async def test_stop_before_first_announcement(
        self, broker: MemoryBroker, sh: str
    ) -> None:
        async with MemoryTransport(broker) as agent:
            agent.set_connected(False)
            supervisor = AgentSupervisor(agent, TOPICS, [sh], policy=fast_policy())
            task = asyncio.create_task(supervisor.run())
            await asyncio.sleep(0.2)
            assert not task.done()

            supervisor.request_stop()
            await asyncio.wait_for(task, timeout=5.0)

        assert supervisor.state == Stopped()
        assert status_events(broker) == []
        assert not any(isinstance(state, Running) for state in supervisor.transitions)


class TestShellInput:
    @pytest.mark.asyncio
    async def test_unwritten_input_survives_cancelled_write(self) -> None:
        # A raw-mode child that never reads lets the PTY input buffer fill up.
        script = "import os, time, tty\ntty.setraw(0)\nos.write(1, b'ready')\ntime.sleep(30)\n"
        shell = await ShellProcess.spawn([sys.executable, "-c", script], TerminalSize(24, 80))
        try:
            seen = b""
            while b"ready" not in seen:
                seen += await asyncio.wait_for(shell.read(), timeout=10.0)

            total = 1 << 20
            buffer = bytearray(b"x" * total)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(shell.write_from(buffer), timeout=0.5)

            assert 0 < len(buffer) < total
        finally:
            await shell.terminate()
            shell.close()
