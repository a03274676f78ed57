#!/usr/bin/env python3
"""Example: Agent and Controller in One Process

This example runs a complete session without a broker: an Agent serving
/bin/sh and a Controller whose "keyboard" and "screen" are a pseudo-terminal
and a buffer, connected through the in-process MemoryBroker.

Usage:
    python examples/local_session.py
"""

import asyncio
import io
import os
import pty
import sys

from mqttshell.agent import AgentSupervisor, Running
from mqttshell.controller import BridgeState, RawTerminal, TerminalBridge
from mqttshell.protocol import TerminalSize, Topics
from mqttshell.transport import MemoryBroker, MemoryTransport


async def wait_for(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise TimeoutError("Session did not get there in time")
        await asyncio.sleep(0.02)


async def main() -> int:
    broker = MemoryBroker()
    topics = Topics("shell")
    keyboard, terminal_fd = pty.openpty()
    screen = io.BytesIO()

    async with MemoryTransport(broker) as agent_link, MemoryTransport(broker) as controller_link:
        agent = AgentSupervisor(agent_link, topics, ["/bin/sh"])
        controller = TerminalBridge(
            controller_link,
            topics,
            RawTerminal(terminal_fd),
            output=screen,
            size_query=lambda: TerminalSize(40, 120),
            handle_signals=False,
        )
        agent_task = asyncio.create_task(agent.run())
        controller_task = asyncio.create_task(controller.run())

        try:
            await wait_for(lambda: isinstance(agent.state, Running))
            await wait_for(lambda: controller.state == BridgeState.ATTACHED)
            print(f"Shell running as pid {agent.state.pid}")

            print("Typing: stty size; echo hello from $((6*7)) mqttshell")
            os.write(keyboard, b"stty size; echo hello from $((6*7)) mqttshell\n")
            await wait_for(lambda: b"hello from 42 mqttshell" in screen.getvalue())
            await wait_for(lambda: b"40 120" in screen.getvalue())

            print("Pressing Ctrl+Q to detach")
            os.write(keyboard, b"\x11")
            reason = await asyncio.wait_for(controller_task, timeout=5.0)
            print(f"Controller detached ({reason.value}); shell still {agent.state}")
        finally:
            controller.request_detach()
            agent.request_stop()
            await asyncio.gather(agent_task, controller_task, return_exceptions=True)

    os.close(keyboard)
    os.close(terminal_fd)

    print()
    print("Screen contents:")
    print(screen.getvalue().decode("utf-8", "replace").replace("\r\n", "\n"))
    print("✅ Local session example passed!")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
