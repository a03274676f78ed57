#!/usr/bin/env python3
"""Example: Session over a Real MQTT Broker

Runs an Agent and a Controller against the broker named by MQTT_BROKER
(host[:port]) and checks that a command typed on the Controller side comes
back as output. Credentials are read from MQTT_USERNAME / MQTT_PASSWORD.

Prerequisites:
- A reachable MQTT broker, e.g. `mosquitto -p 1883`
- MQTT_BROKER set in the environment or in a .env file

Usage:
    MQTT_BROKER=localhost:1883 python examples/broker_session.py
"""

import asyncio
import io
import os
import pty
import sys

from dotenv import load_dotenv

from mqttshell.agent import AgentSupervisor, Running
from mqttshell.config import BrokerConfig, make_client_id, parse_broker_address, resolve_credentials
from mqttshell.controller import BridgeState, RawTerminal, TerminalBridge
from mqttshell.protocol import TerminalSize, Topics
from mqttshell.transport import MqttTransport

load_dotenv()


def broker_config(role: str, channel: str) -> BrokerConfig:
    host, port = parse_broker_address(os.environ["MQTT_BROKER"])
    username, password = resolve_credentials(None, None)
    return BrokerConfig(
        host=host,
        port=port,
        client_id=make_client_id(role, channel),
        username=username,
        password=password,
        connect_retries=1,
    )


async def wait_for(predicate, timeout: float = 15.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise TimeoutError("Session did not get there in time")
        await asyncio.sleep(0.05)


async def main() -> int:
    if not os.getenv("MQTT_BROKER"):
        print("MQTT_BROKER is not set; skipping the broker example.")
        return 0

    channel = f"mqttshell-example/{os.getpid()}"
    topics = Topics(channel)
    keyboard, terminal_fd = pty.openpty()
    screen = io.BytesIO()

    print(f"Connecting to {os.environ['MQTT_BROKER']} on channel {channel!r}...")
    async with MqttTransport(broker_config("agent", channel)) as agent_link, MqttTransport(
        broker_config("controller", channel)
    ) as controller_link:
        agent = AgentSupervisor(agent_link, topics, ["/bin/sh"])
        controller = TerminalBridge(
            controller_link,
            topics,
            RawTerminal(terminal_fd),
            output=screen,
            size_query=lambda: TerminalSize(24, 80),
            handle_signals=False,
        )
        agent_task = asyncio.create_task(agent.run())
        controller_task = asyncio.create_task(controller.run())
        try:
            await wait_for(lambda: isinstance(agent.state, Running))
            await wait_for(lambda: controller.state == BridgeState.ATTACHED)
            # Subscriptions reach the broker asynchronously.
            await asyncio.sleep(1.0)
            os.write(keyboard, b"echo over the broker $((6*7))\n")
            await wait_for(lambda: b"over the broker 42" in screen.getvalue())
        finally:
            controller.request_detach()
            agent.request_stop()
            await asyncio.gather(agent_task, controller_task, return_exceptions=True)

    os.close(keyboard)
    os.close(terminal_fd)
    print(screen.getvalue().decode("utf-8", "replace").replace("\r\n", "\n"))
    print("✅ Broker session example passed!")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
