"""Live tests against a real MQTT broker.

Run with: MQTT_TEST_BROKER=localhost:1883 pytest tests/live
"""

from __future__ import annotations

import asyncio
import io
import os
import pty
import shutil

import pytest

from mqttshell.agent import AgentSupervisor, Running
from mqttshell.controller import BridgeState, RawTerminal, TerminalBridge
from mqttshell.protocol import TerminalSize, Topics
from mqttshell.transport import MqttTransport

pytestmark = [
    pytest.mark.live,
    pytest.mark.skipif(
        not os.getenv("MQTT_TEST_BROKER"), reason="Requires MQTT_TEST_BROKER environment variable"
    ),
]


class TestMqttTransportLive:
    @pytest.mark.asyncio
    async def test_publish_subscribe(self, broker_config_factory, channel: str) -> None:
        topics = Topics(channel)
        async with MqttTransport(broker_config_factory("agent")) as a, MqttTransport(
            broker_config_factory("controller")
        ) as b:
            sub = b.subscribe(topics.output)
            # Give the broker time to register the subscription.
            await asyncio.sleep(0.5)
            payload = bytes(range(256))
            await a.publish(topics.output, payload)
            assert await asyncio.wait_for(sub.__anext__(), timeout=10.0) == payload


class TestSessionLive:
    @pytest.mark.asyncio
    async def test_echo_hi(self, broker_config_factory, channel: str, eventually) -> None:
        topics = Topics(channel)
        master, slave = pty.openpty()
        screen = io.BytesIO()
        try:
            async with MqttTransport(broker_config_factory("agent")) as agent_link, MqttTransport(
                broker_config_factory("controller")
            ) as controller_link:
                supervisor = AgentSupervisor(agent_link, topics, [shutil.which("sh") or "/bin/sh"])
                bridge = TerminalBridge(
                    controller_link,
                    topics,
                    RawTerminal(slave),
                    output=screen,
                    size_query=lambda: TerminalSize(24, 80),
                    handle_signals=False,
                )
                agent_task = asyncio.create_task(supervisor.run())
                controller_task = asyncio.create_task(bridge.run())
                try:
                    await eventually(lambda: isinstance(supervisor.state, Running))
                    await eventually(lambda: bridge.state == BridgeState.ATTACHED)
                    await asyncio.sleep(0.5)
                    os.write(master, b"echo hi\n")
                    await eventually(lambda: screen.getvalue().count(b"hi\r\n") >= 2, timeout=10.0)
                finally:
                    bridge.request_detach()
                    supervisor.request_stop()
                    await asyncio.wait_for(asyncio.gather(agent_task, controller_task), timeout=15.0)
        finally:
            os.close(master)
            os.close(slave)
