"""MQTT transport built on paho-mqtt.

paho runs its network loop on a background thread and reconnects on its own.
Every callback hands its work to the asyncio loop with
``call_soon_threadsafe``, so subscription and connection state are only ever
touched from the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from .base import Transport, TransportError

logger = logging.getLogger(__name__)

CONNACK_TIMEOUT = 10.0
PUBLISH_RETRY_DELAY = 0.05

# CONNACK refusals that retrying will not fix.
_FATAL_CONNACK = ("Bad user name or password", "Not authorized")


class MqttTransport(Transport):
    """Transport over an MQTT broker.

    Example:
        transport = MqttTransport(BrokerConfig(host="localhost"))
        async with transport:
            sub = transport.subscribe("shell/out")
            await transport.publish("shell/in", b"ls\\r")
            async for payload in sub:
                ...
    """

    def __init__(self, config: BrokerConfig) -> None:
        super().__init__()
        self._config = config
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connack: asyncio.Future[None] | None = None
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if config.username:
            self._client.username_pw_set(config.username, config.password)
        if config.tls:
            self._client.tls_set()
        self._client.reconnect_delay_set(
            min_delay=config.reconnect_min_delay, max_delay=config.reconnect_max_delay
        )
        self._client.max_queued_messages_set(config.max_queued_messages)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def address(self) -> str:
        return f"{self._config.host}:{self._config.port}"

    async def connect(self) -> None:
        """Connect to the broker, retrying a bounded number of times.

        Raises:
            TransportError: If the broker cannot be reached or refuses the
                connection after ``connect_retries`` attempts.
        """
        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()
        config = self._config
        delay = config.reconnect_min_delay
        for attempt in range(1, config.connect_retries + 1):
            logger.info("Connecting to MQTT broker at %s (attempt %d)", self.address, attempt)
            try:
                await self._loop.run_in_executor(
                    None, self._client.connect, config.host, config.port, config.keepalive
                )
                break
            except OSError as e:
                if attempt == config.connect_retries:
                    raise TransportError(f"Cannot reach MQTT broker at {self.address}", e) from e
                logger.warning("Broker %s unreachable (%s), retrying in %ss", self.address, e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, config.reconnect_max_delay)

        self._client.loop_start()
        try:
            await asyncio.wait_for(self._connack, timeout=CONNACK_TIMEOUT)
        except asyncio.TimeoutError as e:
            await self.close()
            raise TransportError(f"No CONNACK from MQTT broker at {self.address}") from e
        except TransportError:
            await self.close()
            raise

    async def publish(self, topic: str, payload: bytes) -> None:
        while True:
            await self._wait_connected()
            info = self._client.publish(topic, payload, qos=self._config.qos)
            if info.rc == mqtt.MQTT_ERR_SUCCESS:
                return
            if info.rc == mqtt.MQTT_ERR_NO_CONN and self._config.qos > 0:
                # paho keeps QoS>0 messages and sends them after reconnecting.
                return
            if info.rc not in (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_QUEUE_SIZE):
                raise TransportError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
            logger.debug("Publish to %s deferred: %s", topic, mqtt.error_string(info.rc))
            await asyncio.sleep(PUBLISH_RETRY_DELAY)

    async def close(self) -> None:
        if self._closed:
            return
        self._shutdown()
        self._client.disconnect()
        if self._loop is not None:
            await self._loop.run_in_executor(None, self._client.loop_stop)

    def _subscribe_topic(self, topic: str) -> None:
        if self.is_connected:
            self._client.subscribe(topic, qos=self._config.qos)

    def _unsubscribe_topic(self, topic: str) -> None:
        if self.is_connected:
            self._client.unsubscribe(topic)

    # paho callbacks, called on the network thread

    def _call(self, fn: Any, *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(fn, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        self._call(self._handle_connack, reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._call(self._handle_disconnect, reason_code)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        self._call(self._dispatch, message.topic, message.payload)

    # Loop-thread handlers

    def _handle_connack(self, reason_code: Any) -> None:
        if reason_code.is_failure:
            if str(reason_code) in _FATAL_CONNACK:
                error = TransportError(f"MQTT broker at {self.address} refused connection: {reason_code}")
                if self._connack is not None and not self._connack.done():
                    self._connack.set_exception(error)
                self._fail(error)
                self._client.disconnect()
            else:
                logger.warning("MQTT broker at %s refused connection: %s", self.address, reason_code)
            return
        if self._closed:
            return
        # clean_session drops server-side subscriptions on every reconnect.
        for topic in self._subscriptions:
            self._client.subscribe(topic, qos=self._config.qos)
        self._set_connected(True)
        if self._connack is not None and not self._connack.done():
            self._connack.set_result(None)

    def _handle_disconnect(self, reason_code: Any) -> None:
        if not self._closed:
            logger.warning("Lost connection to MQTT broker at %s: %s", self.address, reason_code)
        self._set_connected(False)


__all__ = ["MqttTransport"]
