"""Fixtures for tests against a real MQTT broker.

These tests need a reachable broker set via environment variables:
- MQTT_TEST_BROKER: broker address as host[:port]
- MQTT_USERNAME / MQTT_PASSWORD: optional credentials
"""

import os
import uuid

import pytest

from mqttshell.config import BrokerConfig, make_client_id, parse_broker_address, resolve_credentials


@pytest.fixture
def channel() -> str:
    """A channel prefix no other test run uses."""
    return f"mqttshell-test/{uuid.uuid4().hex[:12]}"


@pytest.fixture
def broker_config_factory(channel: str):
    """Build broker settings for one peer of a live session."""

    def factory(role: str) -> BrokerConfig:
        address = os.getenv("MQTT_TEST_BROKER")
        if not address:
            pytest.skip("MQTT_TEST_BROKER environment variable not set")
        host, port = parse_broker_address(address)
        username, password = resolve_credentials(None, None)
        return BrokerConfig(
            host=host,
            port=port,
            client_id=make_client_id(role, channel),
            username=username,
            password=password,
            connect_retries=1,
        )

    return factory
