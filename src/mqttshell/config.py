"""Broker and shell configuration shared by both peers."""

from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass

DEFAULT_BROKER = "localhost:1883"
DEFAULT_PORT = 1883
DEFAULT_CHANNEL = "shell"
DEFAULT_KEEPALIVE = 5
DEFAULT_QOS = 1
DEFAULT_ROWS = 24
DEFAULT_COLS = 80

SHELL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
}


@dataclass
class BrokerConfig:
    """Connection settings for the MQTT broker."""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    client_id: str = ""
    keepalive: int = DEFAULT_KEEPALIVE
    username: str | None = None
    password: str | None = None
    tls: bool = False
    qos: int = DEFAULT_QOS
    connect_retries: int = 5
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    max_queued_messages: int = 1000

    def __post_init__(self) -> None:
        if self.qos not in (0, 1, 2):
            raise ValueError(f"QoS must be 0, 1 or 2, got {self.qos}")


def parse_broker_address(value: str) -> tuple[str, int]:
    """Split ``host[:port]`` into its parts.

    Bracketed IPv6 literals (``[::1]:1883``) are accepted.

    Raises:
        ValueError: If the host is empty or the port is not a valid TCP port.
    """
    value = value.strip()
    port_text: str | None = None
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep:
            raise ValueError(f"Unterminated IPv6 literal in broker address {value!r}")
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"Invalid broker address {value!r}")
            port_text = rest[1:]
    elif value.count(":") == 1:
        host, port_text = value.split(":")
    else:
        host = value

    if not host:
        raise ValueError(f"Missing host in broker address {value!r}")
    if port_text is None:
        return host, DEFAULT_PORT
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ValueError(f"Invalid port in broker address {value!r}")
    return host, int(port_text)


def resolve_credentials(
    username: str | None, password: str | None
) -> tuple[str | None, str | None]:
    """Resolve broker credentials from arguments or the environment."""
    return (
        username or os.getenv("MQTT_USERNAME") or None,
        password or os.getenv("MQTT_PASSWORD") or None,
    )


def make_client_id(role: str, prefix: str) -> str:
    """Build a broker client id unique to this process."""
    return f"mqttshell-{role}-{prefix.replace('/', '-')}-{uuid.uuid4().hex[:8]}"


def default_shell_command() -> list[str]:
    """Interactive bash if available, else POSIX sh."""
    bash = shutil.which("bash")
    if bash:
        return [bash, "-i"]
    return ["/bin/sh", "-i"]


def shell_environment(base: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for the spawned shell: the Agent's own plus terminal settings."""
    env = dict(os.environ if base is None else base)
    env.update(SHELL_ENV)
    return env


__all__ = [
    "BrokerConfig",
    "DEFAULT_BROKER",
    "DEFAULT_CHANNEL",
    "DEFAULT_COLS",
    "DEFAULT_PORT",
    "DEFAULT_ROWS",
    "SHELL_ENV",
    "default_shell_command",
    "make_client_id",
    "parse_broker_address",
    "resolve_credentials",
    "shell_environment",
]
