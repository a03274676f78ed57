"""Command line entry points for the Agent and the Controller."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys
from collections.abc import Callable, Sequence

from .agent import AgentSupervisor, SessionStartError
from .config import (
    DEFAULT_BROKER,
    DEFAULT_CHANNEL,
    DEFAULT_COLS,
    DEFAULT_QOS,
    DEFAULT_ROWS,
    BrokerConfig,
    default_shell_command,
    make_client_id,
    parse_broker_address,
    resolve_credentials,
    shell_environment,
)
from .controller import RawTerminal, TerminalBridge, TerminalError
from .protocol import TerminalSize, Topics
from .transport import MqttTransport, TransportError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def configure_logging(
    verbosity: int, *, default: int = logging.WARNING, raw_terminal: bool = False
) -> logging.Handler:
    """Send ``mqttshell`` log records to stderr.

    Args:
        verbosity: Number of ``-v`` flags. 1 selects INFO, 2 or more DEBUG.
        default: Level used without ``-v``.
        raw_terminal: End lines with CRLF, since a terminal in raw mode does
            not translate LF.

    Returns:
        The installed handler.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = default
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if raw_terminal:
        handler.terminator = "\r\n"
    package_logger = logging.getLogger("mqttshell")
    package_logger.setLevel(level)
    package_logger.addHandler(handler)
    return handler


def _base_parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        "-c",
        "--channel",
        default=DEFAULT_CHANNEL,
        help=f"channel prefix shared by Agent and Controller (default: {DEFAULT_CHANNEL})",
    )
    parser.add_argument(
        "-b",
        "--broker",
        default=os.getenv("MQTT_BROKER", DEFAULT_BROKER),
        help=f"broker address as host[:port] (default: $MQTT_BROKER or {DEFAULT_BROKER})",
    )
    parser.add_argument("--username", help="broker user name (default: $MQTT_USERNAME)")
    parser.add_argument("--password", help="broker password (default: $MQTT_PASSWORD)")
    parser.add_argument("--tls", action="store_true", help="connect to the broker over TLS")
    parser.add_argument(
        "--qos",
        type=int,
        choices=(0, 1, 2),
        default=DEFAULT_QOS,
        help=f"MQTT quality of service for all channels (default: {DEFAULT_QOS})",
    )
    parser.add_argument("--client-id", help="MQTT client id (default: generated)")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="log more (-v info, -vv debug)"
    )
    return parser


def build_agent_parser() -> argparse.ArgumentParser:
    parser = _base_parser("mqttshell-agent", "Serve an interactive shell over an MQTT broker.")
    parser.add_argument(
        "--shell",
        help="shell command line to run (default: 'bash -i', or '/bin/sh -i' without bash)",
    )
    parser.add_argument(
        "--rows", type=int, default=DEFAULT_ROWS, help="PTY rows until a Controller attaches"
    )
    parser.add_argument(
        "--cols", type=int, default=DEFAULT_COLS, help="PTY columns until a Controller attaches"
    )
    return parser


def build_controller_parser() -> argparse.ArgumentParser:
    return _base_parser(
        "mqttshell-controller", "Attach this terminal to a shell served by mqttshell-agent."
    )


def _session_settings(
    parser: argparse.ArgumentParser, args: argparse.Namespace, role: str
) -> tuple[Topics, BrokerConfig]:
    try:
        topics = Topics(args.channel)
        host, port = parse_broker_address(args.broker)
    except ValueError as e:
        parser.error(str(e))
    username, password = resolve_credentials(args.username, args.password)
    config = BrokerConfig(
        host=host,
        port=port,
        client_id=args.client_id or make_client_id(role, topics.prefix),
        username=username,
        password=password,
        tls=args.tls,
        qos=args.qos,
    )
    return topics, config


# Agent


def agent_main(argv: Sequence[str] | None = None) -> int:
    """Run the Agent until it is signalled to stop.

    Returns:
        Exit code (0 after a clean stop, 1 if the session could not start).
    """
    parser = build_agent_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, default=logging.INFO)
    topics, config = _session_settings(parser, args, "agent")
    command = shlex.split(args.shell) if args.shell is not None else default_shell_command()
    if not command:
        parser.error("--shell must not be empty")
    if not (0 < args.rows <= 0xFFFF and 0 < args.cols <= 0xFFFF):
        parser.error("--rows and --cols must be between 1 and 65535")
    size = TerminalSize(args.rows, args.cols)
    return asyncio.run(_run_agent(config, topics, command, size))


async def _run_agent(
    config: BrokerConfig, topics: Topics, command: list[str], size: TerminalSize
) -> int:
    transport = MqttTransport(config)
    try:
        await transport.connect()
    except TransportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    supervisor = AgentSupervisor(
        transport, topics, command, initial_size=size, env=shell_environment()
    )
    loop = asyncio.get_running_loop()
    for signum in _STOP_SIGNALS:
        loop.add_signal_handler(signum, supervisor.request_stop)
    logger.info("Serving %r on channel %r via %s:%d", command, topics.prefix, config.host, config.port)
    try:
        await supervisor.run()
    except (SessionStartError, TransportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        for signum in _STOP_SIGNALS:
            loop.remove_signal_handler(signum)
        await transport.close()
    return 0


# Controller


def controller_main(argv: Sequence[str] | None = None) -> int:
    """Attach the calling terminal to a session until detached.

    Returns:
        Exit code (0 after a detach, 1 if the session could not start or the
        broker connection failed).
    """
    parser = build_controller_parser()
    args = parser.parse_args(argv)
    # Log lines may be written while the terminal is raw.
    configure_logging(args.verbose, raw_terminal=True)
    topics, config = _session_settings(parser, args, "controller")
    try:
        fd = sys.stdin.fileno()
    except (OSError, ValueError):
        fd = -1
    if fd < 0 or not os.isatty(fd):
        print("Error: standard input is not a terminal", file=sys.stderr)
        return 1
    return asyncio.run(_run_controller(config, topics, fd))


async def _run_controller(config: BrokerConfig, topics: Topics, fd: int) -> int:
    transport = MqttTransport(config)
    try:
        await transport.connect()
    except TransportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    bridge = TerminalBridge(transport, topics, RawTerminal(fd))
    print(
        f"Attached to {topics.prefix!r} on {config.host}:{config.port}. Press Ctrl+Q to detach.",
        file=sys.stderr,
    )
    try:
        reason = await bridge.run()
    except (TerminalError, TransportError) as e:
        print(f"\r\nError: {e}", file=sys.stderr)
        return 1
    finally:
        await transport.close()
    logger.debug("Session ended: %s", reason.value)
    print("\n\rSession ended.", file=sys.stderr)
    return 0


_ROLES: dict[str, Callable[[Sequence[str]], int]] = {
    "agent": agent_main,
    "controller": controller_main,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Dispatch ``python -m mqttshell {agent,controller} ...``."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] not in _ROLES:
        print("usage: python -m mqttshell {agent,controller} [options]", file=sys.stderr)
        return 2
    return _ROLES[args[0]](args[1:])


__all__ = [
    "agent_main",
    "build_agent_parser",
    "build_controller_parser",
    "configure_logging",
    "controller_main",
    "main",
]
