"""Shared fixtures for all tests."""

import asyncio
import os
import pty
import shutil
import time
from collections.abc import Callable, Generator

import pytest

from mqttshell.transport import MemoryBroker


@pytest.fixture
def mock_env_clear(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Clear broker-related environment variables for testing.

    This ensures tests don't accidentally pick up a real broker or credentials.
    """
    for var in ("MQTT_BROKER", "MQTT_USERNAME", "MQTT_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def broker() -> MemoryBroker:
    """In-process broker shared by the transports of one test."""
    return MemoryBroker()


@pytest.fixture
def pty_pair() -> Generator[tuple[int, int], None, None]:
    """A (master, slave) pseudo-terminal pair standing in for a user's terminal."""
    master, slave = pty.openpty()
    yield master, slave
    for fd in (master, slave):
        try:
            os.close(fd)
        except OSError:
            pass


@pytest.fixture
def sh() -> str:
    """Path of a POSIX shell for PTY tests."""
    path = shutil.which("sh") or "/bin/sh"
    if not os.path.exists(path):
        pytest.skip("No POSIX shell available")
    return path


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually() -> Callable:
    """Async polling helper: ``await eventually(lambda: cond)``."""
    return wait_until
