"""Shell processes attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Mapping, Sequence

from ..protocol import TerminalSize

READ_SIZE = 4096


class SpawnError(OSError):
    """PTY allocation or process spawn failed."""


def set_winsize(fd: int, rows: int, cols: int) -> None:
    rows = max(1, int(rows))
    cols = max(1, int(cols))
    ws = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, ws)


def get_winsize(fd: int) -> TerminalSize:
    rows, cols, _, _ = struct.unpack("HHHH", fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8))
    return TerminalSize(rows, cols)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def exit_code(returncode: int) -> int:
    """Shell-style exit code: signal deaths map to 128 + signal number."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class ShellProcess:
    """A child process whose stdio is the slave side of a fresh PTY.

    The Agent owns the master descriptor: one task reads it, one task writes
    it, and resizes go through ``resize``.
    """

    def __init__(self, process: asyncio.subprocess.Process, master_fd: int, size: TerminalSize):
        self.process = process
        self.master_fd = master_fd
        self.size = size
        self._closed = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @classmethod
    async def spawn(
        cls,
        command: Sequence[str],
        size: TerminalSize,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> ShellProcess:
        """Allocate a PTY and start ``command`` on it.

        Raises:
            SpawnError: If the PTY cannot be allocated or the command cannot
                be started.
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(e.errno, f"Cannot allocate PTY: {e.strerror}") from e
        try:
            set_winsize(slave_fd, size.rows, size.columns)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=dict(env) if env is not None else None,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(getattr(e, "errno", None), f"Cannot start {command[0]!r}: {e}") from e
        finally:
            os.close(slave_fd)
        os.set_blocking(master_fd, False)
        return cls(process, master_fd, size)

    async def read(self) -> bytes:
        """Read the next chunk of output. Returns b"" once the slave side is gone."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                return os.read(self.master_fd, READ_SIZE)
            except BlockingIOError:
                pass
            except OSError as e:
                # Linux reports a hung-up PTY as EIO rather than EOF.
                if e.errno == errno.EIO:
                    return b""
                raise
            ready = loop.create_future()
            loop.add_reader(self.master_fd, _resolve, ready)
            try:
                await ready
            finally:
                loop.remove_reader(self.master_fd)

    async def write(self, data: bytes) -> None:
        """Write all of ``data`` to the shell's input."""
        await self.write_from(bytearray(data))

    async def write_from(self, buffer: bytearray) -> None:
        """Write ``buffer`` to the shell's input, consuming it as it goes.

        Written bytes are removed from the front of ``buffer``, so if this is
        cancelled ``buffer`` holds exactly what the shell has not received.
        """
        loop = asyncio.get_running_loop()
        while buffer:
            try:
                written = os.write(self.master_fd, buffer)
                del buffer[:written]
                continue
            except BlockingIOError:
                pass
            ready = loop.create_future()
            loop.add_writer(self.master_fd, _resolve, ready)
            try:
                await ready
            finally:
                loop.remove_writer(self.master_fd)

    def resize(self, size: TerminalSize) -> None:
        set_winsize(self.master_fd, size.rows, size.columns)
        self.size = size

    async def wait(self) -> int:
        return exit_code(await self.process.wait())

    async def terminate(self, timeout: float = 2.0) -> int:
        """Hang up the shell's process group, killing it if it lingers."""
        if self.process.returncode is None:
            self._signal_group(signal.SIGHUP)
            try:
                return await asyncio.wait_for(self.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                self._signal_group(signal.SIGKILL)
        return await self.wait()

    def _signal_group(self, signum: int) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self.master_fd)


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


__all__ = ["ShellProcess", "SpawnError", "TerminalSize", "exit_code", "get_winsize", "set_winsize"]
