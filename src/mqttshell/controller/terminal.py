"""Local terminal mode handling for the Controller."""

from __future__ import annotations

import logging
import os
import termios
import tty

from ..config import DEFAULT_COLS, DEFAULT_ROWS
from ..protocol import TerminalSize

logger = logging.getLogger(__name__)


class TerminalError(RuntimeError):
    """The local terminal cannot be used for a session."""


def get_terminal_size(fd: int) -> TerminalSize:
    """Size of the terminal on ``fd``, or 24x80 if it has none."""
    try:
        cols, rows = os.get_terminal_size(fd)
    except OSError:
        return TerminalSize(DEFAULT_ROWS, DEFAULT_COLS)
    return TerminalSize(rows, cols)


class RawTerminal:
    """Owns the raw-mode state of one terminal.

    ``acquire`` saves the current mode and switches to raw mode; ``release``
    puts the saved mode back. Release is idempotent, so every exit path can
    call it and the terminal is restored exactly once.

    Example:
        with RawTerminal(sys.stdin.fileno()):
            ...  # keystrokes arrive byte by byte, unechoed
    """

    def __init__(self, fd: int):
        self.fd = fd
        self._saved: list | None = None
        self.restore_count = 0

    @property
    def active(self) -> bool:
        return self._saved is not None

    def acquire(self) -> None:
        """Save the current terminal mode and enter raw mode.

        Raises:
            TerminalError: If ``fd`` is not a terminal or its mode cannot be changed.
        """
        if self._saved is not None:
            return
        if not os.isatty(self.fd):
            raise TerminalError("Standard input is not a terminal")
        try:
            saved = termios.tcgetattr(self.fd)
            tty.setraw(self.fd)
        except termios.error as e:
            raise TerminalError(f"Cannot switch terminal to raw mode: {e}") from e
        self._saved = saved

    def release(self) -> None:
        """Restore the mode saved by ``acquire``. Does nothing if not active."""
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        self.restore_count += 1
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, saved)
        except termios.error as e:
            # The terminal went away; there is nothing left to restore.
            logger.debug("Cannot restore terminal mode: %s", e)

    def __enter__(self) -> RawTerminal:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


__all__ = ["RawTerminal", "TerminalError", "get_terminal_size"]
