"""Tests for RawTerminal on a real pseudo-terminal."""

from __future__ import annotations

import os
import termios

import pytest

from mqttshell.agent.pty import set_winsize
from mqttshell.controller import RawTerminal, TerminalError, get_terminal_size
from mqttshell.protocol import TerminalSize


class TestRawTerminal:
    def test_acquire_enters_raw_mode(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        terminal = RawTerminal(slave)
        terminal.acquire()
        lflag = termios.tcgetattr(slave)[3]
        assert not lflag & termios.ECHO
        assert not lflag & termios.ICANON
        assert not lflag & termios.ISIG
        assert terminal.active
        terminal.release()

    def test_release_restores_saved_mode(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        with RawTerminal(slave) as terminal:
            assert termios.tcgetattr(slave) != before
        assert termios.tcgetattr(slave) == before
        assert terminal.restore_count == 1

    def test_release_is_idempotent(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        terminal = RawTerminal(slave)
        terminal.acquire()
        terminal.acquire()
        terminal.release()
        terminal.release()
        assert terminal.restore_count == 1
        assert not terminal.active

    def test_release_without_acquire(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        terminal = RawTerminal(slave)
        terminal.release()
        assert terminal.restore_count == 0

    def test_restored_when_body_raises(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        with pytest.raises(RuntimeError):
            with RawTerminal(slave):
                raise RuntimeError("boom")
        assert termios.tcgetattr(slave) == before

    def test_not_a_terminal(self) -> None:
        read_fd, write_fd = os.pipe()
        try:
            with pytest.raises(TerminalError, match="not a terminal"):
                RawTerminal(read_fd).acquire()
        finally:
            os.close(read_fd)
            os.close(write_fd)


class TestTerminalSize:
    def test_reads_pty_size(self, pty_pair: tuple[int, int]) -> None:
        _, slave = pty_pair
        set_winsize(slave, 33, 101)
        assert get_terminal_size(slave) == TerminalSize(33, 101)

    def test_falls_back_without_terminal(self) -> None:
        read_fd, write_fd = os.pipe()
        try:
            assert get_terminal_size(read_fd) == TerminalSize(24, 80)
        finally:
            os.close(read_fd)
            os.close(write_fd)
