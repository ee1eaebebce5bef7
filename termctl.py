"""
Terminal primitives for imgcat.
Size queries and echo suppression for POSIX (termios) and Windows consoles.
"""

import logging
import os
import shutil
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TERM_SIZE = (80, 24)


class Terminal:
    """Capability interface shared by the platform implementations."""

    def is_terminal(self, stream=None) -> bool:
        """Check whether a stream (stdout by default) is attached to a terminal."""
        stream = stream if stream is not None else sys.stdout
        try:
            return stream.isatty()
        except (AttributeError, ValueError):
            return False

    def get_size(self) -> Tuple[int, int]:
        """Return terminal (columns, rows)."""
        columns, rows = shutil.get_terminal_size(DEFAULT_TERM_SIZE)
        return columns, rows

    @contextmanager
    def disable_echo(self) -> Iterator[Any]:
        """Suspend local echo for the duration of the block, then restore it once."""
        token = self._save()
        if token is not None:
            self._apply(token)
        try:
            yield token
        finally:
            if token is not None:
                self._restore(token)

    def _save(self) -> Optional[Any]:
        raise NotImplementedError

    def _apply(self, token: Any) -> None:
        raise NotImplementedError

    def _restore(self, token: Any) -> None:
        raise NotImplementedError


class PosixTerminal(Terminal):
    def __init__(self, fd: Optional[int] = None):
        self.fd = fd

    def _fileno(self) -> int:
        return self.fd if self.fd is not None else sys.stdout.fileno()

    def _save(self):
        import termios

        try:
            return termios.tcgetattr(self._fileno())
        except (termios.error, OSError, ValueError) as e:
            logger.debug("Could not read terminal attributes: %s", e)
            return None

    def _apply(self, token):
        import termios

        attrs = [list(a) if isinstance(a, list) else a for a in token]
        # [iflag, oflag, cflag, lflag, ispeed, ospeed, cc]
        attrs[3] &= ~termios.ECHO
        attrs[3] |= termios.ICANON | termios.ISIG
        attrs[0] |= termios.ICRNL
        try:
            termios.tcsetattr(self._fileno(), termios.TCSANOW, attrs)
        except termios.error as e:
            logger.debug("Could not disable echo: %s", e)

    def _restore(self, token):
        import termios

        try:
            termios.tcsetattr(self._fileno(), termios.TCSANOW, token)
        except termios.error as e:
            logger.warning("Could not restore terminal attributes: %s", e)


class WindowsTerminal(Terminal):
    STD_INPUT_HANDLE = -10
    STD_OUTPUT_HANDLE = -11
    ENABLE_PROCESSED_INPUT = 0x0001
    ENABLE_LINE_INPUT = 0x0002
    ENABLE_ECHO_INPUT = 0x0004
    ENABLE_VIRTUAL_TERMINAL_PROCESSING = 0x0004

    def __init__(self, kernel32=None):
        if kernel32 is None:
            import ctypes

            kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        self.kernel32 = kernel32

    def _get_mode(self, handle) -> Optional[int]:
        import ctypes

        mode = ctypes.c_uint()
        if self.kernel32.GetConsoleMode(handle, ctypes.byref(mode)):
            return mode.value
        return None

    def _save(self):
        in_handle = self.kernel32.GetStdHandle(self.STD_INPUT_HANDLE)
        out_handle = self.kernel32.GetStdHandle(self.STD_OUTPUT_HANDLE)
        in_mode = self._get_mode(in_handle)
        out_mode = self._get_mode(out_handle)
        if in_mode is None and out_mode is None:
            logger.debug("GetConsoleMode failed on both handles")
            return None
        return (in_handle, in_mode, out_handle, out_mode)

    def _apply(self, token):
        in_handle, in_mode, out_handle, out_mode = token
        if in_mode is not None:
            new_mode = in_mode & ~self.ENABLE_ECHO_INPUT
            new_mode |= self.ENABLE_PROCESSED_INPUT | self.ENABLE_LINE_INPUT
            self.kernel32.SetConsoleMode(in_handle, new_mode)
        if out_mode is not None:
            self.kernel32.SetConsoleMode(out_handle, out_mode | self.ENABLE_VIRTUAL_TERMINAL_PROCESSING)

    def _restore(self, token):
        in_handle, in_mode, out_handle, out_mode = token
        if in_mode is not None:
            self.kernel32.SetConsoleMode(in_handle, in_mode)
        if out_mode is not None:
            self.kernel32.SetConsoleMode(out_handle, out_mode)


def get_terminal() -> Terminal:
    """Pick the terminal implementation for the running platform."""
    if os.name == "nt":
        return WindowsTerminal()
    return PosixTerminal()
