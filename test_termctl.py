import io
import os

import pytest

import termctl


class FakeKernel32:
    """Minimal stand-in for ctypes.windll.kernel32."""

    def __init__(self, modes):
        self.modes = dict(modes)
        self.set_calls = []

    def GetStdHandle(self, which):
        return which

    def GetConsoleMode(self, handle, mode_ref):
        if handle not in self.modes:
            return 0
        mode_ref._obj.value = self.modes[handle]
        return 1

    def SetConsoleMode(self, handle, mode):
        self.set_calls.append((handle, mode))
        self.modes[handle] = mode
        return 1


def test_is_terminal_on_plain_streams():
    terminal = termctl.Terminal()
    assert terminal.is_terminal(io.StringIO()) is False

    class Closed:
        def isatty(self):
            raise ValueError("I/O operation on closed file")

    assert terminal.is_terminal(Closed()) is False


def test_get_size_honours_environment(monkeypatch):
    monkeypatch.setenv("COLUMNS", "132")
    monkeypatch.setenv("LINES", "43")
    assert termctl.Terminal().get_size() == (132, 43)


def test_get_terminal_matches_platform():
    expected = termctl.WindowsTerminal if os.name == "nt" else termctl.PosixTerminal
    assert isinstance(termctl.get_terminal(), expected)


@pytest.fixture
def fake_termios(monkeypatch):
    termios = pytest.importorskip("termios")
    original = [termios.IXON, 0, 0, termios.ECHO | termios.ECHOE, 38400, 38400, [b"\x00"] * 32]
    calls = []

    monkeypatch.setattr(termios, "tcgetattr", lambda fd: [a[:] if isinstance(a, list) else a for a in original])
    monkeypatch.setattr(termios, "tcsetattr", lambda fd, when, attrs: calls.append((fd, when, attrs)))
    return termios, original, calls


def test_posix_disable_echo_and_restore(fake_termios):
    termios, original, calls = fake_termios
    terminal = termctl.PosixTerminal(fd=5)

    with terminal.disable_echo() as token:
        assert token == original
        assert len(calls) == 1
        fd, when, attrs = calls[0]
        assert fd == 5
        assert when == termios.TCSANOW
        assert not attrs[3] & termios.ECHO
        assert attrs[3] & termios.ICANON
        assert attrs[3] & termios.ISIG
        assert attrs[0] & termios.ICRNL

    assert len(calls) == 2
    assert calls[1][2] == original
    assert token[3] & termios.ECHO


def test_posix_restores_after_error(fake_termios):
    termios, original, calls = fake_termios

    with pytest.raises(RuntimeError):
        with termctl.PosixTerminal(fd=5).disable_echo():
            raise RuntimeError("boom")

    assert len(calls) == 2
    assert calls[-1][2] == original


def test_posix_unreadable_terminal_is_a_no_op(fake_termios, monkeypatch):
    termios, _, calls = fake_termios

    def fail(fd):
        raise termios.error(25, "Inappropriate ioctl for device")

    monkeypatch.setattr(termios, "tcgetattr", fail)
    with termctl.PosixTerminal(fd=5).disable_echo() as token:
        assert token is None
    assert calls == []


def test_windows_disable_echo_and_restore():
    w = termctl.WindowsTerminal
    kernel32 = FakeKernel32({w.STD_INPUT_HANDLE: 0x01F7, w.STD_OUTPUT_HANDLE: 0x0003})
    terminal = w(kernel32=kernel32)

    with terminal.disable_echo():
        in_mode = kernel32.modes[w.STD_INPUT_HANDLE]
        out_mode = kernel32.modes[w.STD_OUTPUT_HANDLE]
        assert not in_mode & w.ENABLE_ECHO_INPUT
        assert in_mode & w.ENABLE_LINE_INPUT
        assert in_mode & w.ENABLE_PROCESSED_INPUT
        assert out_mode & w.ENABLE_VIRTUAL_TERMINAL_PROCESSING

    assert kernel32.modes == {w.STD_INPUT_HANDLE: 0x01F7, w.STD_OUTPUT_HANDLE: 0x0003}


def test_windows_without_console_is_a_no_op():
    kernel32 = FakeKernel32({})
    with termctl.WindowsTerminal(kernel32=kernel32).disable_echo() as token:
        assert token is None
    assert kernel32.set_calls == []
