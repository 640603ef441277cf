import io
import os
import termios
from unittest.mock import patch

import pytest
from rich.console import Console

from sparkmon import (
    KeyPoller,
    MOUSE_CAPTURE_OFF,
    MOUSE_CAPTURE_ON,
    TerminalError,
    TerminalSession,
    decode_keys,
    split_pending,
)


@pytest.mark.parametrize('data, keys', [
    (b'q', ['q']),
    (b'aq', ['a', 'q']),
    (b'\x1b[A', []),
    (b'\x1bOP', []),
    (b'\x1b[<0;81;5M', []),
    (b'\x1b[<64;3;7m', []),
    (b'\x1b[M q!', []),
    (b'\x1bq', []),
    (b'\x1b', ['\x1b']),
    (b'\x1b[Bq', ['q']),
    ('é'.encode('utf-8'), ['é']),
])
def test_decode_keys(data, keys):
    assert decode_keys(data) == keys


@pytest.mark.parametrize('data, complete, pending', [
    (b'q', b'q', b''),
    (b'\x1b', b'\x1b', b''),
    (b'a\x1b[', b'a', b'\x1b['),
    (b'\x1b[<0;81', b'', b'\x1b[<0;81'),
    (b'x\x1b[M ', b'x', b'\x1b[M '),
    (b'\x1b[M q!q', b'\x1b[M q!q', b''),
])
def test_split_pending(data, complete, pending):
    assert split_pending(data) == (complete, pending)


@pytest.fixture
def pipe():
    r, w = os.pipe()
    yield r, w
    for fd in (r, w):
        try:
            os.close(fd)
        except OSError:
            pass


def test_poller_times_out_with_no_input(pipe):
    r, _ = pipe
    assert KeyPoller(r).poll(0) == []


def test_poller_returns_pending_keys(pipe):
    r, w = pipe
    os.write(w, b'xq')
    assert KeyPoller(r).poll(1.0) == ['x', 'q']


def test_poller_holds_back_split_mouse_report(pipe):
    r, w = pipe
    poller = KeyPoller(r)

    # X10 report for a click at column 81: the column byte is 'q'
    os.write(w, b'\x1b[M ')
    assert poller.poll(1.0) == []
    os.write(w, b'q!')
    assert poller.poll(1.0) == []
    assert poller.pending == b''


def test_poller_holds_back_split_sgr_report(pipe):
    r, w = pipe
    poller = KeyPoller(r)

    os.write(w, b'\x1b[<32;81;')
    assert poller.poll(1.0) == []
    os.write(w, b'5Mq')
    assert poller.poll(1.0) == ['q']


def test_poller_escape_then_quit(pipe):
    r, w = pipe
    poller = KeyPoller(r)

    os.write(w, b'\x1b')
    assert poller.poll(1.0) == ['\x1b']
    os.write(w, b'q')
    assert poller.poll(1.0) == ['q']


def test_poller_fails_when_input_closes(pipe):
    r, w = pipe
    os.close(w)
    with pytest.raises(TerminalError):
        KeyPoller(r).poll(1.0)


def test_poller_fails_on_bad_descriptor(pipe):
    r, _ = pipe
    os.close(r)
    with pytest.raises(TerminalError):
        KeyPoller(r).poll(0)


class FakeStdin:
    def __init__(self, fd=0):
        self.fd = fd

    def fileno(self):
        return self.fd


def make_console():
    return Console(file=io.StringIO(), force_terminal=True, width=20, height=5)


def fresh_attrs(fd):
    return [termios.IXON | termios.ICRNL, 0, 0, termios.ICANON | termios.ECHO | termios.IEXTEN | termios.ISIG, 0, 0, [0] * 32]


def test_session_requires_a_tty(pipe):
    r, _ = pipe
    console = make_console()
    with pytest.raises(TerminalError):
        with TerminalSession(console, FakeStdin(r)):
            pass
    assert '\x1b[?1049h' not in console.file.getvalue()


@patch('sparkmon.termios.tcsetattr')
@patch('sparkmon.termios.tcgetattr', side_effect=fresh_attrs)
@patch('sparkmon.os.isatty', return_value=True)
def test_session_enters_and_restores(mock_isatty, mock_get, mock_set):
    console = make_console()

    with TerminalSession(console, FakeStdin(0)) as session:
        assert session.fd == 0
        assert session.live is not None
        output = console.file.getvalue()
        assert '\x1b[?1049h' in output
        assert '\x1b[?25l' in output
        assert MOUSE_CAPTURE_ON in output

        fd, when, attrs = mock_set.call_args_list[0][0]
        assert attrs[3] & termios.ICANON == 0
        assert attrs[3] & termios.ECHO == 0
        assert attrs[3] & termios.ISIG
        assert attrs[0] & termios.IXON == 0
        assert attrs[0] & termios.ICRNL
        assert attrs[6][termios.VMIN] == 1

    output = console.file.getvalue()
    assert '\x1b[?1049l' in output
    assert output.rindex('\x1b[?25h') > output.rindex('\x1b[?25l')
    assert MOUSE_CAPTURE_OFF in output
    assert mock_set.call_count == 2
    assert mock_set.call_args_list[1][0] == (0, termios.TCSADRAIN, fresh_attrs(0))


@patch('sparkmon.termios.tcsetattr')
@patch('sparkmon.termios.tcgetattr', side_effect=fresh_attrs)
@patch('sparkmon.os.isatty', return_value=True)
def test_session_restores_on_error(mock_isatty, mock_get, mock_set):
    console = make_console()

    with pytest.raises(RuntimeError, match="loop failed"):
        with TerminalSession(console, FakeStdin(0)):
            raise RuntimeError("loop failed")

    assert '\x1b[?1049l' in console.file.getvalue()
    assert mock_set.call_count == 2


@patch('sparkmon.termios.tcsetattr')
@patch('sparkmon.termios.tcgetattr', side_effect=fresh_attrs)
@patch('sparkmon.os.isatty', return_value=True)
def test_session_restores_on_interrupt(mock_isatty, mock_get, mock_set):
    console = make_console()

    with pytest.raises(KeyboardInterrupt):
        with TerminalSession(console, FakeStdin(0)):
            raise KeyboardInterrupt

    assert '\x1b[?1049l' in console.file.getvalue()
    assert mock_set.call_count == 2


@patch('sparkmon.Live.start', side_effect=RuntimeError("no screen"))
@patch('sparkmon.termios.tcsetattr')
@patch('sparkmon.termios.tcgetattr', side_effect=fresh_attrs)
@patch('sparkmon.os.isatty', return_value=True)
def test_partial_setup_is_undone(mock_isatty, mock_get, mock_set, mock_start):
    console = make_console()

    with pytest.raises(RuntimeError, match="no screen"):
        with TerminalSession(console, FakeStdin(0)):
            pass

    assert console.file.getvalue().endswith(MOUSE_CAPTURE_OFF)
    assert mock_set.call_count == 2


@patch('sparkmon.termios.tcsetattr', side_effect=termios.error(25, 'Inappropriate ioctl'))
@patch('sparkmon.termios.tcgetattr', side_effect=fresh_attrs)
@patch('sparkmon.os.isatty', return_value=True)
def test_raw_mode_failure_is_a_terminal_error(mock_isatty, mock_get, mock_set):
    console = make_console()

    with pytest.raises(TerminalError, match="raw mode"):
        with TerminalSession(console, FakeStdin(0)):
            pass
    assert MOUSE_CAPTURE_ON not in console.file.getvalue()
