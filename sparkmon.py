#!/usr/bin/env python3
"""
sparkmon.py

Live terminal monitor for host CPU and memory utilization (rich UI).
Features:
- CPU and Memory usage sampled every 250 ms
- Scrolling sparkline history, newest sample on the left
- Two side-by-side rounded panels with a per-session random color scheme
- Raw-mode keyboard input, press 'q' to quit

Requirements:
    pip install psutil numpy rich
"""

import os
import sys
import time
import random
import select
import termios
import logging
import logging.handlers
from enum import Enum
from collections import namedtuple
from contextlib import ExitStack

import psutil
import numpy as np
from rich import box
from rich.color import Color
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.segment import Segment
from rich.style import Style

# ---------- Configuration / Defaults ----------
MAX_POINTS = 200               # number of samples kept per metric
SEED_VALUE = 100               # initial fill, first frame is drawn full-scale
TICK_RATE_MS = 250             # sampling interval (in milliseconds)
QUIT_KEY = 'q'

CPU_TITLE = 'Cpu usage'
MEMORY_TITLE = 'Memory usage'

COLOR_CHANNEL_MIN = 1          # 0 is skipped so no panel ends up pure black
COLOR_CHANNEL_MAX = 255

# Sparkline glyphs, index = filled eighths of a cell
BAR_SYMBOLS = ' ▁▂▃▄▅▆▇█'

# Mouse reporting: normal tracking, button-event tracking, urxvt and SGR encodings
MOUSE_CAPTURE_ON = '\x1b[?1000h\x1b[?1002h\x1b[?1015h\x1b[?1006h'
MOUSE_CAPTURE_OFF = '\x1b[?1006l\x1b[?1015l\x1b[?1002l\x1b[?1000l'

LOG_FORMAT = '[%(levelname)s] %(message)s'
LOG_BUFFER_CAPACITY = 1024     # records held back while the alternate screen is active


# ---------- Errors ----------
class MetricsSourceError(RuntimeError):
    """Host counters could not be refreshed."""


class TerminalError(RuntimeError):
    """Terminal could not be switched into or out of dashboard mode, or input failed."""


def setup_logging(stream=None):
    """Route log records through a buffer that is only written out after the terminal is restored."""
    target = logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(logging.Formatter(LOG_FORMAT))
    log_buffer = logging.handlers.MemoryHandler(
        LOG_BUFFER_CAPACITY,
        flushLevel=logging.CRITICAL,
        target=target
    )
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, handlers=[log_buffer])
    return log_buffer


# ---------- Metrics source ----------
class MetricsSource:
    """psutil-backed host counters. Values stay cached until refresh() is called."""

    def __init__(self):
        self.cpu_usage = 0.0
        self.used_memory = 0
        self.total_memory = 0
        # cpu_percent(interval=None) measures against the previous call, so prime it once
        self.refresh()
        logging.info("Metrics source initialized")

    def refresh(self):
        """Re-read global CPU usage and memory counters."""
        try:
            cpu_usage = psutil.cpu_percent(interval=None)
            virtual_mem = psutil.virtual_memory()
        except (psutil.Error, OSError) as e:
            raise MetricsSourceError(f"Failed to refresh system metrics: {e}") from e

        self.cpu_usage = cpu_usage
        self.total_memory = virtual_mem.total
        self.used_memory = virtual_mem.total - virtual_mem.available


def byte_to_megabyte(number):
    return number // 1024 // 1024


def cpu_percent(cpu_usage):
    """Truncate a float CPU reading to an integer percentage in [0, 100]."""
    return max(0, min(100, int(cpu_usage)))


def memory_percent(used_bytes, total_bytes):
    """
    Memory usage as an integer percentage.

    Bytes are truncated to whole megabytes first, then the ratio is truncated,
    so values match the megabyte figures shown by other tools exactly.
    """
    total_mb = byte_to_megabyte(total_bytes)
    if total_mb == 0:
        return 0
    used_mb = byte_to_megabyte(used_bytes)
    return max(0, min(100, int(used_mb / total_mb * 100)))


# ---------- Data model ----------
class HistoryBuffer:
    """
    Fixed-length series with the most recent value at index 0.

    Backed by a numpy ring: push() moves the head one slot back and overwrites
    it, which drops the oldest value in O(1).
    """

    def __init__(self, capacity=MAX_POINTS, seed=SEED_VALUE):
        if capacity <= 0:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._data = np.full(capacity, seed, dtype=np.uint8)
        self._head = 0

    def push(self, value):
        """Insert value at the front, dropping the oldest entry."""
        self._head = (self._head - 1) % self.capacity
        self._data[self._head] = value

    def snapshot(self):
        """Read-only copy ordered newest first."""
        view = np.concatenate((self._data[self._head:], self._data[:self._head]))
        view.flags.writeable = False
        return view

    def __len__(self):
        return self.capacity


class AppState:
    """Histories for both panels, alive for the whole run."""

    def __init__(self, capacity=MAX_POINTS, seed=SEED_VALUE):
        self.cpu = HistoryBuffer(capacity, seed)
        self.memory = HistoryBuffer(capacity, seed)


Palette = namedtuple('Palette', ['cpu', 'memory'])


def random_color(rng=random):
    return Color.from_rgb(
        rng.randint(COLOR_CHANNEL_MIN, COLOR_CHANNEL_MAX),
        rng.randint(COLOR_CHANNEL_MIN, COLOR_CHANNEL_MAX),
        rng.randint(COLOR_CHANNEL_MIN, COLOR_CHANNEL_MAX)
    )


def random_palette(rng=random):
    """Pick the session's panel colors. Called once, the result is never mutated."""
    return Palette(cpu=random_color(rng), memory=random_color(rng))


class Sampler:
    """Turns a metrics refresh into one new point per history."""

    def __init__(self, state):
        self.state = state

    def sample(self, source):
        """Refresh the source, push derived percentages, return (cpu, memory)."""
        source.refresh()
        cpu = cpu_percent(source.cpu_usage)
        memory = memory_percent(source.used_memory, source.total_memory)

        self.state.cpu.push(cpu)
        self.state.memory.push(memory)
        logging.debug(f"Sampled cpu={cpu}% memory={memory}%")
        return cpu, memory


# ---------- Rendering ----------
class Sparkline:
    """
    Bar sparkline filling the whole area it is given.

    One column per data point starting at the left edge, bars scaled against the
    largest value in the series, eighth-block glyphs for the partial top cell.
    Points that do not fit in the width are clipped.
    """

    def __init__(self, data, style=None):
        self.data = [int(value) for value in data]
        self.style = style or Style()

    def __rich_console__(self, console, options):
        width = options.max_width
        height = options.height or 1

        # scale against the whole series, not just the points that fit
        max_value = max(self.data, default=0)
        visible = self.data[:width]
        if max_value:
            levels = [value * height * 8 // max_value for value in visible]
        else:
            levels = [0] * len(visible)

        rows = []
        for _ in range(height):
            cells = []
            for i, level in enumerate(levels):
                cells.append(BAR_SYMBOLS[min(level, 8)])
                levels[i] = level - 8 if level > 8 else 0
            rows.append(''.join(cells))

        padding = ' ' * (width - len(visible))
        for row in reversed(rows):
            yield Segment(row, self.style)
            if padding:
                yield Segment(padding)
            yield Segment.line()


def make_panel(title, data, color):
    """Rounded, bordered panel holding one sparkline."""
    return Panel(
        Sparkline(data, Style(color=color)),
        title=title,
        title_align='left',
        box=box.ROUNDED,
        padding=0
    )


def render_frame(cpu, memory, palette):
    """Two equal columns: CPU history on the left, memory history on the right."""
    layout = Layout(name='root')
    layout.split_row(
        Layout(make_panel(CPU_TITLE, cpu, palette.cpu), name='cpu', ratio=1),
        Layout(make_panel(MEMORY_TITLE, memory, palette.memory), name='memory', ratio=1)
    )
    return layout


class FrameRenderer:
    """Pushes a full frame to the live display. Layout is recomputed from the terminal size on every draw."""

    def __init__(self, live):
        self.live = live

    def draw(self, state, palette):
        frame = render_frame(state.cpu.snapshot(), state.memory.snapshot(), palette)
        self.live.update(frame, refresh=True)


# ---------- Terminal session ----------
def escape_end(data, i):
    """
    Index just past the escape sequence starting at data[i], or None when the
    sequence is cut off at the end of data. A trailing lone ESC counts as complete.
    """
    n = len(data)
    if i == n - 1:
        return n

    nxt = data[i + 1]
    if nxt not in (ord('['), ord('O')):
        # Alt-modified key
        return i + 2

    j = i + 2
    if nxt == ord('[') and j < n and data[j] == ord('M'):
        # X10 mouse report: CSI M followed by three raw bytes
        return j + 4 if j + 4 <= n else None
    while j < n:
        final = data[j]
        j += 1
        if 0x40 <= final <= 0x7E:
            return j
    return None


def split_pending(data):
    """Split off a trailing escape sequence that has not fully arrived yet."""
    i = 0
    n = len(data)
    while i < n:
        if data[i] != 0x1B:
            i += 1
            continue
        end = escape_end(data, i)
        if end is None:
            return data[:i], data[i:]
        i = end
    return data, b''


def decode_keys(data):
    """
    Split raw input bytes into key presses.

    Escape sequences (arrows, function keys, mouse reports) are consumed whole
    and produce no key. A lone ESC yields '\\x1b'.
    """
    keys = []
    i = 0
    n = len(data)
    while i < n:
        b = data[i]
        if b != 0x1B:
            if b < 0x80:
                keys.append(chr(b))
                i += 1
                continue
            # multi-byte UTF-8 character
            end = i + 1
            while end < n and 0x80 <= data[end] < 0xC0:
                end += 1
            keys.append(data[i:end].decode('utf-8', errors='replace'))
            i = end
            continue

        if i == n - 1:
            keys.append('\x1b')
            break

        end = escape_end(data, i)
        if end is None:
            break
        i = end
    return keys


class KeyPoller:
    """
    Bounded-timeout key reader on a raw-mode input descriptor.

    Everything already queued is read in one go, and an escape sequence split
    across reads is held back until the rest of it arrives, so mouse report
    bytes are never mistaken for keys.
    """

    READ_SIZE = 64
    MAX_DRAIN = 4096

    def __init__(self, fd):
        self.fd = fd
        self.pending = b''

    def poll(self, timeout):
        """Wait up to timeout seconds for input. Returns decoded keys, [] on timeout."""
        try:
            ready, _, _ = select.select([self.fd], [], [], timeout)
            if not ready:
                return []
            data = os.read(self.fd, self.READ_SIZE)
            if not data:
                raise TerminalError("Input stream closed")
            data = self.pending + data
            while len(data) < self.MAX_DRAIN and select.select([self.fd], [], [], 0)[0]:
                chunk = os.read(self.fd, self.READ_SIZE)
                if not chunk:
                    break
                data += chunk
        except OSError as e:
            raise TerminalError(f"Failed to read input: {e}") from e
        complete, self.pending = split_pending(data)
        return decode_keys(complete)


class TerminalSession:
    """
    Raw input mode, mouse capture, alternate screen and hidden cursor for the
    duration of a with-block.

    Every acquired piece registers its own release, so leaving the block by
    return, exception or Ctrl+C always puts the terminal back the way it was.
    A failure half way through __enter__ releases what was already acquired.
    """

    def __init__(self, console=None, stdin=None):
        self.console = console or Console()
        self.stdin = stdin or sys.stdin
        self.fd = None
        self.live = None
        self._saved_attrs = None
        self._cleanup = None

    def __enter__(self):
        with ExitStack() as stack:
            self._enable_raw_mode()
            stack.callback(self._restore_input_mode)

            self._set_mouse_capture(True)
            stack.callback(self._set_mouse_capture, False)

            self.live = Live(
                console=self.console,
                screen=True,
                auto_refresh=False,
                redirect_stdout=False,
                redirect_stderr=False
            )
            self.live.start()
            stack.callback(self._leave_screen)

            self._cleanup = stack.pop_all()
        logging.info("Terminal session started")
        return self

    def __exit__(self, exc_type, exc, tb):
        self._cleanup.close()
        logging.info("Terminal session restored")
        return False

    def _enable_raw_mode(self):
        try:
            fd = self.stdin.fileno()
            if not os.isatty(fd):
                raise TerminalError("Standard input is not a terminal")
            self._saved_attrs = termios.tcgetattr(fd)
            attrs = termios.tcgetattr(fd)
            attrs[0] &= ~termios.IXON
            attrs[3] &= ~(termios.ICANON | termios.ECHO | termios.IEXTEN)
            attrs[6][termios.VMIN] = 1
            attrs[6][termios.VTIME] = 0
            termios.tcsetattr(fd, termios.TCSANOW, attrs)
        except (termios.error, OSError, ValueError) as e:
            raise TerminalError(f"Failed to enable raw mode: {e}") from e
        self.fd = fd

    def _restore_input_mode(self):
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
        except (termios.error, OSError) as e:
            raise TerminalError(f"Failed to restore terminal mode: {e}") from e
        finally:
            self.fd = None
            self._saved_attrs = None

    def _set_mouse_capture(self, enabled):
        if not self.console.is_terminal:
            return
        self.console.file.write(MOUSE_CAPTURE_ON if enabled else MOUSE_CAPTURE_OFF)
        self.console.file.flush()

    def _leave_screen(self):
        # Live.stop() leaves the alternate screen; the cursor is re-shown either way
        try:
            self.live.stop()
        finally:
            self.console.show_cursor(True)


# ---------- Event loop ----------
class LoopState(Enum):
    RUNNING = 'running'
    EXITING = 'exiting'


class Dashboard:
    """
    Fixed-tick scheduler.

    Every iteration draws a full frame, then blocks on input for whatever is
    left of the current tick. Sampling happens only once the tick interval has
    elapsed, so the sample cadence does not depend on how often frames are drawn
    and a quit key is seen within one poll timeout.
    """

    def __init__(self, source, renderer, poller, palette=None,
                 tick_rate=TICK_RATE_MS / 1000, clock=time.monotonic):
        self.source = source
        self.renderer = renderer
        self.poller = poller
        self.palette = palette or random_palette()
        self.tick_rate = tick_rate
        self.clock = clock

        self.state = AppState()
        self.sampler = Sampler(self.state)
        self.loop_state = LoopState.RUNNING
        self.last_tick = self.clock()
        logging.info(f"Dashboard initialized (tick {tick_rate * 1000:.0f} ms, {MAX_POINTS} points)")

    def run(self):
        """Run until the quit key is pressed. Errors propagate to the caller."""
        self.last_tick = self.clock()
        while self.loop_state is LoopState.RUNNING:
            self.step()
        logging.info("Dashboard stopped")

    def step(self):
        """One loop iteration: draw, poll, maybe sample."""
        self.renderer.draw(self.state, self.palette)

        timeout = max(0.0, self.tick_rate - (self.clock() - self.last_tick))
        if QUIT_KEY in self.poller.poll(timeout):
            self.loop_state = LoopState.EXITING
            logging.info("Quit requested")
            return

        if self.clock() - self.last_tick >= self.tick_rate:
            self.sampler.sample(self.source)
            self.last_tick = self.clock()


def main():
    log_buffer = setup_logging()
    logging.info("Starting sparkmon")
    try:
        source = MetricsSource()
        with TerminalSession() as session:
            dashboard = Dashboard(source, FrameRenderer(session.live), KeyPoller(session.fd))
            dashboard.run()
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return 130
    except Exception as e:
        # the session has already been released at this point
        logging.critical(f"Dashboard runtime error: {e}", exc_info=True)
        print(f"\nFATAL ERROR: {e}")
        return 1
    finally:
        log_buffer.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
