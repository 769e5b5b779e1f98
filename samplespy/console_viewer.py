"""A top-like live view of the functions seen in sampled stack traces."""

from __future__ import annotations

import datetime
import math
import os
import shutil
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, TextIO

try:
    import termios
except ImportError:  # pragma: no cover - not available on Windows
    termios = None

try:
    import msvcrt
except ImportError:
    msvcrt = None

_CLEAR_LINE = "\r\x1b[2K"
_CURSOR_HOME = "\x1b[H"

_BOLD = "1"
_REVERSE = "7"
_RED = "31"
_GREEN = "32"

_SORT_ATTRIBUTES = {
    1: "current_own",
    2: "current_total",
    3: "overall_own",
    4: "overall_total",
}

_USAGE_ROWS = (
    ("1", "Sort by %Own (% of time currently spent in the function)"),
    ("2", "Sort by %Total (% of time currently in the function and its children)"),
    ("3", "Sort by OwnTime (Overall time spent in the function)"),
    ("4", "Sort by TotalTime (Overall time spent in the function and its children)"),
    ("L,l", "Toggle between aggregating by line number or by function"),
    ("R,r", "Reset statistics"),
    ("X,x", "Exit this help screen"),
)


@dataclass(order=True)
class FunctionStatistics:
    """Sample counts for one function or line, for this refresh and overall."""

    current_own: int = 0
    current_total: int = 0
    overall_own: int = 0
    overall_total: int = 0


def update_function_statistics(
    counts: dict[str, FunctionStatistics],
    trace,
    key_func: Callable[[object], str],
) -> None:
    """Adds one stack trace to counts, counting each key once per trace."""
    # deduplicate so recursive calls don't inflate the cumulative stats
    first_seen: dict[str, int] = {}
    for depth, frame in enumerate(trace.frames):
        first_seen.setdefault(key_func(frame), depth)

    for key, depth in first_seen.items():
        entry = counts.setdefault(key, FunctionStatistics())
        entry.current_total += 1
        entry.overall_total += 1
        if depth == 0:
            entry.current_own += 1
            entry.overall_own += 1


def display_time(val: float) -> str:
    """Formats a time value, showing fewer decimals for larger values."""
    if val > 1000.0:
        return f"{val:.0f}"
    if val >= 100.0:
        return f"{val:.1f}"
    if val >= 1.0:
        return f"{val:.2f}"
    return f"{val:.3f}"


@dataclass
class Options:
    """View options that can be changed from the keyboard."""

    show_linenumbers: bool
    dirty: bool = False
    usage: bool = False
    sort_column: int = 1
    reset: bool = False

    def handle_key(self, key) -> None:
        """Applies a single key press to the options."""
        if isinstance(key, int):
            key = chr(key)
        self.dirty = True
        if key in ("R", "r"):
            self.reset = True
        elif key in ("L", "l"):
            self.show_linenumbers = not self.show_linenumbers
        elif key in ("X", "x"):
            self.usage = False
        elif key == "?":
            self.usage = True
        elif key in ("1", "2", "3", "4"):
            self.sort_column = int(key)


@dataclass
class Stats:
    """Counters collected between (and across) refreshes."""

    current_samples: int = 0
    overall_samples: int = 0
    elapsed: float = 0.0
    errors: int = 0
    late_samples: int = 0
    threads: int = 0
    active: int = 0
    gil: int = 0
    function_counts: dict[str, FunctionStatistics] = field(default_factory=dict)
    line_counts: dict[str, FunctionStatistics] = field(default_factory=dict)
    last_error: str | None = None
    last_delay: float | None = None

    def reset_current(self) -> None:
        """Clears the statistics that cover only the current refresh."""
        for counts in (self.line_counts, self.function_counts):
            for entry in counts.values():
                entry.current_total = 0
                entry.current_own = 0
        self.gil = 0
        self.active = 0
        self.current_samples = 0
        self.elapsed = 0.0


def _pad(text: str, width: int, align: str) -> str:
    missing = width - len(text)
    if missing <= 0:
        return text
    if align == ">":
        return " " * missing + text
    if align == "^":
        left = missing // 2
        return " " * left + text + " " * (missing - left)
    return text + " " * missing


def _fixed(value: float, precision: int, width: int = 0) -> str:
    text = "NaN" if math.isnan(value) else f"{value:.{precision}f}"
    return _pad(text, width, ">")


def _percent(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return math.nan if numerator == 0 else math.inf
    return 100.0 * numerator / denominator


def _seconds(delay) -> float:
    if isinstance(delay, datetime.timedelta):
        return delay.total_seconds()
    return float(delay)


def _format_duration(seconds: float) -> str:
    if seconds >= 1.0:
        return f"{seconds:.2f}s"
    if seconds >= 1e-3:
        return f"{seconds * 1e3:.2f}ms"
    if seconds >= 1e-6:
        return f"{seconds * 1e6:.2f}µs"
    return f"{seconds * 1e9:.2f}ns"


def _frame_filename(frame) -> str:
    short = getattr(frame, "short_filename", None)
    return short if short is not None else frame.filename


def _line_key(frame) -> str:
    filename = _frame_filename(frame)
    if frame.line != 0:
        return f"{frame.name} ({filename}:{frame.line})"
    return f"{frame.name} ({filename})"


def _function_key(frame) -> str:
    return f"{frame.name} ({_frame_filename(frame)})"


class ConsoleViewer:
    """Aggregates stack traces and redraws a top-like table on the terminal.

    ``sampling_rate`` is the time between samples in seconds.
    """

    def __init__(
        self,
        show_linenumbers: bool,
        python_command: str,
        version: str,
        sampling_rate: float,
        *,
        output: TextIO | None = None,
        keyboard: bool = True,
        size: tuple[int, int] | None = None,
        colors: bool | None = None,
    ) -> None:
        self.command = python_command
        self.version = version
        self.sampling_rate = sampling_rate
        self.show_idle = False
        self.running = True
        self.options = Options(show_linenumbers)
        self.stats = Stats()
        self._lock = threading.Lock()
        self._out = output if output is not None else sys.stdout
        self._size = size
        if colors is None:
            isatty = getattr(self._out, "isatty", None)
            colors = bool(isatty and isatty())
        self._colors = colors
        self._saved_termios = None
        self._stdin_fd: int | None = None

        if keyboard:
            self._setup_keyboard()

        # flush the current screen so redrawing doesn't overwrite history
        height, _ = self._terminal_size()
        self._out.write("\n" * (height + 1))
        self._out.flush()

    def __enter__(self) -> ConsoleViewer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _setup_keyboard(self) -> None:
        try:
            fd = sys.stdin.fileno()
        except (AttributeError, OSError, ValueError):
            return
        if not os.isatty(fd):
            return
        if termios is not None:
            saved = termios.tcgetattr(fd)
            changed = termios.tcgetattr(fd)
            changed[3] &= ~(termios.ICANON | termios.ECHO)
            termios.tcsetattr(fd, termios.TCSANOW, changed)
            self._saved_termios = saved
            self._stdin_fd = fd
            target = self._read_keys_posix
        elif msvcrt is not None:
            target = self._read_keys_windows
        else:
            return
        threading.Thread(target=target, daemon=True).start()

    def _read_keys_posix(self) -> None:
        while self.running:
            try:
                data = os.read(self._stdin_fd, 1)
            except OSError:
                return
            if not data:
                return
            with self._lock:
                self.options.handle_key(chr(data[0]))

    def _read_keys_windows(self) -> None:
        while self.running:
            key = msvcrt.getwch()
            with self._lock:
                self.options.handle_key(key)

    def close(self) -> None:
        """Stops listening for keys and restores the terminal settings."""
        self.running = False
        if self._saved_termios is not None and termios is not None:
            termios.tcsetattr(self._stdin_fd, termios.TCSANOW, self._saved_termios)
            self._saved_termios = None

    def _terminal_size(self) -> tuple[int, int]:
        if self._size is not None:
            return self._size
        size = shutil.get_terminal_size((80, 24))
        return size.lines, size.columns

    def _style(self, value, *codes: str, width: int = 0, align: str = "<") -> str:
        text = _pad(str(value), width, align)
        if self._colors and codes:
            return f"\x1b[{';'.join(codes)}m{text}\x1b[0m"
        return text

    def increment(self, traces: Iterable) -> None:
        """Adds one sample made of the stack traces of every thread."""
        self._maybe_reset()
        stats = self.stats
        stats.threads = 0
        for trace in traces:
            stats.threads += 1
            if not (self.show_idle or trace.active):
                continue
            if trace.owns_gil:
                stats.gil += 1
            if trace.active:
                stats.active += 1
            update_function_statistics(stats.line_counts, trace, _line_key)
            update_function_statistics(stats.function_counts, trace, _function_key)
        self._increment_common()

    def increment_error(self, err) -> None:
        """Counts a failed sample."""
        self._maybe_reset()
        self.stats.errors += 1
        self.stats.last_error = str(err)
        self._increment_common()

    def increment_late_sample(self, delay) -> None:
        """Records that sampling fell behind by delay (seconds or timedelta)."""
        self.stats.late_samples += 1
        self.stats.last_delay = _seconds(delay)

    def should_refresh(self) -> bool:
        """True when the table should be redrawn now."""
        if self.stats.overall_samples in (10, 100, 500):
            return True
        with self._lock:
            dirty = self.options.dirty
        return dirty or self.stats.elapsed >= 1.0

    def _increment_common(self) -> None:
        self.stats.current_samples += 1
        self.stats.overall_samples += 1
        self.stats.elapsed += self.sampling_rate
        if self.should_refresh():
            self.display()
            self.stats.reset_current()

    def _maybe_reset(self) -> None:
        with self._lock:
            if self.options.reset:
                self.stats = Stats()
                self.options.reset = False

    def display(self) -> None:
        """Redraws the whole view."""
        with self._lock:
            self.options.dirty = False
            show_linenumbers = self.options.show_linenumbers
            sort_column = self.options.sort_column
            usage = self.options.usage

        attribute = _SORT_ATTRIBUTES.get(sort_column)
        if attribute is None:
            raise ValueError(f"unknown sort column {sort_column}")
        stats = self.stats
        counts = stats.line_counts if show_linenumbers else stats.function_counts
        rows = sorted(counts.items(), key=lambda item: getattr(item[1], attribute), reverse=True)

        height, width = self._terminal_size()
        lines: list[str] = []
        out = lines.append
        header_lines = 18 if usage else 8

        if stats.last_delay is not None:
            late_rate = (stats.late_samples / stats.overall_samples
                         if stats.overall_samples else math.nan)
            if late_rate > 0.10 and stats.last_delay > 1.0:
                msg = (f"{_format_duration(stats.last_delay)} behind in sampling, "
                       "results may be inaccurate. Try reducing the sampling rate.")
                out(self._style(msg, _RED))
                header_lines += 1

        out(f"Collecting samples from '{self._style(self.command, _GREEN)}' "
            f"(python v{self.version})")

        error_rate = (stats.errors / stats.overall_samples
                      if stats.overall_samples else math.nan)
        if error_rate >= 0.01 and stats.overall_samples > 100:
            out(f"Total Samples {self._style(stats.overall_samples, _BOLD)}, "
                f"Error Rate {self._style(_fixed(error_rate * 100.0, 2), _BOLD, _RED)}% "
                f"({self._style(stats.last_error, _BOLD)})")
        else:
            out(f"Total Samples: {self._style(stats.overall_samples, _BOLD)}")

        gil = _fixed(_percent(stats.gil, stats.current_samples), 2)
        active = _fixed(_percent(stats.active, stats.current_samples), 2)
        out(f"GIL: {self._style(gil, _BOLD)}%, Active: {self._style(active, _BOLD)}%, "
            f"Threads: {self._style(stats.threads, _BOLD)}")
        out("")

        def header(text: str, column: int, pad: int) -> str:
            codes = (_REVERSE, _BOLD) if sort_column == column else (_REVERSE,)
            return self._style(text, *codes, width=pad, align=">")

        # below 50 columns each entry takes two lines; otherwise truncate labels
        if width <= 50:
            header_lines += height // 2
        max_function_width = width - 35 if width > 50 else width
        function_header = ("  Function (filename:line)" if show_linenumbers
                           else "  Function (filename)")
        out(header("%Own ", 1, 7) + header("%Total", 2, 8) + header("OwnTime", 3, 9)
            + header("TotalTime", 4, 11)
            + self._style(function_header, _REVERSE, width=max_function_width))

        available = max(0, height - header_lines)
        label_width = max(0, max_function_width - 2)
        current = stats.current_samples
        for label, entry in rows[:available]:
            own = _fixed(_percent(entry.current_own, current), 2, 6)
            total = _fixed(_percent(entry.current_total, current), 2, 6)
            own_time = display_time(entry.overall_own * self.sampling_rate)
            total_time = display_time(entry.overall_total * self.sampling_rate)
            out(f"{own}% {total}% {own_time:>7}s {total_time:>8}s   {label[:label_width]}")
        for _ in range(min(len(rows), available), available):
            out("")
        out("")

        if usage:
            out(self._style(" Keyboard Shortcuts ", _REVERSE, width=width))
            out("")
            out(self._style("key", _GREEN, width=12, align="^") + self._style("action", _GREEN))
            for key, action in _USAGE_ROWS:
                out(_pad(key, 12, "^") + action)
            out("")
        else:
            out(f"Press {self._style('Control-C', _BOLD, _REVERSE)} to quit, "
                f"or {self._style('?', _BOLD, _REVERSE)} for help.")

        self._out.write(_CURSOR_HOME)
        for line in lines:
            self._out.write(_CLEAR_LINE + line + "\n")
        self._out.flush()