"""Command line configuration for the sampling profiler."""

from __future__ import annotations

import logging
import struct
import sys
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum

_log = logging.getLogger(__name__)

_PROGRAM_NAME = "samplespy"
_VERSION = "0.1.0"
_DESCRIPTION = "Sampling profiler for Python programs"


class FileFormat(str, Enum):
    """Output formats for recorded samples."""

    FLAMEGRAPH = "flamegraph"
    SPEEDSCOPE = "speedscope"


class ErrorKind(Enum):
    """Kinds of command line errors."""

    MISSING_REQUIRED_ARGUMENT = "missing_required_argument"
    INVALID_VALUE = "invalid_value"
    VALUE_VALIDATION = "value_validation"
    UNRECOGNIZED_SUBCOMMAND = "unrecognized_subcommand"
    UNKNOWN_ARGUMENT = "unknown_argument"
    EMPTY_VALUE = "empty_value"
    TOO_MANY_VALUES = "too_many_values"
    UNEXPECTED_MULTIPLE_USAGE = "unexpected_multiple_usage"
    MISSING_ARGUMENT_OR_SUBCOMMAND = "missing_argument_or_subcommand"
    HELP_DISPLAYED = "help_displayed"
    VERSION_DISPLAYED = "version_displayed"


class ConfigError(Exception):
    """Raised when the command line cannot be turned into a configuration."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class _Arg:
    name: str
    short: str | None = None
    long: str | None = None
    takes_value: bool = False
    default: str | None = None
    possible_values: tuple[str, ...] | None = None
    help: str = ""

    def display(self) -> str:
        parts = []
        if self.short:
            parts.append(f"-{self.short}")
        if self.long:
            parts.append(f"--{self.long}")
        text = ", ".join(parts)
        if self.takes_value:
            text += f" <{self.name}>"
        return text


@dataclass(frozen=True)
class _Subcommand:
    name: str
    about: str
    args: tuple[_Arg, ...]
    program: bool = False
    required: tuple[str, ...] = ()
    pid_unless_program: bool = False

    def by_long(self, long: str) -> _Arg | None:
        # the first definition wins when two arguments share a name
        return next((a for a in self.args if a.long == long), None)

    def by_short(self, short: str) -> _Arg | None:
        return next((a for a in self.args if a.short == short), None)

    def by_name(self, name: str) -> _Arg | None:
        return next((a for a in self.args if a.name == name), None)


_PID = _Arg("pid", "p", "pid", True, help="PID of a running python program to spy on")
_NATIVE = _Arg("native", "n", "native",
               help="Collect stack traces from native extensions written in Cython, C or C++")
_NONBLOCKING = _Arg("nonblocking", None, "nonblocking",
                    help="Don't pause the python process when collecting samples")
_RATE = _Arg("rate", "r", "rate", True, default="100",
             help="The number of samples to collect per second")
_IDLELIST = _Arg("idlelist", "i", "idle", True,
                 help="A list of functions representing the current thread is idle.")

_SUBCOMMANDS: tuple[_Subcommand, ...] = (
    _Subcommand(
        "record",
        "Records raw stack trace information to file",
        (
            _PID,
            _Arg("output", "o", "output", True, help="Output filename"),
            _Arg("format", "f", "format", True, default="flamegraph",
                 possible_values=tuple(f.value for f in FileFormat), help="Output file format"),
            _Arg("duration", "d", "duration", True, default="unlimited",
                 help="The number of seconds to sample for"),
            _RATE,
            _Arg("function", "F", "function",
                 help="Aggregate samples by function name instead of by line number"),
            _Arg("gil", "g", "gil", help="Only include traces that are holding on to the GIL"),
            _Arg("threads", "t", "threads", help="Show thread ids in the output"),
            _Arg("idle", "i", "idle", help="Include stack traces for idle threads"),
            _NATIVE,
            _NONBLOCKING,
            _IDLELIST,
        ),
        program=True,
        required=("output",),
        pid_unless_program=True,
    ),
    _Subcommand(
        "top",
        "Displays a top like view of functions consuming CPU",
        (_PID, _RATE, _NATIVE, _NONBLOCKING),
        program=True,
        pid_unless_program=True,
    ),
    _Subcommand(
        "dump",
        "Dumps stack traces for a target program to stdout",
        (_PID, _NATIVE, _NONBLOCKING),
        required=("pid",),
    ),
    _Subcommand(
        "display",
        "Shows the result in flamegraph or speedscope",
        (
            _Arg("flame", "g", "flame", True, help="Generate a flame graph from source file"),
            _Arg("start_timestamp", "s", "startts", True, default="0",
                 help="The value of starting timestamp for generating flame graph"),
            _Arg("end_timestamp", "e", "endts", True, default="2",
                 help="The value of ending timestamp for generating flame graph"),
        ),
    ),
)


@dataclass
class _Matches:
    subcommand: _Subcommand
    values: dict[str, str] = field(default_factory=dict)
    occurrences: Counter = field(default_factory=Counter)
    program: list[str] = field(default_factory=list)

    def value_of(self, name: str) -> str | None:
        if name in self.values:
            return self.values[name]
        arg = self.subcommand.by_name(name)
        return arg.default if arg is not None else None


def _help(sub: _Subcommand | None = None) -> str:
    if sub is None:
        lines = [f"{_PROGRAM_NAME} {_VERSION}", _DESCRIPTION, "",
                 f"USAGE:\n    {_PROGRAM_NAME} <SUBCOMMAND>", "", "SUBCOMMANDS:"]
        lines.extend(f"    {s.name:<10}{s.about}" for s in _SUBCOMMANDS)
        return "\n".join(lines)
    lines = [f"{_PROGRAM_NAME}-{sub.name}", sub.about, "",
             f"USAGE:\n    {_PROGRAM_NAME} {sub.name} [OPTIONS]"
             + (" [python_program]..." if sub.program else ""), "", "OPTIONS:"]
    lines.extend(f"    {a.display():<28}{a.help}" for a in sub.args)
    return "\n".join(lines)


def _resolve_subcommand(token: str) -> _Subcommand:
    for sub in _SUBCOMMANDS:
        if sub.name == token:
            return sub
    # prefixes are accepted; an ambiguous prefix goes to the first declared subcommand
    for sub in _SUBCOMMANDS:
        if token and sub.name.startswith(token):
            return sub
    raise ConfigError(ErrorKind.UNRECOGNIZED_SUBCOMMAND,
                      f"The subcommand '{token}' wasn't recognized")


def _store(matches: _Matches, arg: _Arg, value: str) -> None:
    if arg.name in matches.values:
        raise ConfigError(ErrorKind.UNEXPECTED_MULTIPLE_USAGE,
                          f"The argument '{arg.display()}' was provided more than once")
    if arg.possible_values is not None and value.lower() not in arg.possible_values:
        raise ConfigError(ErrorKind.INVALID_VALUE,
                          f"'{value}' isn't a valid value for '{arg.display()}' "
                          f"[possible values: {', '.join(arg.possible_values)}]")
    matches.values[arg.name] = value
    matches.occurrences[arg.name] += 1


def _next_value(pending: deque, arg: _Arg) -> str:
    if not pending:
        raise ConfigError(ErrorKind.EMPTY_VALUE,
                          f"The argument '{arg.display()}' requires a value but none was supplied")
    return pending.popleft()


def _parse(args: list[str]) -> _Matches:
    tokens = deque(args[1:])
    if not tokens:
        raise ConfigError(ErrorKind.MISSING_ARGUMENT_OR_SUBCOMMAND, _help())
    first = tokens.popleft()
    if first in ("-h", "--help"):
        raise ConfigError(ErrorKind.HELP_DISPLAYED, _help())
    if first in ("-V", "--version"):
        raise ConfigError(ErrorKind.VERSION_DISPLAYED, f"{_PROGRAM_NAME} {_VERSION}")
    if first.startswith("-"):
        raise ConfigError(ErrorKind.UNKNOWN_ARGUMENT, f"Found argument '{first}' which wasn't expected")
    sub = _resolve_subcommand(first)
    matches = _Matches(sub)

    while tokens:
        token = tokens.popleft()
        if token == "--":
            if not sub.program:
                raise ConfigError(ErrorKind.UNKNOWN_ARGUMENT,
                                  f"Found argument '{token}' which wasn't expected")
            matches.program.extend(tokens)
            tokens.clear()
        elif token.startswith("--"):
            name, sep, inline = token[2:].partition("=")
            if name == "help":
                raise ConfigError(ErrorKind.HELP_DISPLAYED, _help(sub))
            arg = sub.by_long(name)
            if arg is None:
                raise ConfigError(ErrorKind.UNKNOWN_ARGUMENT,
                                  f"Found argument '{token}' which wasn't expected")
            if arg.takes_value:
                _store(matches, arg, inline if sep else _next_value(tokens, arg))
            elif sep:
                raise ConfigError(ErrorKind.TOO_MANY_VALUES,
                                  f"The argument '{arg.display()}' takes no value")
            else:
                matches.occurrences[arg.name] += 1
        elif token.startswith("-") and len(token) > 1:
            chars = token[1:]
            for pos, char in enumerate(chars):
                if char == "h":
                    raise ConfigError(ErrorKind.HELP_DISPLAYED, _help(sub))
                arg = sub.by_short(char)
                if arg is None:
                    raise ConfigError(ErrorKind.UNKNOWN_ARGUMENT,
                                      f"Found argument '-{char}' which wasn't expected")
                if arg.takes_value:
                    rest = chars[pos + 1:].removeprefix("=")
                    _store(matches, arg, rest or _next_value(tokens, arg))
                    break
                matches.occurrences[arg.name] += 1
        elif sub.program:
            matches.program.append(token)
        else:
            raise ConfigError(ErrorKind.UNKNOWN_ARGUMENT,
                              f"Found argument '{token}' which wasn't expected")

    for name in sub.required:
        if name not in matches.values:
            raise ConfigError(ErrorKind.MISSING_REQUIRED_ARGUMENT,
                              f"The following required argument was not provided: {name}")
    if sub.pid_unless_program and "pid" not in matches.values and not matches.program:
        raise ConfigError(ErrorKind.MISSING_REQUIRED_ARGUMENT,
                          "The following required argument was not provided: --pid <pid>")
    return matches


def _parse_u64(text: str | None, name: str) -> int:
    if text is None or not (text.isascii() and text.isdigit()) or int(text) >= 2 ** 64:
        raise ConfigError(ErrorKind.VALUE_VALIDATION,
                          f"Invalid value for '{name}': '{text}' isn't a valid unsigned integer")
    return int(text)


def _parse_pid(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ConfigError(ErrorKind.VALUE_VALIDATION, f"invalid pid: '{text}'") from None


def _native_supported() -> bool:
    return not (sys.platform.startswith("linux") and struct.calcsize("P") == 4)


@dataclass
class Config:
    """Options on how to collect samples from a python process.

    ``duration`` is the number of seconds to record for, or None for no limit.
    """

    non_blocking: bool = False
    native: bool = False
    command: str = "top"
    pid: int | None = None
    python_program: list[str] | None = None
    sampling_rate: int = 100
    filename: str | None = None
    format: FileFormat | None = None
    idlelist: str | None = None
    show_line_numbers: bool = False
    duration: int | None = None
    include_idle: bool = False
    include_thread_ids: bool = False
    gil_only: bool = False
    start_ts: int = 0
    end_ts: int = 0
    data_file: str | None = None

    @classmethod
    def from_commandline(cls) -> Config:
        """Builds a configuration from sys.argv, exiting on a bad command line."""
        try:
            return cls.from_args(sys.argv)
        except ConfigError as err:
            if err.kind in (ErrorKind.HELP_DISPLAYED, ErrorKind.VERSION_DISPLAYED):
                print(err)
                sys.exit(0)
            print(f"error: {err}", file=sys.stderr)
            sys.exit(1)

    @classmethod
    def from_args(cls, args) -> Config:
        """Builds a configuration from an argument list whose first item is the program name."""
        matches = _parse(list(args))
        _log.info("Command line args: %r", matches)
        config = cls()
        name = matches.subcommand.name

        if name == "record":
            config.sampling_rate = _parse_u64(matches.value_of("rate"), "rate")
            duration = matches.value_of("duration")
            config.duration = (None if duration in (None, "unlimited")
                               else _parse_u64(duration, "duration"))
            config.format = FileFormat(matches.value_of("format").lower())
            config.filename = matches.value_of("output")
            config.idlelist = matches.value_of("idlelist")
        elif name == "top":
            config.sampling_rate = _parse_u64(matches.value_of("rate"), "rate")
        elif name == "display":
            config.start_ts = _parse_u64(matches.value_of("start_timestamp"), "start_timestamp")
            config.end_ts = _parse_u64(matches.value_of("end_timestamp"), "end_timestamp")
            config.data_file = matches.value_of("flame")
        config.command = name

        pid = matches.values.get("pid")
        config.pid = _parse_pid(pid) if pid is not None else None
        config.python_program = list(matches.program) if matches.program else None
        occurrences = matches.occurrences
        config.show_line_numbers = occurrences["function"] == 0
        config.include_idle = occurrences["idle"] > 0
        config.gil_only = occurrences["gil"] > 0
        config.include_thread_ids = occurrences["threads"] > 0
        config.non_blocking = occurrences["nonblocking"] > 0
        config.native = occurrences["native"] > 0

        if config.native and not _native_supported():
            _log.error("Native stack traces are not yet supported on this OS. Disabling")
            config.native = False
        if config.native and config.non_blocking:
            _log.error("Can't get native stack traces with the --nonblocking option. Disabling native.")
            config.native = False
        return config