"""Mapping generated Cython C/C++ code back to the .pyx sources."""

from __future__ import annotations

import bisect
import logging
import re
from functools import partial
from typing import Callable, Optional

_log = logging.getLogger(__name__)

_MARKER = re.compile(r'^\s*/\* "(.+\..+)":([0-9]+)')

_IGNORABLE = frozenset({
    "__Pyx_PyFunction_FastCallDict",
    "__Pyx_PyObject_CallOneArg",
    "__Pyx_PyObject_Call",
    "__pyx_FusedFunction_call",
})

_PREFIXES = (
    "__pyx_fuse_1_0__pyx_pw", "__pyx_pf", "__pyx_pw", "__pyx_f", "___pyx_f",
    "___pyx_pw", "use_0__pyx_f", "use_1__pyx_f",
)

_SEGMENT = re.compile(r"_([0-9]*)")

Resolver = Callable[[str], Optional[str]]


def _lines(contents: str) -> list[str]:
    lines = contents.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class SourceMap:
    """Maps line numbers of a generated C file to (cython file, cython line)."""

    def __init__(self, entries: dict[int, tuple[str, int]]) -> None:
        self._keys = sorted(entries)
        self._entries = entries

    @classmethod
    def from_contents(cls, contents: str, resolver: Resolver | None = None) -> SourceMap:
        """Builds a map from generated source text; resolver may rewrite cython filenames."""
        entries: dict[int, tuple[str, int]] = {}
        lines = _lines(contents)
        for lineno, line in enumerate(lines):
            match = _MARKER.match(line)
            if match is None:
                continue
            cython_file, cython_line = match.group(1), int(match.group(2))
            if cython_line >= 2 ** 32:
                continue
            filename = cython_file
            if resolver is not None:
                filename = resolver(cython_file) or cython_file
            entries[lineno] = (filename, cython_line)
        # end-of-file marker
        entries[len(lines) + 1] = ("", 0)
        return cls(entries)

    @classmethod
    def from_file(cls, filename: str, resolver: Resolver | None = None) -> SourceMap:
        """Builds a map from a generated C or C++ file on disk."""
        with open(filename, encoding="utf-8") as handle:
            return cls.from_contents(handle.read(), resolver)

    def lookup(self, lineno: int) -> tuple[str, int] | None:
        """Returns the cython location for the closest marker before lineno."""
        index = bisect.bisect_left(self._keys, lineno) - 1
        if index < 0:
            return None
        value = self._entries[self._keys[index]]
        return None if value[1] == 0 else value


class SourceMaps:
    """Caches source maps per generated file and rewrites frames with them.

    ``resolve_filename(cython_file, module)`` may turn a cython filename into a
    full path, given the frame's module.
    """

    def __init__(self, resolve_filename: Callable[[str, str], Optional[str]] | None = None) -> None:
        self._maps: dict[str, SourceMap | None] = {}
        self._resolve_filename = resolve_filename

    def translate(self, frame) -> None:
        """Replaces the frame's filename and line with the cython source location."""
        if self._translate_frame(frame):
            self._load_map(frame)
            self._translate_frame(frame)

    def _translate_frame(self, frame) -> bool:
        # returns True when no map has been loaded for this file yet
        if frame.line == 0:
            return False
        if frame.filename not in self._maps:
            return True
        source_map = self._maps[frame.filename]
        if source_map is not None:
            found = source_map.lookup(frame.line)
            if found is not None:
                frame.filename, frame.line = found
        return False

    def _load_map(self, frame) -> None:
        filename = frame.filename
        if not filename.endswith((".cpp", ".c")):
            self._maps[filename] = None
            return
        module = getattr(frame, "module", None)
        resolver = None
        if module is not None and self._resolve_filename is not None:
            resolver = partial(self._resolve_filename, module=module)
        try:
            self._maps[filename] = SourceMap.from_file(filename, resolver)
        except (OSError, UnicodeDecodeError) as err:
            _log.info("Failed to load cython file %s: %r", filename, err)
            self._maps[filename] = None


def ignore_frame(name: str) -> bool:
    """True for Cython helper functions that should not appear in stack traces."""
    return name in _IGNORABLE


def demangle(name: str) -> str:
    """Extracts the function name from a Cython mangled symbol."""
    prefix = next((p for p in _PREFIXES if name.startswith(p)), None)
    if prefix is None:
        return name
    current = name[len(prefix):]
    rest = current
    while True:
        match = _SEGMENT.match(rest)
        if match is None or not match.group(1):
            break
        digits = int(match.group(1))
        digit_index = match.end()
        current = rest[digit_index:]
        if digits + digit_index >= len(current):
            break
        rest = rest[digits + digit_index:]
    _log.debug('cython_demangle("%s") -> "%s"', name, current)
    return current