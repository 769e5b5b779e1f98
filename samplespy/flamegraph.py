"""Aggregation of sampled stack traces into time-bucketed flame graphs."""

from __future__ import annotations

import json
import os
import sys
import zlib
from dataclasses import dataclass, field
from typing import IO, Iterator
from xml.sax.saxutils import escape, quoteattr

_IMAGE_WIDTH = 1200
_FRAME_HEIGHT = 16
_FONT_SIZE = 12
_FONT_WIDTH = 0.59
_XPAD = 10
_YPAD_TOP = _FONT_SIZE * 3
_YPAD_BOTTOM = _FONT_SIZE * 2 + 10
_MIN_WIDTH = 1.0
_TITLE = "samplespy"


def _frame_label(frame, show_linenumbers: bool) -> str:
    short = getattr(frame, "short_filename", None)
    filename = short if short is not None else frame.filename
    if show_linenumbers and frame.line != 0:
        return f"{frame.name} ({filename}:{frame.line})"
    return f"{frame.name} ({filename})"


@dataclass
class _Node:
    name: str
    total: int = 0
    children: dict[str, _Node] = field(default_factory=dict)


def _build_tree(lines: list[str]) -> _Node:
    root = _Node("all")
    for line in lines:
        stack, _, count_text = line.rpartition(" ")
        count = int(count_text)
        root.total += count
        node = root
        for name in (n for n in stack.split(";") if n):
            node = node.children.setdefault(name, _Node(name))
            node.total += count
    return root


def _layout(root: _Node) -> Iterator[tuple[_Node, int, int]]:
    """Yields (node, depth, start offset in samples), parents before children."""
    pending = [(root, 0, 0)]
    while pending:
        node, depth, start = pending.pop()
        yield node, depth, start
        placed = []
        offset = start
        for name in sorted(node.children):
            child = node.children[name]
            placed.append((child, depth + 1, offset))
            offset += child.total
        pending.extend(reversed(placed))


def _color(name: str) -> str:
    digest = zlib.crc32(name.encode("utf-8"))
    v1 = (digest & 0xFF) / 255.0
    v2 = ((digest >> 8) & 0xFF) / 255.0
    v3 = ((digest >> 16) & 0xFF) / 255.0
    red = 205 + int(50 * v3)
    green = int(230 * v1)
    blue = int(55 * v2)
    return f"rgb({red},{green},{blue})"


def _fit_label(name: str, width: float) -> str:
    chars = int(width / (_FONT_SIZE * _FONT_WIDTH))
    if chars < 3:
        return ""
    if len(name) > chars:
        return name[: chars - 2] + ".."
    return name


def _render_svg(lines: list[str]) -> str:
    root = _build_tree(lines)
    if root.total == 0:
        raise ValueError("Failed to write flamegraph: No stack counts found")
    per_sample = (_IMAGE_WIDTH - 2 * _XPAD) / root.total
    frames = [(node, depth, start) for node, depth, start in _layout(root)
              if node.total * per_sample >= _MIN_WIDTH]
    max_depth = max(depth for _, depth, _ in frames)
    height = (max_depth + 1) * _FRAME_HEIGHT + _YPAD_TOP + _YPAD_BOTTOM

    out = [
        '<?xml version="1.0" standalone="no"?>',
        f'<svg version="1.1" width="{_IMAGE_WIDTH}" height="{height}" '
        f'viewBox="0 0 {_IMAGE_WIDTH} {height}" xmlns="http://www.w3.org/2000/svg">',
        f'<rect x="0" y="0" width="100%" height="100%" fill="rgb(248,248,248)"/>',
        f'<text x="{_IMAGE_WIDTH / 2:.1f}" y="{_FONT_SIZE * 2}" text-anchor="middle" '
        f'font-family="Verdana" font-size="{_FONT_SIZE + 5}">{escape(_TITLE)}</text>',
    ]
    for node, depth, start in frames:
        x = _XPAD + start * per_sample
        y = _YPAD_TOP + depth * _FRAME_HEIGHT
        width = node.total * per_sample
        percent = 100.0 * node.total / root.total
        title = f"{node.name} ({node.total:,} samples, {percent:.2f}%)"
        out.append('<g class="frame">')
        out.append(f"<title>{escape(title)}</title>")
        out.append(f'<rect x="{x:.2f}" y="{y}" width="{width:.2f}" '
                   f'height="{_FRAME_HEIGHT - 1}" fill={quoteattr(_color(node.name))} '
                   f'rx="2" ry="2"/>')
        out.append(f'<text x="{x + 3:.2f}" y="{y + 10.5:.1f}" font-family="Verdana" '
                   f'font-size="{_FONT_SIZE}">{escape(_fit_label(node.name, width))}</text>')
        out.append("</g>")
    out.append("</svg>")
    return "\n".join(out) + "\n"


class Flamegraph:
    """Counts of folded stacks, bucketed by sample timestamp."""

    def __init__(self, show_linenumbers: bool) -> None:
        self.show_linenumbers = show_linenumbers
        self.counts: dict[str, dict[int, int]] = {}

    def increment(self, time_stamp: int, trace) -> None:
        """Counts one stack trace seen at time_stamp."""
        stack = ";".join(_frame_label(frame, self.show_linenumbers)
                         for frame in reversed(trace.frames))
        buckets = self.counts.setdefault(stack, {})
        buckets[time_stamp] = buckets.get(time_stamp, 0) + 1

    def output_raw_data(self, filename) -> None:
        """Writes the raw counts to filename as JSON."""
        data = {
            "counts": {stack: {str(ts): n for ts, n in sorted(buckets.items())}
                       for stack, buckets in self.counts.items()},
            "show_linenumbers": self.show_linenumbers,
        }
        with open(filename, "w", encoding="utf-8") as handle:
            json.dump(data, handle)

    @classmethod
    def from_raw_data(cls, filename) -> Flamegraph:
        """Loads counts written by output_raw_data."""
        with open(filename, encoding="utf-8") as handle:
            data = json.load(handle)
        try:
            graph = cls(bool(data["show_linenumbers"]))
            graph.counts = {stack: {int(ts): int(n) for ts, n in buckets.items()}
                            for stack, buckets in data["counts"].items()}
        except (KeyError, TypeError, AttributeError, ValueError) as err:
            raise ValueError(f"invalid raw flamegraph data in {filename}: {err}") from None
        return graph

    def filter_records(self, start_ts: int, end_ts: int) -> dict[str, int]:
        """Sums each stack's counts with timestamps in [start_ts, end_ts)."""
        if start_ts >= end_ts:
            print(f"Error: Invalid time interval [{start_ts}, {end_ts})", file=sys.stderr)
            return {}
        result = {}
        for stack, buckets in self.counts.items():
            total = sum(n for ts, n in buckets.items() if start_ts <= ts < end_ts)
            if total > 0:
                result[stack] = total
        return result

    def folded_lines(self, start_ts: int, end_ts: int) -> list[str]:
        """Returns 'stack count' lines for the interval, sorted by stack."""
        records = self.filter_records(start_ts, end_ts)
        return [f"{stack} {count}" for stack, count in sorted(records.items())]

    def write(self, file: str | os.PathLike | IO[str], start_ts: int, end_ts: int) -> None:
        """Writes an SVG flame graph of the interval to a path or text stream."""
        svg = _render_svg(self.folded_lines(start_ts, end_ts))
        if isinstance(file, (str, os.PathLike)):
            with open(file, "w", encoding="utf-8") as handle:
                handle.write(svg)
        else:
            file.write(svg)