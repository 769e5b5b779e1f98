# samplespy

Pure-Python building blocks for a sampling profiler of Python programs. The
package turns collected stack samples into a live table or a flame graph, maps
frames in generated Cython code back to `.pyx` lines, and provides the decoders
needed to walk native stacks. It needs nothing outside the standard library.

## Modules

| Module | Purpose |
| --- | --- |
| `samplespy.config` | Parses the `record`, `top`, `dump` and `display` sub-commands into a `Config`; bad command lines raise `ConfigError` with an `ErrorKind`. |
| `samplespy.cython` | `SourceMap` / `SourceMaps` map lines of generated Cython C/C++ files to `.pyx` locations; `demangle` extracts function names from Cython symbols; `ignore_frame` recognises Cython helper frames. |
| `samplespy.console_viewer` | `ConsoleViewer`, a `top`-like live view of sampled functions, with `Options`, `Stats`, `FunctionStatistics`, `update_function_statistics` and `display_time`. |
| `samplespy.flamegraph` | `Flamegraph` counts folded stacks per timestamp, saves and reloads the raw counts as JSON, filters them to a time window, produces folded lines and writes an SVG flame graph. |
| `samplespy.syscalls` | `lookup_syscall` and `is_waiting_syscall` identify waiting system calls on 64-bit Windows builds. |
| `samplespy.binary_parser` | `parse_binary` reads symbols and the BSS range from ELF, Mach-O (including FAT) and PE files into a `BinaryInfo`; failures raise `BinaryParseError`. |
| `samplespy.compact_unwind` | Decodes Mach-O `__unwind_info` sections (`get_compact_unwind_info`) and applies compact encodings to a `Registers` set (`compact_unwind`). |

## Examples

Parsing a command line (the first item is the program name; sub-commands may be
abbreviated):

```python
from samplespy.config import Config, ConfigError, ErrorKind, FileFormat

config = Config.from_args(["samplespy", "record", "--pid", "1234", "--output", "profile.svg"])
assert config.command == "record"
assert config.pid == 1234
assert config.format is FileFormat.FLAMEGRAPH

try:
    Config.from_args(["samplespy", "record", "-o", "profile.svg"])
except ConfigError as err:
    assert err.kind is ErrorKind.MISSING_REQUIRED_ARGUMENT
```

`Config.from_commandline()` does the same with `sys.argv`, printing the error
or help text and exiting.

Cleaning up Cython frames:

```python
from samplespy.cython import SourceMaps, demangle, ignore_frame

demangle("__pyx_pw_8implicit_4_als_5least_squares_cg")  # "least_squares_cg"
ignore_frame("__Pyx_PyObject_Call")                     # True

maps = SourceMaps()
maps.translate(frame)  # rewrites frame.filename / frame.line if a .c/.cpp map applies
```

Frames are any objects with `name`, `filename`, `line` and optionally
`short_filename` and `module`; traces have `frames`, `active` and `owns_gil`.

Building a flame graph over a time window:

```python
from samplespy.flamegraph import Flamegraph

flame = Flamegraph(show_linenumbers=True)
# flame.increment(timestamp, trace) for every sample
flame.output_raw_data("samples.json")

reloaded = Flamegraph.from_raw_data("samples.json")
reloaded.filter_records(0, 10)         # {folded stack: count} for [0, 10)
reloaded.folded_lines(0, 10)           # ["a (x.py:1);b (x.py:2) 3", ...]
reloaded.write("profile.svg", 0, 10)   # SVG; a path or a text stream
```

A live view (`sampling_rate` is the time between samples, in seconds):

```python
from samplespy.console_viewer import ConsoleViewer

with ConsoleViewer(True, "python app.py", "3.11", 0.01) as viewer:
    viewer.increment(traces)      # once per sample
    viewer.increment_error(err)   # when a sample fails
```

Keys `1`–`4` choose the sort column, `L` toggles line/function aggregation,
`R` resets, `?` and `X` show and hide help.

Checking whether a Windows thread is waiting:

```python
from samplespy.syscalls import Syscall, is_waiting_syscall, lookup_syscall

syscall = lookup_syscall(10, 0, 18362, 4)
assert syscall is Syscall.NtWaitForSingleObject
assert is_waiting_syscall(syscall)
```

Compact unwinding, where `process.read(addr, size)` returns target memory:

```python
from samplespy.compact_unwind import Registers, compact_unwind, get_compact_unwind_info, get_dwarf_offset

info = get_compact_unwind_info(unwind_section_bytes, image_address, pc)
if get_dwarf_offset(info.encoding) is None:
    compact_unwind(info, registers, process)  # updates registers in place
```

## What the package does not do

It does not attach to processes, read their memory, suspend threads or collect
samples; callers supply the stack traces and a memory-reading object. There is
no installed command: `Config` only parses arguments. The `speedscope` value of
`FileFormat` is accepted by the parser, but nothing writes that format, and
DWARF-based unwinding is not provided.

## Running the tests

Install the package with its `test` extra and run `pytest` from the project root.