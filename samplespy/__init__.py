"""Building blocks for a sampling profiler: argument parsing, sample views, flame graphs,
Cython source maps, binary symbol reading and compact unwinding."""

__version__ = "0.1.0"