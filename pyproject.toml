[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "samplespy"
version = "0.1.0"
description = "Building blocks for a sampling profiler: argument parsing, sample aggregation, flame graphs, Cython source maps, binary inspection and compact unwinding."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "profiler",
    "sampling",
    "flamegraph",
    "cython",
    "stack-trace",
    "unwinding",
    "mach-o",
    "elf",
    "pe",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["samplespy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
