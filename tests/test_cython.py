from dataclasses import dataclass

import pytest

from samplespy.cython import SourceMap, SourceMaps, demangle, ignore_frame


@dataclass
class Frame:
    name: str
    filename: str
    line: int
    module: str | None = None


def _generated_source():
    lines = [f"int filler_{i};" for i in range(20)]
    lines[5] = '  /* "cython_test.pyx":6'
    lines[10] = '/* "cython_test.pyx":10'
    lines[15] = '    /* "cython_test.pyx":9'
    return "\n".join(lines) + "\n"


@pytest.mark.parametrize("mangled, expected", [
    ("__pyx_pf_8implicit_4_als_30_least_squares_cg", "_least_squares_cg"),
    ("__pyx_pw_8implicit_4_als_5least_squares_cg", "least_squares_cg"),
    ("__pyx_fuse_1_0__pyx_pw_8implicit_4_als_31_least_squares_cg", "_least_squares_cg"),
    ("__pyx_f_6mtrand_cont0_array", "mtrand_cont0_array"),
    ("use_1__pyx_f_8implicit_3bpr_has_non_zero", "bpr_has_non_zero"),
])
def test_demangle(mangled, expected):
    assert demangle(mangled) == expected


def test_demangle_leaves_plain_names():
    assert demangle("PyEval_EvalFrameEx") == "PyEval_EvalFrameEx"


def test_ignore_frame():
    assert ignore_frame("__Pyx_PyObject_Call") is True
    assert ignore_frame("__pyx_FusedFunction_call") is True
    assert ignore_frame("main") is False


def test_source_map():
    source_map = SourceMap.from_contents(_generated_source())
    assert source_map.lookup(3) is None
    assert source_map.lookup(5) is None
    assert source_map.lookup(10000) is None
    assert source_map.lookup(6) == ("cython_test.pyx", 6)
    assert source_map.lookup(11) == ("cython_test.pyx", 10)
    assert source_map.lookup(16) == ("cython_test.pyx", 9)
    assert source_map.lookup(21) == ("cython_test.pyx", 9)
    assert source_map.lookup(22) is None


def test_source_map_resolver():
    source_map = SourceMap.from_contents(_generated_source(), lambda f: "/src/" + f)
    assert source_map.lookup(7) == ("/src/cython_test.pyx", 6)


def test_source_map_resolver_falls_back():
    source_map = SourceMap.from_contents(_generated_source(), lambda f: None)
    assert source_map.lookup(7) == ("cython_test.pyx", 6)


def test_translate_frame(tmp_path):
    path = tmp_path / "cython_test.c"
    path.write_text(_generated_source())
    maps = SourceMaps()
    frame = Frame("func", str(path), 12)
    maps.translate(frame)
    assert (frame.filename, frame.line) == ("cython_test.pyx", 10)

    second = Frame("other", str(path), 17)
    maps.translate(second)
    assert (second.filename, second.line) == ("cython_test.pyx", 9)


def test_translate_uses_module_resolver(tmp_path):
    path = tmp_path / "cython_test.cpp"
    path.write_text(_generated_source())
    maps = SourceMaps(lambda f, module: f"{module}/{f}")
    frame = Frame("func", str(path), 7, module="/lib/mod.so")
    maps.translate(frame)
    assert (frame.filename, frame.line) == ("/lib/mod.so/cython_test.pyx", 6)


def test_translate_ignores_other_files(tmp_path):
    maps = SourceMaps()
    frame = Frame("func", "script.py", 12)
    maps.translate(frame)
    assert (frame.filename, frame.line) == ("script.py", 12)


def test_translate_missing_file(tmp_path):
    missing = str(tmp_path / "missing.c")
    maps = SourceMaps()
    frame = Frame("func", missing, 12)
    maps.translate(frame)
    assert (frame.filename, frame.line) == (missing, 12)


def test_translate_line_zero(tmp_path):
    path = tmp_path / "cython_test.c"
    path.write_text(_generated_source())
    maps = SourceMaps()
    frame = Frame("func", str(path), 0)
    maps.translate(frame)
    assert (frame.filename, frame.line) == (str(path), 0)