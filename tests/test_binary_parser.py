import struct

import pytest

from samplespy.binary_parser import BinaryInfo, BinaryParseError, parse_binary

LOAD_ADDR = 0x7F0000000000


def build_elf(executable=True, with_bss=True):
    strtab = b"\0main\0counter\0"
    syms = (
        struct.pack("<IBBHQQ", 0, 0, 0, 0, 0, 0)
        + struct.pack("<IBBHQQ", 1, 0x12, 0, 1, 0x401000, 0x10)
        + struct.pack("<IBBHQQ", 6, 0x11, 0, 2, 0x601020, 8)
    )
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    ehdr = ident + struct.pack("<HHIQQQIHHHHHH", 2, 62, 1, 0, 64, 208, 0, 64, 56, 1, 64, 4, 0)
    flags = 5 if executable else 4
    phdr = struct.pack("<IIQQQQQQ", 1, flags, 0, 0x400000, 0x400000, 0x1000, 0x1000, 0x1000)
    body = ehdr + phdr + strtab
    body += bytes(136 - len(body)) + syms
    assert len(body) == 208
    bss_type = 8 if with_bss else 1
    shdrs = (
        bytes(64)
        + struct.pack("<IIQQQQIIQQ", 0, bss_type, 3, 0x601000, 0x1000, 0x40, 0, 0, 16, 0)
        + struct.pack("<IIQQQQIIQQ", 0, 2, 0, 0, 136, 72, 3, 1, 8, 24)
        + struct.pack("<IIQQQQIIQQ", 0, 3, 0, 0, 120, len(strtab), 0, 0, 1, 0)
    )
    return body + shdrs


def build_macho():
    segment = struct.pack("<II16sQQQQIIII", 0x19, 152, b"__DATA", 0x1000, 0x1000, 0, 0, 3, 3, 1, 0)
    section = struct.pack("<16s16sQQIIIIIIII", b"__bss", b"__DATA", 0x2000, 0x80,
                          0, 0, 0, 0, 1, 0, 0, 0)
    strtab = b"\0_main\0helper\0"
    symtab = struct.pack("<IIIIII", 2, 24, 208, 2, 240, len(strtab))
    header = struct.pack("<IIIIIIII", 0xFEEDFACF, 0x01000007, 3, 2, 2, 176, 0, 0)
    nlists = struct.pack("<IBBHQ", 1, 0x0F, 1, 0, 0x100) + struct.pack("<IBBHQ", 7, 0x0F, 1, 0, 0x200)
    data = header + segment + section + symtab + nlists + strtab
    assert len(header + segment + section + symtab) == 208
    return data


def build_fat(include_64=True):
    thin = build_macho()
    arches = [struct.pack(">IIIII", 7, 3, 4096, len(thin), 12)]
    if include_64:
        arches.append(struct.pack(">IIIII", 0x01000007, 3, 8192, len(thin), 12))
    header = struct.pack(">II", 0xCAFEBABE, len(arches)) + b"".join(arches)
    data = bytearray(8192 + len(thin))
    data[: len(header)] = header
    data[4096:4096 + 16] = b"\xff" * 16
    data[8192:] = thin
    return bytes(data)


def build_pe(data_name=b".data"):
    out = bytearray(0x800)
    out[0:2] = b"MZ"
    struct.pack_into("<I", out, 0x3C, 64)
    out[64:68] = b"PE\0\0"
    struct.pack_into("<HHIIIHH", out, 68, 0x8664, 2, 0, 0, 0, 240, 0x22)
    optional = 88
    struct.pack_into("<H", out, optional, 0x20B)
    struct.pack_into("<I", out, optional + 108, 16)
    struct.pack_into("<II", out, optional + 112, 0x2000, 0x100)
    sections = optional + 240
    struct.pack_into("<8sIIIIIIHHI", out, sections, b".text", 0x1000, 0x1000, 0x200, 0x400,
                     0, 0, 0, 0, 0)
    struct.pack_into("<8sIIIIIIHHI", out, sections + 40, data_name, 0x300, 0x2000, 0x200, 0x600,
                     0, 0, 0, 0, 0)
    struct.pack_into("<IIHHIIIIIII", out, 0x600, 0, 0, 0, 0, 0x2060, 1, 1, 1,
                     0x2028, 0x202C, 0x2030)
    struct.pack_into("<I", out, 0x628, 0x1010)
    struct.pack_into("<I", out, 0x62C, 0x2040)
    struct.pack_into("<H", out, 0x630, 0)
    name = b"PyInit_demo\0"
    out[0x640:0x640 + len(name)] = name
    dll = b"demo.pyd\0"
    out[0x660:0x660 + len(dll)] = dll
    return bytes(out)


@pytest.fixture
def write(tmp_path):
    def _write(data, name="binary"):
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _write


def test_elf_symbols_and_bss(write):
    path = write(build_elf())
    info = parse_binary(path, LOAD_ADDR, 0x2000)
    offset = LOAD_ADDR - 0x400000
    assert info.offset == offset
    assert info.addr == LOAD_ADDR
    assert info.size == 0x2000
    assert info.filename == path
    assert info.symbols["main"] == 0x401000 + offset
    assert info.symbols["counter"] == 0x601020 + offset
    assert info.symbols[""] == offset
    assert info.bss_addr == 0x601000 + offset
    assert info.bss_size == 0x40


def test_elf_without_bss_fails(write):
    path = write(build_elf(with_bss=False))
    with pytest.raises(BinaryParseError, match="Failed to find BSS section header"):
        parse_binary(path, LOAD_ADDR, 0x2000)


def test_elf_without_executable_load_fails(write):
    path = write(build_elf(executable=False))
    with pytest.raises(BinaryParseError, match="Failed to find executable PT_LOAD program header"):
        parse_binary(path, LOAD_ADDR, 0x2000)


def test_elf_offset_wraps_to_64_bits(write):
    info = parse_binary(write(build_elf()), 0x1000, 0x10)
    assert info.offset == (0x1000 - 0x400000) % 2 ** 64
    assert info.symbols["main"] == (0x401000 + 0x1000 - 0x400000) % 2 ** 64


def test_macho_strips_underscore(write):
    info = parse_binary(write(build_macho()), LOAD_ADDR, 0x3000)
    assert info.symbols == {"main": 0x100 + LOAD_ADDR}
    assert info.offset == LOAD_ADDR
    assert info.bss_addr == 0x2000 + LOAD_ADDR
    assert info.bss_size == 0x80


def test_fat_archive_uses_64_bit_arch(write):
    thin = parse_binary(write(build_macho(), "thin"), LOAD_ADDR, 0x3000)
    fat = parse_binary(write(build_fat(), "fat"), LOAD_ADDR, 0x3000)
    assert fat.symbols == thin.symbols
    assert (fat.bss_addr, fat.bss_size) == (thin.bss_addr, thin.bss_size)


def test_fat_archive_without_64_bit_arch(write):
    path = write(build_fat(include_64=False))
    with pytest.raises(BinaryParseError, match="Failed to find 64 bit arch in FAT archive"):
        parse_binary(path, LOAD_ADDR, 0x3000)


def test_pe_exports_and_data_section(write):
    info = parse_binary(write(build_pe()), LOAD_ADDR, 0x3000)
    assert info.symbols == {"PyInit_demo": 0x410 + LOAD_ADDR}
    assert info.bss_addr == 0x2000 + LOAD_ADDR
    assert info.bss_size == 0x300
    assert info.offset == LOAD_ADDR


def test_pe_without_data_section(write):
    path = write(build_pe(data_name=b".rdata"))
    with pytest.raises(BinaryParseError, match=r"Failed to find \.data section in PE binary"):
        parse_binary(path, LOAD_ADDR, 0x3000)


def test_unhandled_binary(write):
    with pytest.raises(BinaryParseError, match="Unhandled binary type"):
        parse_binary(write(b"just some text, not a binary"), 0, 0)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_binary(str(tmp_path / "absent"), 0, 0)


def test_truncated_elf(write):
    with pytest.raises(BinaryParseError):
        parse_binary(write(build_elf()[:100]), LOAD_ADDR, 0x10)


@pytest.mark.parametrize("addr,expected", [
    (0x1000, True), (0x1FFF, True), (0x2000, False), (0xFFF, False),
])
def test_contains(addr, expected):
    info = BinaryInfo("lib", {}, 0, 0, 0, 0x1000, 0x1000)
    assert info.contains(addr) is expected