"""Reading symbol tables and BSS locations out of ELF, Mach-O and PE binaries."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

_U64 = (1 << 64) - 1

# ELF
_SHT_SYMTAB = 2
_SHT_NOBITS = 8
_PT_LOAD = 1
_PF_X = 1

# Mach-O
_MH_MAGIC = 0xFEEDFACE
_MH_MAGIC_64 = 0xFEEDFACF
_FAT_MAGIC = 0xCAFEBABE
_CPU_ARCH_ABI64 = 0x01000000
_LC_SEGMENT = 0x1
_LC_SYMTAB = 0x2
_LC_SEGMENT_64 = 0x19

# PE
_PE32_MAGIC = 0x10B
_PE32_PLUS_MAGIC = 0x20B


class BinaryParseError(ValueError):
    """Raised when a binary cannot be parsed or lacks a required section."""


@dataclass
class BinaryInfo:
    """Symbols and BSS location of a binary loaded at ``addr``, adjusted by ``offset``."""

    filename: str
    symbols: dict[str, int] = field(default_factory=dict)
    bss_addr: int = 0
    bss_size: int = 0
    offset: int = 0
    addr: int = 0
    size: int = 0

    def contains(self, addr: int) -> bool:
        """True when addr lies inside the loaded image."""
        return self.addr <= addr < self.addr + self.size


def _unpack(fmt: str, data, offset: int) -> tuple:
    if offset < 0:
        raise BinaryParseError(f"invalid offset {offset}")
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as err:
        raise BinaryParseError(f"truncated binary: {err}") from None


def _cstr(data, offset: int) -> str:
    if offset < 0 or offset > len(data):
        raise BinaryParseError(f"string offset {offset} out of range")
    end = bytes(data).find(b"\0", offset) if not isinstance(data, bytes) else data.find(b"\0", offset)
    if end < 0:
        end = len(data)
    return bytes(data[offset:end]).decode("utf-8", errors="replace")


def parse_binary(filename: str, addr: int, size: int) -> BinaryInfo:
    """Parses a binary file loaded at addr, returning its symbols and BSS location."""
    with open(filename, "rb") as handle:
        data = handle.read()

    if data[:4] == b"\x7fELF":
        return _parse_elf(data, filename, addr, size)
    if len(data) >= 4:
        (magic_be,) = struct.unpack_from(">I", data, 0)
        (magic_le,) = struct.unpack_from("<I", data, 0)
        if magic_be == _FAT_MAGIC:
            return _parse_fat(data, filename, addr, size)
        if magic_le in (_MH_MAGIC, _MH_MAGIC_64) or magic_be in (_MH_MAGIC, _MH_MAGIC_64):
            return _parse_macho(data, filename, addr, size)
    if data[:2] == b"MZ":
        return _parse_pe(data, filename, addr, size)
    raise BinaryParseError("Unhandled binary type")


def _parse_fat(data: bytes, filename: str, addr: int, size: int) -> BinaryInfo:
    (count,) = _unpack(">I", data, 4)
    for index in range(count):
        try:
            cputype, _, arch_offset, arch_size, _ = _unpack(">IIIII", data, 8 + 20 * index)
        except BinaryParseError:
            continue
        if cputype & _CPU_ARCH_ABI64:
            if arch_offset + arch_size > len(data):
                raise BinaryParseError(f"FAT arch out of bounds in {filename}")
            return _parse_macho(data[arch_offset:arch_offset + arch_size], filename, addr, size)
    raise BinaryParseError(f"Failed to find 64 bit arch in FAT archive in {filename}")


def _parse_macho(data: bytes, filename: str, addr: int, size: int) -> BinaryInfo:
    offset = addr
    (magic,) = _unpack("<I", data, 0)
    if magic in (_MH_MAGIC, _MH_MAGIC_64):
        endian = "<"
    else:
        endian = ">"
        (magic,) = _unpack(">I", data, 0)
        if magic not in (_MH_MAGIC, _MH_MAGIC_64):
            raise BinaryParseError(f"invalid Mach-O magic in {filename}")
    is64 = magic == _MH_MAGIC_64
    ncmds = _unpack(endian + "I", data, 16)[0]
    pos = 32 if is64 else 28

    bss_addr = 0
    bss_size = 0
    raw_symbols: list[tuple[str, int]] = []

    for _ in range(ncmds):
        cmd, cmdsize = _unpack(endian + "II", data, pos)
        if cmdsize < 8:
            raise BinaryParseError(f"malformed load command in {filename}")
        if cmd in (_LC_SEGMENT, _LC_SEGMENT_64):
            wide = cmd == _LC_SEGMENT_64
            nsects_at = pos + (64 if wide else 48)
            (nsects,) = _unpack(endian + "I", data, nsects_at)
            section_pos = pos + (72 if wide else 56)
            for _ in range(nsects):
                name = bytes(data[section_pos:section_pos + 16]).split(b"\0", 1)[0]
                fmt = endian + ("QQ" if wide else "II")
                section_addr, section_size = _unpack(fmt, data, section_pos + 32)
                if name == b"__bss":
                    bss_addr = (section_addr + offset) & _U64
                    bss_size = section_size
                section_pos += 80 if wide else 68
        elif cmd == _LC_SYMTAB:
            symoff, nsyms, stroff, _ = _unpack(endian + "IIII", data, pos + 8)
            entry_size = 16 if is64 else 12
            fmt = endian + ("IBBHQ" if is64 else "IBBhI")
            for index in range(nsyms):
                strx, _, _, _, value = _unpack(fmt, data, symoff + index * entry_size)
                raw_symbols.append((_cstr(data, stroff + strx), value))
        pos += cmdsize

    # most interesting symbols carry an extra leading '_'; strip it to match other platforms
    symbols = {name[1:]: (value + offset) & _U64
               for name, value in raw_symbols if name.startswith("_")}
    return BinaryInfo(filename, symbols, bss_addr, bss_size, offset, addr, size)


@dataclass(frozen=True)
class _ElfSection:
    type: int
    addr: int
    offset: int
    size: int
    link: int
    entsize: int


def _parse_elf(data: bytes, filename: str, addr: int, size: int) -> BinaryInfo:
    ei_class, ei_data = data[4], data[5]
    if ei_data == 1:
        endian = "<"
    elif ei_data == 2:
        endian = ">"
    else:
        raise BinaryParseError(f"invalid ELF data encoding in {filename}")
    if ei_class == 2:
        header = _unpack(endian + "HHIQQQIHHHHHH", data, 16)
    elif ei_class == 1:
        header = _unpack(endian + "HHIIIIIHHHHHH", data, 16)
    else:
        raise BinaryParseError(f"invalid ELF class in {filename}")
    is64 = ei_class == 2
    phoff, shoff = header[4], header[5]
    phentsize, phnum, shentsize, shnum = header[8], header[9], header[10], header[11]

    sections = []
    for index in range(shnum):
        at = shoff + index * shentsize
        if is64:
            _, kind, _, s_addr, s_offset, s_size, link, _, _, entsize = _unpack(
                endian + "IIQQQQIIQQ", data, at)
        else:
            _, kind, _, s_addr, s_offset, s_size, link, _, _, entsize = _unpack(
                endian + "IIIIIIIIII", data, at)
        sections.append(_ElfSection(kind, s_addr, s_offset, s_size, link, entsize))

    loads = []
    for index in range(phnum):
        at = phoff + index * phentsize
        if is64:
            p_type, p_flags, _, p_vaddr = _unpack(endian + "IIQQ", data, at)
        else:
            p_type, _, p_vaddr, _, _, _, p_flags, _ = _unpack(endian + "IIIIIIII", data, at)
        loads.append((p_type, p_flags, p_vaddr))

    bss = next((s for s in sections if s.type == _SHT_NOBITS), None)
    if bss is None:
        raise BinaryParseError(f"Failed to find BSS section header in {filename}")
    program = next((p for p in loads if p[0] == _PT_LOAD and p[1] & _PF_X), None)
    if program is None:
        raise BinaryParseError(f"Failed to find executable PT_LOAD program header in {filename}")

    offset = (addr - program[2]) & _U64

    symbols: dict[str, int] = {}
    symtab = next((s for s in sections if s.type == _SHT_SYMTAB), None)
    if symtab is not None:
        if symtab.link >= len(sections):
            raise BinaryParseError(f"invalid symbol string table in {filename}")
        strtab = sections[symtab.link]
        entsize = symtab.entsize or (24 if is64 else 16)
        for index in range(symtab.size // entsize):
            at = symtab.offset + index * entsize
            if is64:
                name_index, _, _, _, value, _ = _unpack(endian + "IBBHQQ", data, at)
            else:
                name_index, value, _, _, _, _ = _unpack(endian + "IIIBBH", data, at)
            name = _cstr(data, strtab.offset + name_index)
            symbols[name] = (value + offset) & _U64

    return BinaryInfo(filename, symbols, (bss.addr + offset) & _U64, bss.size, offset, addr, size)


@dataclass(frozen=True)
class _PeSection:
    name: bytes
    virtual_size: int
    virtual_address: int
    raw_size: int
    raw_pointer: int


def _rva_to_offset(sections: list[_PeSection], rva: int) -> int | None:
    for section in sections:
        extent = max(section.virtual_size, section.raw_size)
        if section.virtual_address <= rva < section.virtual_address + extent:
            return rva - section.virtual_address + section.raw_pointer
    return None


def _parse_pe(data: bytes, filename: str, addr: int, size: int) -> BinaryInfo:
    offset = addr
    (pe_offset,) = _unpack("<I", data, 0x3C)
    if data[pe_offset:pe_offset + 4] != b"PE\0\0":
        raise BinaryParseError(f"invalid PE signature in {filename}")
    _, nsections, _, _, _, optional_size, _ = _unpack("<HHIIIHH", data, pe_offset + 4)
    optional = pe_offset + 24
    (magic,) = _unpack("<H", data, optional)
    if magic == _PE32_PLUS_MAGIC:
        count_at, directories_at = optional + 108, optional + 112
    elif magic == _PE32_MAGIC:
        count_at, directories_at = optional + 92, optional + 96
    else:
        raise BinaryParseError(f"invalid PE optional header in {filename}")

    sections = []
    section_at = optional + optional_size
    for index in range(nsections):
        name, vsize, vaddr, raw_size, raw_pointer = _unpack(
            "<8sIIII", data, section_at + 40 * index)
        sections.append(_PeSection(name, vsize, vaddr, raw_size, raw_pointer))

    symbols: dict[str, int] = {}
    (directory_count,) = _unpack("<I", data, count_at)
    if directory_count > 0:
        export_rva, _ = _unpack("<II", data, directories_at)
        if export_rva:
            for name, export_offset in _pe_exports(data, sections, export_rva, filename):
                symbols[name] = (export_offset + offset) & _U64

    data_section = next((s for s in sections if s.name.startswith(b".data")), None)
    if data_section is None:
        raise BinaryParseError("Failed to find .data section in PE binary")
    bss_addr = (data_section.virtual_address + offset) & _U64
    return BinaryInfo(filename, symbols, bss_addr, data_section.virtual_size, offset, addr, size)


def _pe_exports(data: bytes, sections: list[_PeSection], export_rva: int, filename: str):
    def located(rva: int) -> int:
        position = _rva_to_offset(sections, rva)
        if position is None:
            raise BinaryParseError(f"export table address 0x{rva:x} outside sections in {filename}")
        return position

    directory = located(export_rva)
    (_, _, _, _, _, _, function_count, name_count,
     functions_rva, names_rva, ordinals_rva) = _unpack("<IIHHIIIIIII", data, directory)
    if name_count == 0:
        return
    functions = located(functions_rva)
    names = located(names_rva)
    ordinals = located(ordinals_rva)
    for index in range(name_count):
        (name_rva,) = _unpack("<I", data, names + 4 * index)
        (ordinal,) = _unpack("<H", data, ordinals + 2 * index)
        if ordinal >= function_count:
            continue
        (function_rva,) = _unpack("<I", data, functions + 4 * ordinal)
        function_offset = _rva_to_offset(sections, function_rva)
        name_offset = _rva_to_offset(sections, name_rva)
        if function_offset is None or name_offset is None:
            continue
        yield _cstr(data, name_offset), function_offset