"""Decoding of Mach-O compact unwind info and unwinding x86-64 frames with it.

Unwinding reads the target's memory through a ``process`` object whose
``read(addr, size)`` method returns ``size`` bytes.
"""

from __future__ import annotations

import bisect
import logging
import struct
from dataclasses import dataclass

_log = logging.getLogger(__name__)

_U64 = (1 << 64) - 1
_U32 = (1 << 32) - 1

UNWIND_X86_64_MODE_MASK = 0x0F000000
UNWIND_X86_64_MODE_RBP_FRAME = 0x01000000
UNWIND_X86_64_MODE_STACK_IMMD = 0x02000000
UNWIND_X86_64_MODE_STACK_IND = 0x03000000
UNWIND_X86_64_MODE_DWARF = 0x04000000
UNWIND_X86_64_RBP_FRAME_REGISTERS = 0x7FFF
UNWIND_X86_64_RBP_FRAME_OFFSET = 0xFF0000
UNWIND_X86_64_FRAMELESS_STACK_SIZE = 0x00FF0000
UNWIND_X86_64_FRAMELESS_STACK_ADJUST = 0xE000
UNWIND_X86_64_FRAMELESS_STACK_REG_COUNT = 0x1C00
UNWIND_X86_64_FRAMELESS_STACK_REG_PERMUTATION = 0x3FF
UNWIND_X86_64_DWARF_SECTION_OFFSET = 0xFFFFFF

UNWIND_SECTION_VERSION = 1
UNWIND_SECOND_LEVEL_REGULAR = 2
UNWIND_SECOND_LEVEL_COMPRESSED = 3

_SAVED_REGISTERS = {1: "rbx", 2: "r12", 3: "r13", 4: "r14", 5: "r15", 6: "rbp"}

_REG_DECODING = {
    # with 6 registers the last permutation is always 0, so 5 and 6 decode alike
    6: (120, 24, 6, 2, 1),
    5: (120, 24, 6, 2, 1),
    4: (60, 12, 3, 1),
    3: (20, 4, 1),
    2: (5, 1),
    1: (1,),
    0: (),
}


class CompactUnwindError(Exception):
    """Raised when compact unwind info cannot be found or applied.

    ``kind`` names the failure; ``value`` holds the offending number, if any.
    """

    _MESSAGES = {
        "unknown_mask": "Unknown compact encoding mask 0x{value:x}",
        "dwarf_unwind": "encoding UNWIND_X86_64_MODE_DWARF can't be handle by compact_unwind",
        "invalid_reg_count": "invalid reg_count in frameless unwind {value}",
        "invalid_reg_index": "invalid reg_index in frameless unwind {value}",
        "invalid_header_version": "invalid unwind header version: {value}",
        "page_out_of_bounds": "Compact page out of bounds",
        "pc_out_of_bounds": "PC isn't in bounds in compact unwind index",
        "unknown_page_kind": "malformed unwind_info section: {value}",
    }

    def __init__(self, kind: str, value: int | None = None) -> None:
        super().__init__(self._MESSAGES[kind].format(value=value))
        self.kind = kind
        self.value = value


@dataclass(frozen=True)
class CompactUnwindInfo:
    """The encoding and address range of the function containing a pc."""

    encoding: int
    func_start: int
    func_end: int


@dataclass
class Registers:
    """x86-64 general purpose thread state."""

    rax: int = 0
    rbx: int = 0
    rcx: int = 0
    rdx: int = 0
    rdi: int = 0
    rsi: int = 0
    rbp: int = 0
    rsp: int = 0
    r8: int = 0
    r9: int = 0
    r10: int = 0
    r11: int = 0
    r12: int = 0
    r13: int = 0
    r14: int = 0
    r15: int = 0
    rip: int = 0
    rflags: int = 0
    cs: int = 0
    fs: int = 0
    gs: int = 0


def _read(process, addr: int, fmt: str) -> tuple:
    if addr < 0:
        raise ValueError(f"invalid address {addr:#x}")
    size = struct.calcsize(fmt)
    return struct.unpack(fmt, bytes(process.read(addr, size)))


def _unpack(fmt: str, buffer, offset: int) -> tuple:
    try:
        return struct.unpack_from(fmt, buffer, offset)
    except struct.error as err:
        raise ValueError(f"malformed unwind_info section: {err}") from None


def _search(keys: list[int], target: int) -> int:
    return max(bisect.bisect_right(keys, target) - 1, 0)


def extract_from_mask(value: int, mask: int) -> int:
    """Returns the bits of value selected by a contiguous mask, shifted down."""
    if mask == 0:
        return 0
    shift = (mask & -mask).bit_length() - 1
    return (value >> shift) & ((1 << bin(mask).count("1")) - 1)


def get_dwarf_offset(encoding: int) -> int | None:
    """Returns the eh_frame offset when the encoding defers to DWARF unwinding."""
    if encoding & UNWIND_X86_64_MODE_MASK == UNWIND_X86_64_MODE_DWARF:
        return encoding & UNWIND_X86_64_DWARF_SECTION_OFFSET
    return None


def compact_unwind(info: CompactUnwindInfo, reg: Registers, process) -> None:
    """Unwinds one frame in place using a compact encoding."""
    mode = info.encoding & UNWIND_X86_64_MODE_MASK
    if mode == UNWIND_X86_64_MODE_RBP_FRAME:
        compact_unwind_rbf(info, reg, process)
    elif mode == UNWIND_X86_64_MODE_STACK_IMMD:
        compact_unwind_stack(False, info, reg, process)
    elif mode == UNWIND_X86_64_MODE_STACK_IND:
        compact_unwind_stack(True, info, reg, process)
    elif mode == UNWIND_X86_64_MODE_DWARF:
        raise CompactUnwindError("dwarf_unwind")
    else:
        raise CompactUnwindError("unknown_mask", mode)


def compact_unwind_rbf(info: CompactUnwindInfo, reg: Registers, process) -> None:
    """Unwinds a frame that uses rbp as its frame pointer."""
    _log.debug("rbf unwind 0x%016x", reg.rip)
    registers_offset = 8 * extract_from_mask(info.encoding, UNWIND_X86_64_RBP_FRAME_OFFSET)
    frame_registers = extract_from_mask(info.encoding, UNWIND_X86_64_RBP_FRAME_REGISTERS)
    saved = _read(process, reg.rbp - registers_offset, "<5Q")
    for value in saved:
        name = _SAVED_REGISTERS.get(frame_registers & 0x7)
        if name is not None and name != "rbp":
            setattr(reg, name, value)
        frame_registers >>= 3
    saved_rbp, return_address = _read(process, reg.rbp, "<2Q")
    reg.rsp = (reg.rbp + 16) & _U64
    reg.rbp = saved_rbp
    reg.rip = return_address


def compact_unwind_stack(indirect_stack: bool, info: CompactUnwindInfo, reg: Registers,
                         process) -> None:
    """Unwinds a frameless function with an immediate or indirect stack size."""
    _log.debug("stacksize unwind 0x%016x (indirect=%s)", reg.rip, indirect_stack)
    reg_count = extract_from_mask(info.encoding, UNWIND_X86_64_FRAMELESS_STACK_REG_COUNT)
    stack_adjust = extract_from_mask(info.encoding, UNWIND_X86_64_FRAMELESS_STACK_ADJUST)
    permutation = extract_from_mask(info.encoding, UNWIND_X86_64_FRAMELESS_STACK_REG_PERMUTATION)
    stack_size = extract_from_mask(info.encoding, UNWIND_X86_64_FRAMELESS_STACK_SIZE)

    if indirect_stack:
        (size_in_code,) = _read(process, info.func_start + stack_size, "<I")
        stack_size = (size_in_code + 8 * stack_adjust) & _U32
    else:
        stack_size *= 8

    decoding = _REG_DECODING.get(reg_count)
    if decoding is None:
        raise CompactUnwindError("invalid_reg_count", reg_count)

    # decode the register permutation (encoding is described in compact_unwind_encoding.h)
    reg_perm = [0] * 6
    for i, divisor in enumerate(decoding):
        reg_perm[i] = permutation // divisor
        permutation -= reg_perm[i] * divisor

    used = [False] * 6
    reg_index = [0] * 6
    for i in range(reg_count):
        free = [j for j in range(6) if not used[j]]
        if reg_perm[i] < len(free):
            chosen = free[reg_perm[i]]
            used[chosen] = True
            reg_index[i] = chosen + 1

    save_offset = reg.rsp + stack_size - 8
    saved = _read(process, save_offset - 8 * reg_count, "<6Q")
    for index, value in zip(reg_index[:reg_count], saved):
        if index == 0:
            continue
        name = _SAVED_REGISTERS.get(index)
        if name is None:
            raise CompactUnwindError("invalid_reg_index", index)
        setattr(reg, name, value)

    (reg.rip,) = _read(process, save_offset, "<Q")
    reg.rsp = (reg.rsp + stack_size) & _U64


def get_compact_unwind_info(unwind_info, mach_address: int, pc: int) -> CompactUnwindInfo:
    """Finds the compact unwind entry for pc in an __unwind_info section."""
    (version, common_offset, common_count, _, _,
     index_offset, index_count) = _unpack("<7I", unwind_info, 0)
    if version != UNWIND_SECTION_VERSION:
        raise CompactUnwindError("invalid_header_version", version)

    index = [_unpack("<II", unwind_info, index_offset + 12 * i) for i in range(index_count)]
    target_offset = ((pc - mach_address) & _U64) & _U32
    i = _search([entry[0] for entry in index], target_offset)
    # the last index entry only marks the end of the range
    if i + 1 >= len(index):
        raise CompactUnwindError("page_out_of_bounds")
    entry_function, page = index[i]
    next_function = index[i + 1][0]

    (page_kind,) = _unpack("<I", unwind_info, page)
    kind = page_kind & 0xFF

    if kind == UNWIND_SECOND_LEVEL_REGULAR:
        entry_page, entry_count = _unpack("<HH", unwind_info, page + 4)
        entries = [_unpack("<II", unwind_info, page + entry_page + 8 * k)
                   for k in range(entry_count)]
        if not entries:
            raise CompactUnwindError("page_out_of_bounds")
        element = _search([e[0] for e in entries], target_offset)
        function_offset, encoding = entries[element]
        func_start = function_offset + mach_address
        if element + 1 < len(entries):
            func_end = entries[element + 1][0] + mach_address
        else:
            func_end = next_function + mach_address
        if pc < func_start or pc >= func_end:
            raise CompactUnwindError("pc_out_of_bounds")
        return CompactUnwindInfo(encoding, func_start, func_end)

    if kind == UNWIND_SECOND_LEVEL_COMPRESSED:
        entry_page, entry_count, encodings_page, encodings_count = _unpack(
            "<HHHH", unwind_info, page + 4)
        entries = [_unpack("<I", unwind_info, page + entry_page + 4 * k)[0]
                   for k in range(entry_count)]
        if entry_function > target_offset or not entries:
            raise CompactUnwindError("page_out_of_bounds")
        page_offset = target_offset - entry_function
        element = _search([e & 0x00FFFFFF for e in entries], page_offset)
        packed = entries[element]
        function_base = mach_address + entry_function
        func_start = (packed & 0x00FFFFFF) + function_base
        if element + 1 < len(entries):
            func_end = (entries[element + 1] & 0x00FFFFFF) + function_base
        else:
            func_end = next_function + mach_address
        if pc < func_start or pc >= func_end:
            raise CompactUnwindError("pc_out_of_bounds")

        encoding_index = (packed >> 24) & 0xFF
        if encoding_index < common_count:
            (encoding,) = _unpack("<I", unwind_info, common_offset + 4 * encoding_index)
        else:
            local = encoding_index - common_count
            if local >= encodings_count:
                raise ValueError(f"malformed unwind_info section: encoding {encoding_index}")
            (encoding,) = _unpack("<I", unwind_info, page + encodings_page + 4 * local)
        return CompactUnwindInfo(encoding, func_start, func_end)

    raise CompactUnwindError("unknown_page_kind", page_kind)