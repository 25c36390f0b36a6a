"""Opcode tables for the subset of x86-64 understood by the decoder.

Opcodes are keyed by their normalised value: single byte opcodes use the byte
itself, ``0F xx`` becomes ``0x0Fxx`` and the three byte escapes become
``0x0F38xx`` / ``0x0F3Axx``.  Each entry records whether a ModRM byte follows
and which immediate (if any) trails the addressing bytes.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Dict, NamedTuple


# The analysed engine stores every opcode with this constant added.  It is
# stripped at the decode boundary; see ``bias_opcode``/``unbias_opcode``.
OPCODE_BIAS = 0x80

MAX_INSTRUCTION_LENGTH = 15

TWO_BYTE_ESCAPE = 0x0F
THREE_BYTE_ESCAPE_38 = 0x0F38
THREE_BYTE_ESCAPE_3A = 0x0F3A

PREFIX_LOCK = 0xF0
PREFIX_REPNE = 0xF2
PREFIX_REP = 0xF3
PREFIX_OPERAND_SIZE = 0x66
PREFIX_ADDRESS_SIZE = 0x67
SEGMENT_PREFIXES = frozenset({0x26, 0x2E, 0x36, 0x3E, 0x64, 0x65})

# opcodes the scanners classify
OP_LEA = 0x8D
OP_NOP = 0x90
OP_CALL_REL32 = 0xE8
OP_JMP_REL32 = 0xE9
OP_JMP_REL8 = 0xEB
OP_INT3 = 0xCC
OP_RET = 0xC3
OP_GROUP5 = 0xFF
OP_HINT_NOP = 0x0F1F
OP_ENDBR = 0x0F1E

GROUP5_CALL_NEAR = 2
GROUP5_CALL_FAR = 3
GROUP5_JMP_NEAR = 4
GROUP5_JMP_FAR = 5

ENDBR64_MODRM = 0xFA
ENDBR64 = bytes((PREFIX_REP, 0x0F, 0x1E, ENDBR64_MODRM))


class Immediate(Enum):
    NONE = auto()
    IB = auto()
    IW = auto()
    # 16 bits with an operand-size override and no REX.W, 32 otherwise
    IZ = auto()
    # 64 bits with REX.W, 16 with an operand-size override, 32 otherwise
    IV = auto()
    REL8 = auto()
    REL32 = auto()
    # absolute address, 64 bits unless an address-size override is present
    MOFFS = auto()
    IW_IB = auto()
    # F6/F7: immediate only for the TEST forms (/0 and /1)
    TEST_GROUP = auto()


class OpcodeSpec(NamedTuple):
    modrm: bool
    immediate: Immediate = Immediate.NONE


def _fill(table: Dict[int, OpcodeSpec], opcodes, entry: OpcodeSpec) -> None:
    for opcode in opcodes:
        table[opcode] = entry


def _build_one_byte() -> Dict[int, OpcodeSpec]:
    table: Dict[int, OpcodeSpec] = {}
    plain = OpcodeSpec(False)
    rm = OpcodeSpec(True)

    # ALU rows: add/or/adc/sbb/and/sub/xor/cmp
    for row in range(0x00, 0x40, 0x08):
        _fill(table, range(row, row + 4), rm)
        table[row + 4] = OpcodeSpec(False, Immediate.IB)
        table[row + 5] = OpcodeSpec(False, Immediate.IZ)

    _fill(table, range(0x50, 0x60), plain)
    table[0x63] = rm
    table[0x68] = OpcodeSpec(False, Immediate.IZ)
    table[0x69] = OpcodeSpec(True, Immediate.IZ)
    table[0x6A] = OpcodeSpec(False, Immediate.IB)
    table[0x6B] = OpcodeSpec(True, Immediate.IB)
    _fill(table, range(0x6C, 0x70), plain)
    _fill(table, range(0x70, 0x80), OpcodeSpec(False, Immediate.REL8))

    table[0x80] = OpcodeSpec(True, Immediate.IB)
    table[0x81] = OpcodeSpec(True, Immediate.IZ)
    table[0x83] = OpcodeSpec(True, Immediate.IB)
    _fill(table, range(0x84, 0x90), rm)

    _fill(table, range(0x90, 0xA0), plain)
    del table[0x9A]
    _fill(table, range(0xA0, 0xA4), OpcodeSpec(False, Immediate.MOFFS))
    _fill(table, range(0xA4, 0xA8), plain)
    table[0xA8] = OpcodeSpec(False, Immediate.IB)
    table[0xA9] = OpcodeSpec(False, Immediate.IZ)
    _fill(table, range(0xAA, 0xB0), plain)
    _fill(table, range(0xB0, 0xB8), OpcodeSpec(False, Immediate.IB))
    _fill(table, range(0xB8, 0xC0), OpcodeSpec(False, Immediate.IV))

    table[0xC0] = OpcodeSpec(True, Immediate.IB)
    table[0xC1] = OpcodeSpec(True, Immediate.IB)
    table[0xC2] = OpcodeSpec(False, Immediate.IW)
    table[0xC3] = plain
    table[0xC6] = OpcodeSpec(True, Immediate.IB)
    table[0xC7] = OpcodeSpec(True, Immediate.IZ)
    table[0xC8] = OpcodeSpec(False, Immediate.IW_IB)
    table[0xC9] = plain
    table[0xCA] = OpcodeSpec(False, Immediate.IW)
    table[0xCB] = plain
    table[0xCC] = plain
    table[0xCD] = OpcodeSpec(False, Immediate.IB)
    table[0xCF] = plain

    _fill(table, range(0xD0, 0xD4), rm)
    table[0xD7] = plain
    _fill(table, range(0xD8, 0xE0), rm)
    _fill(table, range(0xE0, 0xE4), OpcodeSpec(False, Immediate.REL8))
    _fill(table, range(0xE4, 0xE8), OpcodeSpec(False, Immediate.IB))
    table[OP_CALL_REL32] = OpcodeSpec(False, Immediate.REL32)
    table[OP_JMP_REL32] = OpcodeSpec(False, Immediate.REL32)
    table[OP_JMP_REL8] = OpcodeSpec(False, Immediate.REL8)
    _fill(table, range(0xEC, 0xF0), plain)

    table[0xF1] = plain
    table[0xF4] = plain
    table[0xF5] = plain
    table[0xF6] = OpcodeSpec(True, Immediate.TEST_GROUP)
    table[0xF7] = OpcodeSpec(True, Immediate.TEST_GROUP)
    _fill(table, range(0xF8, 0xFE), plain)
    table[0xFE] = rm
    table[0xFF] = rm
    return table


def _build_two_byte() -> Dict[int, OpcodeSpec]:
    table: Dict[int, OpcodeSpec] = {}
    plain = OpcodeSpec(False)
    rm = OpcodeSpec(True)

    def put(low_bytes, entry: OpcodeSpec) -> None:
        _fill(table, (0x0F00 | low for low in low_bytes), entry)

    put((0x00, 0x01, 0x02, 0x03, 0x0D), rm)
    put((0x05, 0x06, 0x07, 0x08, 0x09, 0x0B, 0x30, 0x31, 0x32, 0x33, 0x34, 0x35, 0x77, 0xA2), plain)
    put(range(0x10, 0x24), rm)
    put(range(0x28, 0x30), rm)
    put(range(0x40, 0x70), rm)
    put(range(0x70, 0x74), OpcodeSpec(True, Immediate.IB))
    put(range(0x74, 0x77), rm)
    put(range(0x7C, 0x80), rm)
    put(range(0x80, 0x90), OpcodeSpec(False, Immediate.REL32))
    put(range(0x90, 0xA0), rm)
    put((0xA0, 0xA1, 0xA8, 0xA9), plain)
    put((0xA3, 0xA5, 0xAB, 0xAD, 0xAE, 0xAF), rm)
    put(range(0xB0, 0xC0), rm)
    put((0xA4, 0xAC, 0xBA, 0xC2, 0xC4, 0xC5, 0xC6), OpcodeSpec(True, Immediate.IB))
    put((0xC0, 0xC1, 0xC3, 0xC7), rm)
    put(range(0xC8, 0xD0), plain)
    put(range(0xD0, 0x100), rm)
    return table


ONE_BYTE: Dict[int, OpcodeSpec] = _build_one_byte()
TWO_BYTE: Dict[int, OpcodeSpec] = _build_two_byte()
# every 0F 38 opcode takes a ModRM byte, every 0F 3A opcode also an imm8
THREE_BYTE_38 = OpcodeSpec(True)
THREE_BYTE_3A = OpcodeSpec(True, Immediate.IB)


MNEMONICS: Dict[int, str] = {
    0x50: "push",
    0x58: "pop",
    0x63: "movsxd",
    0x68: "push",
    0x6A: "push",
    0x84: "test",
    0x85: "test",
    0x88: "mov",
    0x89: "mov",
    0x8A: "mov",
    0x8B: "mov",
    OP_LEA: "lea",
    OP_NOP: "nop",
    0xB8: "mov",
    0xC2: "ret",
    OP_RET: "ret",
    0xC6: "mov",
    0xC7: "mov",
    0xC9: "leave",
    0xD7: "xlat",
    OP_INT3: "int3",
    OP_CALL_REL32: "call",
    OP_JMP_REL32: "jmp",
    OP_JMP_REL8: "jmp",
    0xF4: "hlt",
    0x0F05: "syscall",
    0x0F0B: "ud2",
    OP_ENDBR: "endbr64",
    OP_HINT_NOP: "nop",
    0x0FA2: "cpuid",
}

_ALU = ("add", "or", "adc", "sbb", "and", "sub", "xor", "cmp")
for _row, _name in enumerate(_ALU):
    for _low in range(6):
        MNEMONICS[_row * 8 + _low] = _name
for _reg in range(1, 8):
    MNEMONICS[0x50 + _reg] = "push"
    MNEMONICS[0x58 + _reg] = "pop"
    MNEMONICS[0xB8 + _reg] = "mov"
_CONDITIONS = ("o", "no", "b", "ae", "e", "ne", "be", "a", "s", "ns", "p", "np", "l", "ge", "le", "g")
for _cc, _suffix in enumerate(_CONDITIONS):
    MNEMONICS[0x70 + _cc] = "j" + _suffix
    MNEMONICS[0x0F80 + _cc] = "j" + _suffix
    MNEMONICS[0x0F90 + _cc] = "set" + _suffix
    MNEMONICS[0x0F40 + _cc] = "cmov" + _suffix

GROUP5_MNEMONICS = ("inc", "dec", "call", "call", "jmp", "jmp", "push", None)


def lookup(opcode: int):
    """Return the :class:`OpcodeSpec` for a normalised opcode, if supported."""

    if opcode <= 0xFF:
        return ONE_BYTE.get(opcode)
    if opcode >> 8 == THREE_BYTE_ESCAPE_38:
        return THREE_BYTE_38
    if opcode >> 8 == THREE_BYTE_ESCAPE_3A:
        return THREE_BYTE_3A
    return TWO_BYTE.get(opcode)


def bias_opcode(opcode: int) -> int:
    """Convert a normalised opcode to the analysed engine's biased encoding."""

    return opcode + OPCODE_BIAS


def unbias_opcode(opcode: int) -> int:
    return opcode - OPCODE_BIAS
