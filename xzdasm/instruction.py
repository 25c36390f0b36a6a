"""Representation of a single decoded x86-64 instruction."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Optional, Tuple

from . import opcodes
from .opcodes import bias_opcode


class PrefixFlags(IntFlag):
    """Prefixes observed in front of the opcode.

    The low bits mirror the flag layout of the analysed engine so recorded
    values can be compared directly.
    """

    NONE = 0
    LOCK = 0x01
    SEGMENT = 0x02
    OPERAND_SIZE = 0x04
    ADDRESS_SIZE = 0x08
    REX = 0x20
    REP = 0x40
    REPNE = 0x80


class ModRmMod(IntEnum):
    # register-indirect addressing or no displacement
    INDIRECT = 0
    # indirect with one byte displacement
    INDIRECT_DISP8 = 1
    # indirect with four byte displacement
    INDIRECT_DISP32 = 2
    # direct-register addressing
    DIRECT = 3


def split_modrm(value: int) -> Tuple[int, int, int]:
    """Split a ModRM byte into its ``(mod, reg, rm)`` fields."""

    return (value >> 6) & 0x3, (value >> 3) & 0x7, value & 0x7


@dataclass(frozen=True)
class DecodedInstruction:
    start: int
    length: int
    opcode: int
    prefix_flags: PrefixFlags = PrefixFlags.NONE
    last_prefix: Optional[int] = None
    segment_override: Optional[int] = None
    rex_byte: Optional[int] = None
    modrm_byte: Optional[int] = None
    sib_byte: Optional[int] = None
    displacement: int = 0
    operand: int = 0
    operand_size: int = 0
    raw: bytes = b""

    @property
    def end(self) -> int:
        return self.start + self.length

    @property
    def biased_opcode(self) -> int:
        return bias_opcode(self.opcode)

    @property
    def has_modrm(self) -> bool:
        return self.modrm_byte is not None

    @property
    def modrm_mod(self) -> Optional[int]:
        if self.modrm_byte is None:
            return None
        return split_modrm(self.modrm_byte)[0]

    @property
    def modrm_reg(self) -> Optional[int]:
        if self.modrm_byte is None:
            return None
        return split_modrm(self.modrm_byte)[1]

    @property
    def modrm_rm(self) -> Optional[int]:
        if self.modrm_byte is None:
            return None
        return split_modrm(self.modrm_byte)[2]

    @property
    def mod(self) -> Optional[ModRmMod]:
        if self.modrm_byte is None:
            return None
        return ModRmMod(self.modrm_mod)

    @property
    def is_memory_operand(self) -> bool:
        return self.modrm_byte is not None and self.mod is not ModRmMod.DIRECT

    @property
    def is_rip_relative(self) -> bool:
        return self.mod is ModRmMod.INDIRECT and self.modrm_rm == 5

    @property
    def is_absolute_disp32(self) -> bool:
        """``[disp32]`` through a SIB byte with neither base nor index."""

        if self.mod is not ModRmMod.INDIRECT or self.sib_byte is None:
            return False
        rex_x = bool(self.rex_byte and self.rex_byte & 0x2)
        return self.sib_byte & 0x7 == 5 and (self.sib_byte >> 3) & 0x7 == 4 and not rex_x

    @property
    def rex_w(self) -> bool:
        return bool(self.rex_byte is not None and self.rex_byte & 0x8)

    @property
    def is_call(self) -> bool:
        if self.opcode == opcodes.OP_CALL_REL32:
            return True
        return self.opcode == opcodes.OP_GROUP5 and self.modrm_reg in (
            opcodes.GROUP5_CALL_NEAR,
            opcodes.GROUP5_CALL_FAR,
        )

    @property
    def is_jump(self) -> bool:
        if self.opcode in (opcodes.OP_JMP_REL32, opcodes.OP_JMP_REL8):
            return True
        return self.opcode == opcodes.OP_GROUP5 and self.modrm_reg in (
            opcodes.GROUP5_JMP_NEAR,
            opcodes.GROUP5_JMP_FAR,
        )

    @property
    def is_relative_branch(self) -> bool:
        return self.operand_size > 0 and self.opcode in _RELATIVE_BRANCHES

    @property
    def is_lea(self) -> bool:
        return self.opcode == opcodes.OP_LEA

    @property
    def is_nop(self) -> bool:
        if self.opcode == opcodes.OP_NOP:
            # REX.B turns 90 into xchg r8, rax and F3 90 is pause
            rex_b = bool(self.rex_byte and self.rex_byte & 0x1)
            return not rex_b and not self.prefix_flags & PrefixFlags.REP
        return self.opcode == opcodes.OP_HINT_NOP and self.modrm_reg == 0

    @property
    def is_endbr64(self) -> bool:
        return (
            self.opcode == opcodes.OP_ENDBR
            and self.modrm_byte == opcodes.ENDBR64_MODRM
            and self.last_prefix == opcodes.PREFIX_REP
        )

    def branch_target(self) -> Optional[int]:
        """Return the absolute destination of a call or jump, when static.

        Relative forms resolve against the address of the next instruction.
        Indirect forms through a RIP-relative or absolute memory slot resolve
        to the slot address held in :attr:`operand`.  Register-indirect forms
        have no static destination.
        """

        if self.is_relative_branch:
            return (self.end + self.operand) & _ADDRESS_MASK
        if self.opcode == opcodes.OP_GROUP5 and (self.is_rip_relative or self.is_absolute_disp32):
            return self.operand
        return None

    def call_target(self) -> Optional[int]:
        if not self.is_call:
            return None
        return self.branch_target()

    @property
    def mnemonic(self) -> str:
        if self.opcode == opcodes.OP_GROUP5 and self.modrm_reg is not None:
            name = opcodes.GROUP5_MNEMONICS[self.modrm_reg]
            if name is not None:
                return name
        if self.opcode == opcodes.OP_ENDBR and not self.is_endbr64:
            return "nop"
        if self.opcode == opcodes.OP_NOP and not self.is_nop:
            return "pause" if self.prefix_flags & PrefixFlags.REP else "xchg"
        name = opcodes.MNEMONICS.get(self.opcode)
        if name is not None:
            return name
        if self.opcode > 0xFF:
            return f"op_{self.opcode:04X}"
        return f"op_{self.opcode:02X}"

    def format(self) -> str:
        target = self.branch_target()
        if target is not None:
            detail = f"0x{target:X}"
        elif self.is_memory_operand:
            detail = f"[disp={self.displacement:#x}]"
        elif self.operand_size:
            detail = f"{self.operand:#x}"
        else:
            detail = ""
        return f"{self.start:08X}: {self.raw.hex(' '):<30} {self.mnemonic:<8} {detail}".rstrip()


_ADDRESS_MASK = (1 << 64) - 1

_RELATIVE_BRANCHES = frozenset(
    [opcodes.OP_CALL_REL32, opcodes.OP_JMP_REL32, opcodes.OP_JMP_REL8]
    + list(range(0x70, 0x80))
    + list(range(0xE0, 0xE4))
    + list(range(0x0F80, 0x0F90))
)
