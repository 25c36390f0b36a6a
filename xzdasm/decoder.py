"""Single-instruction x86-64 decoder.

The decoder walks prefixes, REX, opcode, ModRM, SIB, displacement and the
immediate field of exactly one instruction.  Every byte is fetched through a
bounded cursor so a truncated buffer results in a failed decode instead of an
over-read.  Nothing is cached between calls.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Iterator, Optional

from . import opcodes
from .buffer import CodeBuffer
from .instruction import DecodedInstruction, PrefixFlags, split_modrm
from .opcodes import Immediate


logger = logging.getLogger(__name__)

_ADDRESS_MASK = (1 << 64) - 1


class ResyncPolicy(Enum):
    """What a range walk does when the decoder rejects the current address."""

    # treat the rest of the range as unsearchable
    STOP = "stop"
    # advance one byte and try again
    SKIP_BYTE = "skip-byte"


class _DecodeFailure(Exception):
    pass


class _Cursor:
    """Bounded read position for one decode call."""

    __slots__ = ("code", "position", "limit")

    def __init__(self, code: CodeBuffer, position: int, limit: int) -> None:
        self.code = code
        self.position = position
        self.limit = limit

    def next_byte(self) -> int:
        if self.position >= self.limit:
            raise _DecodeFailure("truncated")
        value = self.code.byte_at(self.position)
        self.position += 1
        return value

    def read_int(self, size: int, *, signed: bool) -> int:
        if self.position + size > self.limit:
            raise _DecodeFailure("truncated")
        chunk = self.code.read(self.position, size)
        self.position += size
        return int.from_bytes(chunk, "little", signed=signed)


def decode(code: CodeBuffer, start: int, end: Optional[int] = None) -> Optional[DecodedInstruction]:
    """Decode the instruction at ``start`` without reading at or past ``end``.

    Returns ``None`` when the range is empty, the instruction is truncated or
    longer than fifteen bytes, or the opcode falls outside the supported
    subset.
    """

    _, limit = code.clamp(start, end)
    if not code.contains(start) or start >= limit:
        return None
    cursor = _Cursor(code, start, min(limit, start + opcodes.MAX_INSTRUCTION_LENGTH))
    try:
        return _decode(cursor, start)
    except _DecodeFailure:
        return None


def _decode(cursor: _Cursor, start: int) -> DecodedInstruction:
    flags = PrefixFlags.NONE
    last_prefix = None
    segment = None

    byte = cursor.next_byte()
    while True:
        if byte == opcodes.PREFIX_LOCK:
            flags |= PrefixFlags.LOCK
        elif byte == opcodes.PREFIX_REP:
            flags |= PrefixFlags.REP
        elif byte == opcodes.PREFIX_REPNE:
            flags |= PrefixFlags.REPNE
        elif byte in opcodes.SEGMENT_PREFIXES:
            flags |= PrefixFlags.SEGMENT
            segment = byte
        elif byte == opcodes.PREFIX_OPERAND_SIZE:
            flags |= PrefixFlags.OPERAND_SIZE
        elif byte == opcodes.PREFIX_ADDRESS_SIZE:
            flags |= PrefixFlags.ADDRESS_SIZE
        else:
            break
        last_prefix = byte
        byte = cursor.next_byte()

    rex = None
    if 0x40 <= byte <= 0x4F:
        rex = byte
        flags |= PrefixFlags.REX
        byte = cursor.next_byte()

    opcode = byte
    if byte == opcodes.TWO_BYTE_ESCAPE:
        opcode = (opcode << 8) | cursor.next_byte()
        if opcode in (opcodes.THREE_BYTE_ESCAPE_38, opcodes.THREE_BYTE_ESCAPE_3A):
            opcode = (opcode << 8) | cursor.next_byte()

    entry = opcodes.lookup(opcode)
    if entry is None:
        raise _DecodeFailure(f"unsupported opcode {opcode:#x}")

    modrm = None
    sib = None
    displacement = 0
    reg = None
    if entry.modrm:
        modrm = cursor.next_byte()
        mod, reg, rm = split_modrm(modrm)
        if mod != 3:
            disp_size = (0, 1, 4)[mod]
            if rm == 4:
                sib = cursor.next_byte()
                if mod == 0 and sib & 0x7 == 5:
                    disp_size = 4
            elif mod == 0 and rm == 5:
                disp_size = 4
            if disp_size:
                displacement = cursor.read_int(disp_size, signed=True)

    kind = entry.immediate
    if kind is Immediate.TEST_GROUP:
        if reg in (0, 1):
            kind = Immediate.IZ if opcode == 0xF7 else Immediate.IB
        else:
            kind = Immediate.NONE

    operand_size = _immediate_size(kind, flags, rex)
    operand = 0
    if operand_size:
        relative = kind in (Immediate.REL8, Immediate.REL32)
        operand = cursor.read_int(operand_size, signed=relative)

    length = cursor.position - start
    instruction = DecodedInstruction(
        start=start,
        length=length,
        opcode=opcode,
        prefix_flags=flags,
        last_prefix=last_prefix,
        segment_override=segment,
        rex_byte=rex,
        modrm_byte=modrm,
        sib_byte=sib,
        displacement=displacement,
        operand=operand,
        operand_size=operand_size,
        raw=cursor.code.read(start, length),
    )

    if opcode == opcodes.OP_GROUP5 and reg in (2, 3, 4, 5):
        # indirect branches through a memory slot: resolve the slot address
        if instruction.is_rip_relative:
            instruction = replace(instruction, operand=(instruction.end + displacement) & _ADDRESS_MASK)
        elif instruction.is_absolute_disp32:
            instruction = replace(instruction, operand=displacement & _ADDRESS_MASK)
    return instruction


def _immediate_size(kind: Immediate, flags: PrefixFlags, rex: Optional[int]) -> int:
    if kind is Immediate.NONE:
        return 0
    if kind in (Immediate.IB, Immediate.REL8):
        return 1
    if kind is Immediate.IW:
        return 2
    if kind is Immediate.IW_IB:
        return 3
    if kind is Immediate.REL32:
        return 4
    if kind is Immediate.IZ:
        if rex is not None and rex & 0x8:
            return 4
        return 2 if flags & PrefixFlags.OPERAND_SIZE else 4
    if kind is Immediate.IV:
        if rex is not None and rex & 0x8:
            return 8
        return 2 if flags & PrefixFlags.OPERAND_SIZE else 4
    if kind is Immediate.MOFFS:
        return 4 if flags & PrefixFlags.ADDRESS_SIZE else 8
    raise ValueError(f"unhandled immediate kind {kind}")  # pragma: no cover


def iter_instructions(
    code: CodeBuffer,
    start: int,
    end: Optional[int] = None,
    policy: ResyncPolicy = ResyncPolicy.STOP,
) -> Iterator[DecodedInstruction]:
    """Yield consecutive instructions in ``[start, end)``."""

    cursor = start
    _, limit = code.clamp(start, end)
    while cursor < limit:
        instruction = decode(code, cursor, limit)
        if instruction is None:
            if policy is ResyncPolicy.STOP:
                logger.debug("decode failed at 0x%X, stopping walk", cursor)
                return
            cursor += 1
            continue
        yield instruction
        cursor = instruction.end
