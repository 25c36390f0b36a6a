"""Forward scanners that locate instruction shapes inside a code range."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from . import opcodes
from .buffer import CodeBuffer
from .decoder import ResyncPolicy, decode, iter_instructions
from .instruction import DecodedInstruction, ModRmMod


logger = logging.getLogger(__name__)

_ADDRESS_MASK = (1 << 64) - 1


class PrologueMode(Enum):
    # look for the endbr64 landing pad emitted under CET
    ENDBR64 = "endbr64"
    # look for inter-function padding and take the instruction after it
    PADDING = "padding"


def find_call_instruction(
    code: CodeBuffer,
    start: int,
    end: Optional[int] = None,
    target: Optional[int] = None,
    *,
    policy: ResyncPolicy = ResyncPolicy.STOP,
) -> Optional[DecodedInstruction]:
    """Return the first call in ``[start, end)`` reaching ``target``.

    ``target=None`` accepts any call.  Otherwise relative calls are resolved
    against the following instruction and indirect calls through a memory
    slot are compared using the slot address.
    """

    logger.debug(
        "call scan [0x%X, 0x%X) target=%s",
        start,
        code.end if end is None else end,
        "any" if target is None else f"0x{target:X}",
    )
    for instruction in iter_instructions(code, start, end, policy):
        if not instruction.is_call:
            continue
        if target is None or instruction.call_target() == target:
            return instruction
    return None


def find_lea_instruction(
    code: CodeBuffer,
    start: int,
    end: Optional[int] = None,
    displacement: int = 0,
    *,
    policy: ResyncPolicy = ResyncPolicy.STOP,
) -> bool:
    """Return whether an ``lea`` with ``[reg + displacement]`` occurs in range.

    ``displacement`` may be given signed or as its 64-bit two's complement
    (``-8`` and ``0xFFFFFFFFFFFFFFF8`` match the same instruction).
    """

    wanted = displacement & _ADDRESS_MASK
    for instruction in iter_instructions(code, start, end, policy):
        if not instruction.is_lea:
            continue
        if instruction.mod not in (ModRmMod.INDIRECT_DISP8, ModRmMod.INDIRECT_DISP32):
            continue
        if instruction.displacement & _ADDRESS_MASK == wanted:
            logger.debug("lea with displacement %#x at 0x%X", displacement, instruction.start)
            return True
    return False


def find_function_prologue(
    code: CodeBuffer,
    start: int,
    end: Optional[int] = None,
    mode: PrologueMode = PrologueMode.ENDBR64,
    *,
    int3_padding: bool = False,
) -> Optional[int]:
    """Return the address of the next function entry point in range.

    ``PrologueMode.ENDBR64`` scans byte by byte for the landing pad and
    returns its address.  ``PrologueMode.PADDING`` walks instructions looking
    for a run of no-op padding and returns the address of the first real
    instruction after it.
    """

    if mode is PrologueMode.ENDBR64:
        return code.find(opcodes.ENDBR64, start, end)
    if mode is PrologueMode.PADDING:
        return _find_after_padding(code, start, end, int3_padding)
    raise ValueError(f"unknown prologue mode: {mode!r}")


def _is_padding(instruction: DecodedInstruction, int3_padding: bool) -> bool:
    if instruction.is_nop:
        return True
    return int3_padding and instruction.opcode == opcodes.OP_INT3


def _find_after_padding(
    code: CodeBuffer, start: int, end: Optional[int], int3_padding: bool
) -> Optional[int]:
    cursor = start
    _, limit = code.clamp(start, end)
    in_padding = False
    while cursor < limit:
        instruction = decode(code, cursor, limit)
        if instruction is None:
            # padding must be followed by decodable code
            in_padding = False
            cursor += 1
            continue
        if _is_padding(instruction, int3_padding):
            in_padding = True
        elif in_padding:
            logger.debug("padding ends at 0x%X", cursor)
            return cursor
        cursor = instruction.end
    return None
