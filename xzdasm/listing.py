"""Instruction listing utilities."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .buffer import CodeBuffer
from .decoder import ResyncPolicy, decode


class Listing:
    """Render a linear sweep of a code range as text.

    Undecodable bytes are emitted as ``.byte`` lines and the sweep continues
    one byte further, so the listing always accounts for every byte of the
    range.
    """

    def __init__(self, *, policy: ResyncPolicy = ResyncPolicy.SKIP_BYTE) -> None:
        self.policy = policy

    def generate_listing(
        self,
        code: CodeBuffer,
        start: Optional[int] = None,
        end: Optional[int] = None,
        *,
        max_instructions: Optional[int] = None,
    ) -> str:
        start = code.base if start is None else start
        lo, hi = code.clamp(start, end)
        lines: List[str] = [f"; range 0x{lo:X}-0x{hi:X} length={max(0, hi - lo)}"]

        cursor = lo
        count = 0
        while cursor < hi:
            if max_instructions is not None and count >= max_instructions:
                lines.append("; ... truncated ...")
                break
            instruction = decode(code, cursor, hi)
            if instruction is None:
                lines.append(f"{cursor:08X}: {code.byte_at(cursor):02x}{'':<28} .byte")
                if self.policy is ResyncPolicy.STOP:
                    lines.append("; decode stopped")
                    break
                cursor += 1
            else:
                lines.append(instruction.format())
                cursor = instruction.end
            count += 1
        return "\n".join(lines) + "\n"

    def write_listing(
        self,
        code: CodeBuffer,
        output_path: Path,
        start: Optional[int] = None,
        end: Optional[int] = None,
        *,
        max_instructions: Optional[int] = None,
    ) -> None:
        listing = self.generate_listing(code, start, end, max_instructions=max_instructions)
        output_path.write_text(listing, "utf-8")
