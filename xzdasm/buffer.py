"""Address-aware views over raw code bytes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class CodeBuffer:
    """A contiguous run of bytes mapped at ``base``.

    Every public operation in the package works with absolute addresses.  The
    buffer translates them into offsets and keeps the half-open interval
    ``[base, base + len(data))`` as the hard limit for any read.
    """

    data: bytes
    base: int = 0

    @property
    def end(self) -> int:
        return self.base + len(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def contains(self, address: int) -> bool:
        return self.base <= address < self.end

    def clamp(self, start: int, end: Optional[int] = None) -> Tuple[int, int]:
        """Return ``(start, end)`` limited to the mapped interval."""

        limit = self.end if end is None else min(end, self.end)
        return max(start, self.base), limit

    def byte_at(self, address: int) -> int:
        return self.data[address - self.base]

    def read(self, address: int, size: int) -> bytes:
        offset = address - self.base
        if offset < 0 or size < 0 or offset + size > len(self.data):
            raise ValueError(
                f"read of {size} byte(s) at 0x{address:X} exceeds buffer "
                f"[0x{self.base:X}, 0x{self.end:X})"
            )
        return self.data[offset : offset + size]

    def find(self, needle: bytes, start: int, end: Optional[int] = None) -> Optional[int]:
        """Return the address of the first full match of ``needle`` in range."""

        lo, hi = self.clamp(start, end)
        if hi - lo < len(needle):
            return None
        index = self.data.find(needle, lo - self.base, hi - self.base)
        if index < 0:
            return None
        return self.base + index
