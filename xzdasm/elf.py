"""Program header model and segment containment checks."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

PT_LOAD = 1


class SegmentFlags(IntFlag):
    """``p_flags`` bits (``PF_*``)."""

    NONE = 0
    X = 0x1
    W = 0x2
    R = 0x4


class FlagMatch(Enum):
    # every requested flag is present on the segment
    SUBSET = "subset"
    # the segment carries exactly the requested flags
    EXACT = "exact"


class IterationStep(IntEnum):
    FORWARD = 1
    BACKWARD = -1


@dataclass(frozen=True)
class ProgramHeader:
    """One ``Elf64_Phdr`` entry."""

    p_type: int
    p_flags: int
    p_offset: int
    p_vaddr: int
    p_filesz: int
    p_memsz: int
    p_align: int = 0

    @property
    def is_loadable(self) -> bool:
        return self.p_type == PT_LOAD

    def matches(self, flags: int, match: FlagMatch = FlagMatch.SUBSET) -> bool:
        if match is FlagMatch.EXACT:
            return self.p_flags == flags
        return self.p_flags & flags == flags


@dataclass(frozen=True)
class ElfImage:
    """An ELF image already mapped into an address space.

    ``base`` is where the ELF header lives and ``load_bias`` the declared
    virtual address of the first loaded byte, so a segment declared at
    ``p_vaddr`` is mapped at ``base + p_vaddr - load_bias``.
    """

    base: int
    load_bias: int
    program_headers: Tuple[ProgramHeader, ...]

    @classmethod
    def from_headers(cls, headers: Iterable[ProgramHeader], base: Optional[int] = None) -> "ElfImage":
        """Build an image whose load bias is the lowest ``PT_LOAD`` address."""

        program_headers = tuple(headers)
        loads = [header.p_vaddr for header in program_headers if header.is_loadable]
        load_bias = min(loads) if loads else 0
        return cls(load_bias if base is None else base, load_bias, program_headers)

    @property
    def slide(self) -> int:
        return self.base - self.load_bias

    def segment_range(self, header: ProgramHeader) -> Tuple[int, int]:
        """Return the runtime ``[start, end)`` interval of ``header``."""

        start = header.p_vaddr + self.slide
        return start, start + header.p_memsz

    def to_runtime(self, vaddr: int) -> int:
        return vaddr + self.slide

    def loadable(self) -> Iterator[ProgramHeader]:
        return (header for header in self.program_headers if header.is_loadable)


def _walk(headers: Sequence[ProgramHeader], step: int) -> Iterator[ProgramHeader]:
    if step > 0:
        indices = range(0, len(headers), step)
    else:
        indices = range(len(headers) - 1, -1, step)
    for index in indices:
        yield headers[index]


def elf_contains_segment(
    image: ElfImage,
    vaddr: int,
    size: int,
    flags: int,
    step: int = IterationStep.FORWARD,
    *,
    match: FlagMatch = FlagMatch.SUBSET,
    file_relative: bool = False,
    span: bool = False,
) -> bool:
    """Return whether ``[vaddr, vaddr + size)`` is mapped with ``flags``.

    The program header table is walked with a signed ``step``: positive values
    start at the first entry, negative values at the last, visiting every
    ``abs(step)``-th entry.  Only ``PT_LOAD`` entries whose flags satisfy
    ``match`` are considered.  With ``span`` the range may straddle several
    adjacent matching segments.
    """

    if size < 0:
        raise ValueError("size must be non-negative")
    if step == 0:
        raise ValueError("step must be non-zero")
    if size == 0:
        return True
    start = image.to_runtime(vaddr) if file_relative else vaddr
    end = start + size

    candidates: List[Tuple[int, int]] = []
    for header in _walk(image.program_headers, int(step)):
        if not header.is_loadable or not header.matches(flags, match):
            continue
        seg_start, seg_end = image.segment_range(header)
        if seg_start <= start and end <= seg_end:
            return True
        candidates.append((seg_start, seg_end))

    if span and candidates:
        return _covered(start, end, candidates)
    return False


def _covered(start: int, end: int, intervals: List[Tuple[int, int]]) -> bool:
    cursor = start
    for seg_start, seg_end in sorted(intervals):
        if seg_start > cursor:
            break
        if seg_end > cursor:
            cursor = seg_end
        if cursor >= end:
            return True
    return False
