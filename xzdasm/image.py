"""Map ELF files from disk into a flat, relocated code buffer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.enums import ENUM_P_TYPE_BASE
from elftools.elf.sections import SymbolTableSection

from .buffer import CodeBuffer
from .elf import ElfImage, ProgramHeader, SegmentFlags


logger = logging.getLogger(__name__)

_SUPPORTED_MACHINE = "x64"


class ImageLoadError(ValueError):
    """Raised when a file cannot be mapped as an x86-64 ELF image."""


@dataclass(frozen=True)
class MappedImage:
    """An ELF file laid out the way the loader would map it.

    Every ``PT_LOAD`` segment is copied to ``base + p_vaddr - load_bias``;
    the part of ``p_memsz`` not backed by the file stays zero-filled.
    """

    path: Optional[Path]
    elf: ElfImage
    code: CodeBuffer
    symbols: Tuple[Tuple[str, int], ...] = ()

    @classmethod
    def load(cls, path: Path, base: Optional[int] = None) -> "MappedImage":
        with path.open("rb") as stream:
            image = cls.from_stream(stream, base=base)
        logger.info(
            "mapped %s at 0x%X (%d bytes, %d program headers)",
            path,
            image.elf.base,
            len(image.code),
            len(image.elf.program_headers),
        )
        return cls(path, image.elf, image.code, image.symbols)

    @classmethod
    def from_stream(cls, stream: BinaryIO, base: Optional[int] = None) -> "MappedImage":
        try:
            elffile = ELFFile(stream)
        except ELFError as exc:
            raise ImageLoadError(f"not an ELF file: {exc}") from exc

        if elffile.elfclass != 64 or elffile.get_machine_arch() != _SUPPORTED_MACHINE:
            raise ImageLoadError(
                f"unsupported ELF machine {elffile.get_machine_arch()!r} "
                f"(ELFCLASS{elffile.elfclass})"
            )

        try:
            headers = [_program_header(segment.header) for segment in elffile.iter_segments()]
        except ELFError as exc:
            raise ImageLoadError(f"malformed program header table: {exc}") from exc
        elf = ElfImage.from_headers(headers, base)
        loads = list(elf.loadable())
        if not loads:
            raise ImageLoadError("ELF file has no PT_LOAD segments")

        memory = _layout(elffile, elf, loads)
        symbols = tuple(_collect_symbols(elffile, elf))
        logger.debug("collected %d symbols", len(symbols))
        return cls(None, elf, CodeBuffer(bytes(memory), elf.base), symbols)

    def executable_ranges(self) -> List[Tuple[int, int]]:
        """Return the runtime ``[start, end)`` ranges of executable segments."""

        return [
            self.elf.segment_range(header)
            for header in self.elf.loadable()
            if header.p_flags & SegmentFlags.X
        ]

    def symbol_address(self, name: str) -> Optional[int]:
        for symbol, address in self.symbols:
            if symbol == name:
                return address
        return None


def _program_header(header) -> ProgramHeader:
    p_type = header["p_type"]
    # pyelftools describes known types by name; unknown names read as PT_NULL
    if isinstance(p_type, str):
        p_type = ENUM_P_TYPE_BASE.get(p_type, 0)
    return ProgramHeader(
        p_type=p_type,
        p_flags=header["p_flags"],
        p_offset=header["p_offset"],
        p_vaddr=header["p_vaddr"],
        p_filesz=header["p_filesz"],
        p_memsz=header["p_memsz"],
        p_align=header["p_align"],
    )


def _layout(elffile: ELFFile, elf: ElfImage, loads: List[ProgramHeader]) -> bytearray:
    top = max(elf.segment_range(header)[1] for header in loads)
    memory = bytearray(top - elf.base)
    stream = elffile.stream
    for header in loads:
        if header.p_filesz > header.p_memsz:
            raise ImageLoadError(f"segment at 0x{header.p_vaddr:X} has p_filesz > p_memsz")
        stream.seek(header.p_offset)
        data = stream.read(header.p_filesz)
        if len(data) != header.p_filesz:
            raise ImageLoadError(f"segment at 0x{header.p_vaddr:X} is truncated in the file")
        offset = header.p_vaddr - elf.load_bias
        memory[offset : offset + len(data)] = data
    return memory


def _collect_symbols(elffile: ELFFile, elf: ElfImage):
    for section in elffile.iter_sections():
        if not isinstance(section, SymbolTableSection):
            continue
        for symbol in section.iter_symbols():
            if not symbol.name or symbol["st_shndx"] == "SHN_UNDEF":
                continue
            if symbol["st_info"]["type"] not in ("STT_FUNC", "STT_OBJECT"):
                continue
            yield symbol.name, elf.to_runtime(symbol["st_value"])
