import struct
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, Tuple

import pytest

EM_X86_64 = 62
EM_386 = 3

PT_LOAD = 1
PT_DYNAMIC = 2

SHT_SYMTAB = 2
SHT_STRTAB = 3
SHN_ABS = 0xFFF1

STB_GLOBAL = 1
STT_OBJECT = 1
STT_FUNC = 2

_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")
_SHDR = struct.Struct("<IIQQQQIIQQ")
_SYM = struct.Struct("<IBBHQQ")

# (p_type, p_flags, p_vaddr, data, p_memsz)
SegmentSpec = Tuple[int, int, int, bytes, int]
# (name, st_type, value)
SymbolSpec = Tuple[str, int, int]


def _align(value: int, alignment: int = 8) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def build_elf(
    segments: Sequence[SegmentSpec],
    symbols: Iterable[SymbolSpec] = (),
    *,
    machine: int = EM_X86_64,
) -> bytes:
    """Assemble a small ELF64 executable with a symbol table."""

    symbols = list(symbols)
    phoff = _EHDR.size
    cursor = phoff + _PHDR.size * len(segments)

    blobs: List[Tuple[int, bytes]] = []
    phdrs = b""
    for p_type, p_flags, p_vaddr, data, p_memsz in segments:
        cursor = _align(cursor, 16)
        phdrs += _PHDR.pack(p_type, p_flags, cursor, p_vaddr, p_vaddr, len(data), p_memsz, 0x10)
        blobs.append((cursor, data))
        cursor += len(data)

    strtab = b"\0"
    symtab = bytes(_SYM.size)
    for name, st_type, value in symbols:
        symtab += _SYM.pack(len(strtab), (STB_GLOBAL << 4) | st_type, 0, SHN_ABS, value, 0)
        strtab += name.encode("ascii") + b"\0"
    shstrtab = b"\0.symtab\0.strtab\0.shstrtab\0"

    cursor = _align(cursor)
    symtab_off = cursor
    cursor += len(symtab)
    strtab_off = cursor
    cursor += len(strtab)
    shstrtab_off = cursor
    cursor += len(shstrtab)
    shoff = _align(cursor)

    shdrs = bytes(_SHDR.size)
    shdrs += _SHDR.pack(1, SHT_SYMTAB, 0, 0, symtab_off, len(symtab), 2, 1, 8, _SYM.size)
    shdrs += _SHDR.pack(9, SHT_STRTAB, 0, 0, strtab_off, len(strtab), 0, 0, 1, 0)
    shdrs += _SHDR.pack(17, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0)

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    entry = segments[0][2] if segments else 0
    header = _EHDR.pack(
        ident, 2, machine, 1, entry, phoff, shoff, 0,
        _EHDR.size, _PHDR.size, len(segments), _SHDR.size, 4, 3,
    )

    image = bytearray(shoff + len(shdrs))
    image[0 : len(header)] = header
    image[phoff : phoff + len(phdrs)] = phdrs
    for offset, data in blobs:
        image[offset : offset + len(data)] = data
    image[symtab_off : symtab_off + len(symtab)] = symtab
    image[strtab_off : strtab_off + len(strtab)] = strtab
    image[shstrtab_off : shstrtab_off + len(shstrtab)] = shstrtab
    image[shoff:] = shdrs
    return bytes(image)


# call target_fn; nop padding; target_fn: push rbp; mov rbp, rsp; ret
SAMPLE_TEXT = (
    bytes.fromhex("e80b000000")
    + b"\x90" * 11
    + bytes.fromhex("554889e5c3")
)
SAMPLE_DATA = bytes.fromhex("deadbeef")


@pytest.fixture
def make_elf(tmp_path: Path) -> Callable[..., Path]:
    def _make(segments, symbols=(), *, machine=EM_X86_64, name="sample.elf") -> Path:
        path = tmp_path / name
        path.write_bytes(build_elf(segments, symbols, machine=machine))
        return path

    return _make


@pytest.fixture
def sample_elf(make_elf) -> Path:
    return make_elf(
        [
            (PT_LOAD, 0x5, 0x400000, SAMPLE_TEXT, len(SAMPLE_TEXT)),
            (PT_LOAD, 0x6, 0x401000, SAMPLE_DATA, 0x10),
        ],
        [
            ("target_fn", STT_FUNC, 0x400010),
            ("data_obj", STT_OBJECT, 0x401000),
        ],
    )
