"""Public package exports for the x86-64 pattern scanner."""

from .buffer import CodeBuffer
from .config import ConfigError, ScanConfig
from .decoder import ResyncPolicy, decode, iter_instructions
from .elf import ElfImage, FlagMatch, IterationStep, ProgramHeader, SegmentFlags, elf_contains_segment
from .image import ImageLoadError, MappedImage
from .instruction import DecodedInstruction, ModRmMod, PrefixFlags, split_modrm
from .listing import Listing
from .opcodes import OPCODE_BIAS, bias_opcode, unbias_opcode
from .search import PrologueMode, find_call_instruction, find_function_prologue, find_lea_instruction

__all__ = [
    "CodeBuffer",
    "ConfigError",
    "ScanConfig",
    "ResyncPolicy",
    "decode",
    "iter_instructions",
    "ElfImage",
    "FlagMatch",
    "IterationStep",
    "ProgramHeader",
    "SegmentFlags",
    "elf_contains_segment",
    "ImageLoadError",
    "MappedImage",
    "DecodedInstruction",
    "ModRmMod",
    "PrefixFlags",
    "split_modrm",
    "Listing",
    "OPCODE_BIAS",
    "bias_opcode",
    "unbias_opcode",
    "PrologueMode",
    "find_call_instruction",
    "find_function_prologue",
    "find_lea_instruction",
]
