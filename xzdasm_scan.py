#!/usr/bin/env python3
"""Command-line interface for the x86-64 pattern scanner."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from xzdasm import (
    CodeBuffer,
    ElfImage,
    FlagMatch,
    Listing,
    MappedImage,
    PrologueMode,
    ResyncPolicy,
    ScanConfig,
    SegmentFlags,
    elf_contains_segment,
    find_call_instruction,
    find_function_prologue,
    find_lea_instruction,
)

logger = logging.getLogger("xzdasm_scan")


def _number(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None


def _segment_flags(text: str) -> int:
    letters = text.lower()
    if letters and set(letters) <= set("rwx"):
        flags = SegmentFlags.NONE
        for letter in letters:
            flags |= SegmentFlags[letter.upper()]
        return int(flags)
    return _number(text)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", type=Path, help="ELF file, or a raw code blob with --raw")
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Treat the input as raw code bytes mapped at --base",
    )
    parser.add_argument(
        "--base",
        type=_number,
        default=None,
        help="Load address (raw blobs default to 0, ELF files to their first PT_LOAD vaddr)",
    )
    parser.add_argument("--start", type=_number, default=None, help="First address to scan")
    parser.add_argument("--end", type=_number, default=None, help="Address to stop scanning at")
    parser.add_argument("--config", type=Path, default=None, help="JSON scan profile")
    parser.add_argument(
        "--resync",
        choices=[policy.value for policy in ResyncPolicy],
        default=None,
        help="Override the profile's behaviour on undecodable bytes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    listing = commands.add_parser("listing", help="Print a linear sweep of the range")
    listing.add_argument("--max-instructions", type=int, default=None)
    listing.add_argument("--out", type=Path, default=None, help="Write the listing to a file")

    calls = commands.add_parser("calls", help="Find a call instruction")
    target = calls.add_mutually_exclusive_group()
    target.add_argument("--target", type=_number, default=None, help="Absolute call target")
    target.add_argument("--symbol", default=None, help="Resolve the call target from the symbol table")

    lea = commands.add_parser("lea", help="Find an lea with the given displacement")
    lea.add_argument("displacement", type=_number)

    prologue = commands.add_parser("prologue", help="Find the next function entry point")
    prologue.add_argument(
        "--mode",
        choices=[mode.value for mode in PrologueMode],
        default=PrologueMode.ENDBR64.value,
    )
    prologue.add_argument("--int3-padding", action="store_true", default=None)

    segment = commands.add_parser("segment", help="Check that a range is mapped by a segment")
    segment.add_argument("vaddr", type=_number)
    segment.add_argument("size", type=_number)
    segment.add_argument("--flags", type=_segment_flags, default=int(SegmentFlags.R), help="e.g. rx or 0x5")
    segment.add_argument("--step", type=int, default=1, help="Signed program header stride")
    segment.add_argument("--match", choices=[match.value for match in FlagMatch], default=None)
    segment.add_argument("--span", action="store_true", default=None)
    segment.add_argument(
        "--file-relative",
        action="store_true",
        help="Interpret vaddr as a file-declared address",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ScanConfig:
    config = ScanConfig.load(args.config) if args.config else ScanConfig()
    if args.resync:
        config = replace(config, resync=ResyncPolicy(args.resync))
    if getattr(args, "match", None):
        config = replace(config, flag_match=FlagMatch(args.match))
    if getattr(args, "span", None):
        config = replace(config, span_segments=True)
    if getattr(args, "int3_padding", None):
        config = replace(config, int3_padding=True)
    return config


def load_input(args: argparse.Namespace) -> Tuple[CodeBuffer, Optional[MappedImage]]:
    if not args.input.exists():
        raise SystemExit(f"missing input file: {args.input}")
    if args.raw:
        base = args.base if args.base is not None else 0
        return CodeBuffer(args.input.read_bytes(), base), None
    image = MappedImage.load(args.input, base=args.base)
    return image.code, image


def resolve_ranges(
    args: argparse.Namespace, code: CodeBuffer, image: Optional[MappedImage]
) -> List[Tuple[int, int]]:
    if args.start is not None:
        return [(args.start, args.end if args.end is not None else code.end)]
    if image is not None:
        ranges = image.executable_ranges()
        if args.end is not None:
            ranges = [(lo, min(hi, args.end)) for lo, hi in ranges if lo < args.end]
        return ranges
    return [(code.base, args.end if args.end is not None else code.end)]


def run_calls(args, config, code, image, ranges) -> int:
    target = args.target
    if args.symbol:
        if image is None:
            raise SystemExit("--symbol requires an ELF input")
        target = image.symbol_address(args.symbol)
        if target is None:
            raise SystemExit(f"unknown symbol: {args.symbol}")
    for start, end in ranges:
        match = find_call_instruction(code, start, end, target, policy=config.policy())
        if match is not None:
            print(match.format())
            return 0
    print("call not found")
    return 1


def run_lea(args, config, code, image, ranges) -> int:
    for start, end in ranges:
        if find_lea_instruction(code, start, end, args.displacement, policy=config.policy()):
            print(f"lea with displacement {args.displacement:#x} found in 0x{start:X}-0x{end:X}")
            return 0
    print("lea not found")
    return 1


def run_prologue(args, config, code, image, ranges) -> int:
    mode = PrologueMode(args.mode)
    for start, end in ranges:
        address = find_function_prologue(code, start, end, mode, int3_padding=config.int3_padding)
        if address is not None:
            print(f"prologue at 0x{address:X}")
            return 0
    print("prologue not found")
    return 1


def run_segment(args, config, code, image, ranges) -> int:
    if image is None:
        raise SystemExit("segment checks require an ELF input")
    elf: ElfImage = image.elf
    found = elf_contains_segment(
        elf,
        args.vaddr,
        args.size,
        args.flags,
        args.step,
        match=config.flag_match,
        file_relative=args.file_relative,
        span=config.span_segments,
    )
    flags = SegmentFlags(args.flags)
    print(f"0x{args.vaddr:X}+{args.size:#x} {'is' if found else 'is not'} mapped with {flags!r}")
    return 0 if found else 1


def run_listing(args, config, code, image, ranges) -> int:
    renderer = Listing(policy=config.policy(ResyncPolicy.SKIP_BYTE))
    text = "".join(
        renderer.generate_listing(code, start, end, max_instructions=args.max_instructions)
        for start, end in ranges
    )
    if args.out:
        args.out.write_text(text, "utf-8")
        print(f"listing written to {args.out}")
    else:
        sys.stdout.write(text)
    return 0


COMMANDS = {
    "listing": run_listing,
    "calls": run_calls,
    "lea": run_lea,
    "prologue": run_prologue,
    "segment": run_segment,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(args)
        code, image = load_input(args)
    except ValueError as exc:
        raise SystemExit(f"error: {exc}") from exc

    ranges = resolve_ranges(args, code, image)
    logger.debug("scanning %d range(s) with %s", len(ranges), config)
    try:
        return COMMANDS[args.command](args, config, code, image, ranges)
    except ValueError as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    raise SystemExit(main())
