from pathlib import Path

from xzdasm import CodeBuffer, Listing, ResyncPolicy

BASE = 0x1000


def test_listing_renders_each_instruction():
    code = CodeBuffer(bytes.fromhex("f30f1efa" "55" "4889e5" "e810000000" "c3"), BASE)

    listing = Listing().generate_listing(code)
    lines = listing.splitlines()

    assert lines[0] == "; range 0x1000-0x100E length=14"
    assert "endbr64" in lines[1]
    assert lines[2].startswith("00001004: 55")
    assert "push" in lines[2]
    assert "call" in lines[4] and "0x101D" in lines[4]
    assert "ret" in lines[5]


def test_listing_marks_undecodable_bytes():
    code = CodeBuffer(bytes.fromhex("06" "c3"), BASE)

    swept = Listing().generate_listing(code)
    stopped = Listing(policy=ResyncPolicy.STOP).generate_listing(code)

    assert ".byte" in swept and "ret" in swept
    assert "; decode stopped" in stopped
    assert "ret" not in stopped


def test_listing_truncates_and_writes(tmp_path: Path):
    code = CodeBuffer(b"\x90" * 8, BASE)
    output = tmp_path / "out.lst"

    Listing().write_listing(code, output, max_instructions=2)

    text = output.read_text("utf-8")
    assert text.count("nop") == 2
    assert "; ... truncated ..." in text
