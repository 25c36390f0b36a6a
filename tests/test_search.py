import pytest

from xzdasm import (
    CodeBuffer,
    PrologueMode,
    ResyncPolicy,
    find_call_instruction,
    find_function_prologue,
    find_lea_instruction,
)

BASE = 0x401000

# push rbp; mov rbp, rsp; call +0x10; ret
PROLOGUE_CALL = bytes.fromhex("55" "4889e5" "e810000000" "c3")
CALL_END = BASE + 9


def test_call_with_exact_target_matches_third_instruction():
    code = CodeBuffer(PROLOGUE_CALL, BASE)

    match = find_call_instruction(code, BASE, code.end, CALL_END + 0x10)

    assert match is not None
    assert match.start == BASE + 4
    assert match.operand == 0x10


@pytest.mark.parametrize("delta", [-1, 1])
def test_call_with_off_by_one_target_is_rejected(delta):
    code = CodeBuffer(PROLOGUE_CALL, BASE)

    assert find_call_instruction(code, BASE, code.end, CALL_END + 0x10 + delta) is None


def test_null_target_matches_first_call():
    # call rax; call +0x10
    code = CodeBuffer(bytes.fromhex("90" "ffd0" "e810000000"), BASE)

    match = find_call_instruction(code, BASE, code.end)

    assert match is not None
    assert match.start == BASE + 1
    assert match.modrm_reg == 2


def test_call_through_got_slot():
    # call qword ptr [rip+0x2fe2]
    code = CodeBuffer(bytes.fromhex("55" "ff15e22f0000" "c3"), BASE)
    slot = BASE + 7 + 0x2FE2

    assert find_call_instruction(code, BASE, code.end, slot).start == BASE + 1
    assert find_call_instruction(code, BASE, code.end, slot + 8) is None


def test_jumps_are_not_calls():
    code = CodeBuffer(bytes.fromhex("e910000000" "ffe0"), BASE)

    assert find_call_instruction(code, BASE, code.end) is None


def test_matched_call_lies_within_search_range():
    code = CodeBuffer(bytes.fromhex("9090" "e800000000" "e800000000"), BASE)

    for end in range(BASE, code.end + 1):
        match = find_call_instruction(code, BASE, end)
        if match is None:
            assert end < BASE + 7
            continue
        assert BASE <= match.start and match.end <= end


def test_call_scan_stops_on_undecodable_bytes_by_default():
    code = CodeBuffer(bytes.fromhex("06" "e800000000"), BASE)

    assert find_call_instruction(code, BASE, code.end) is None
    match = find_call_instruction(code, BASE, code.end, policy=ResyncPolicy.SKIP_BYTE)
    assert match is not None and match.start == BASE + 1


def test_lea_with_disp8_and_disp32():
    code = CodeBuffer(
        bytes.fromhex("488d7b10" "488d75f8" "488d942400020000"),
        BASE,
    )

    assert find_lea_instruction(code, BASE, code.end, 0x10)
    assert find_lea_instruction(code, BASE, code.end, -8)
    assert find_lea_instruction(code, BASE, code.end, 0x200)
    assert not find_lea_instruction(code, BASE, code.end, 0x20)


def test_lea_ignores_rip_relative_and_other_opcodes():
    # lea rax, [rip+0x10]; mov rax, [rbx+0x10]
    code = CodeBuffer(bytes.fromhex("488d0510000000" "488b4310"), BASE)

    assert not find_lea_instruction(code, BASE, code.end, 0x10)


def test_lea_outside_range_is_not_found():
    code = CodeBuffer(bytes.fromhex("90" "488d7b10"), BASE)

    assert not find_lea_instruction(code, BASE, BASE + 4, 0x10)
    assert find_lea_instruction(code, BASE, BASE + 5, 0x10)


ENDBR_ONLY = bytes.fromhex("f30f1efa")
PADDING_ONLY = bytes.fromhex("c3" "90" "660f1f440000" "55" "4889e5")


def test_landing_pad_strategy_finds_marker():
    code = CodeBuffer(bytes.fromhex("c3cccc") + ENDBR_ONLY + b"\x55", BASE)

    assert find_function_prologue(code, BASE, code.end, PrologueMode.ENDBR64) == BASE + 3


def test_prologue_strategies_are_independent():
    endbr = CodeBuffer(ENDBR_ONLY, BASE)
    padding = CodeBuffer(PADDING_ONLY, BASE)

    assert find_function_prologue(endbr, BASE, endbr.end, PrologueMode.ENDBR64) == BASE
    assert find_function_prologue(endbr, BASE, endbr.end, PrologueMode.PADDING) is None

    assert find_function_prologue(padding, BASE, padding.end, PrologueMode.PADDING) == BASE + 8
    assert find_function_prologue(padding, BASE, padding.end, PrologueMode.ENDBR64) is None


def test_landing_pad_must_fit_before_end():
    code = CodeBuffer(ENDBR_ONLY, BASE)

    assert find_function_prologue(code, BASE, BASE + 3, PrologueMode.ENDBR64) is None


def test_padding_running_into_end_is_not_a_prologue():
    code = CodeBuffer(bytes.fromhex("c3909090"), BASE)

    assert find_function_prologue(code, BASE, code.end, PrologueMode.PADDING) is None


def test_padding_ignores_pause_and_xchg():
    code = CodeBuffer(bytes.fromhex("c3" "4990" "f390" "55"), BASE)

    assert find_function_prologue(code, BASE, code.end, PrologueMode.PADDING) is None


def test_int3_padding_is_opt_in():
    code = CodeBuffer(bytes.fromhex("c3cccc55"), BASE)

    assert find_function_prologue(code, BASE, code.end, PrologueMode.PADDING) is None
    assert (
        find_function_prologue(code, BASE, code.end, PrologueMode.PADDING, int3_padding=True)
        == BASE + 3
    )


def test_lea_accepts_unsigned_displacement():
    code = CodeBuffer(bytes.fromhex("488d75f8"), BASE)

    assert find_lea_instruction(code, BASE, code.end, 0xFFFFFFFFFFFFFFF8)
    assert not find_lea_instruction(code, BASE, code.end, 0xFFFFFFF8)


@pytest.mark.parametrize(
    "leading",
    [
        # add rax, 0x12345678 with a redundant operand-size prefix
        "664881c078563412",
        # xlat
        "d7",
        # mov rax, cr0; mov dr7, rax
        "0f20c0" "0f23f8",
    ],
)
def test_call_found_after_less_common_encodings(leading):
    code = CodeBuffer(bytes.fromhex(leading + "e800000000"), BASE)

    match = find_call_instruction(code, BASE, code.end)

    assert match is not None
    assert match.start == BASE + len(leading) // 2
