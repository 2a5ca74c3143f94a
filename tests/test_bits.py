import pytest

from armreloc.bits import (
    HookError,
    RewriteError,
    align4,
    arm_expand_imm,
    clear_bit0,
    get_bit,
    get_bits,
    is_thumb,
    is_thumb32,
    set_bit0,
    sign_extend,
)


@pytest.mark.parametrize("value", [0, 1, 0xF8DF, 0xE51FF004, 0xFFFFFFFF])
def test_get_bits_full_range_is_identity(value):
    assert get_bits(value, 31, 0) == value


@pytest.mark.parametrize("n", range(0, 32, 5))
def test_get_bit_matches_single_bit_field(n):
    value = 0xE92D8000
    assert get_bit(value, n) == get_bits(value, n, n)


def test_get_bits_rejects_inverted_range():
    with pytest.raises(ValueError):
        get_bits(0xFF, 2, 5)


def test_get_bits_reassembles_value():
    value = 0x0A000000
    assert (get_bits(value, 31, 16) << 16) | get_bits(value, 15, 0) == value


def test_sign_extend_negative():
    assert sign_extend(0x100, 9) == 0xFFFFFF00


def test_sign_extend_positive_unchanged():
    assert sign_extend(0x0FE, 9) == 0x0FE


def test_sign_extend_64_bit_width():
    assert sign_extend(1 << 20, 21, 64) >> 63 == 1


def test_sign_extend_rejects_bad_width():
    with pytest.raises(ValueError):
        sign_extend(1, 40, 32)


@pytest.mark.parametrize("addr", [0, 1, 2, 3, 0x1001, 0x1006])
def test_align4_invariants(addr):
    aligned = align4(addr)
    assert aligned % 4 == 0
    assert 0 <= addr - aligned < 4


@pytest.mark.parametrize("addr", [0x1000, 0x1002, 0xFFFFFFFE])
def test_thumb_bit_round_trip(addr):
    assert is_thumb(set_bit0(addr))
    assert not is_thumb(addr)
    assert clear_bit0(set_bit0(addr)) == addr


@pytest.mark.parametrize(
    "halfword, expected",
    [(0xF8DF, True), (0xF000, True), (0xE8D0, True), (0xE000, False), (0xBF00, False), (0x4778, False)],
)
def test_is_thumb32(halfword, expected):
    assert is_thumb32(halfword) is expected


def test_arm_expand_imm_without_rotation():
    assert arm_expand_imm(0x0AB) == 0xAB


def test_arm_expand_imm_with_rotation():
    assert arm_expand_imm(0x4FF) == 0xFF000000


def test_rewrite_error_keeps_message_when_caught_as_hook_error():
    error = RewriteError("relocation failed")
    with pytest.raises(HookError) as excinfo:
        raise error
    assert excinfo.value is error
    assert str(excinfo.value) == "relocation failed"