import pytest

from armreloc.bits import RewriteError, align4, get_bits
from armreloc.t16 import (
    T16Type,
    get_type,
    parse_it,
    rewrite,
    rewrite_it_else,
    rewrite_it_then,
    rewrite_len,
)
from armreloc.txx import ThumbRewriteInfo

PC = 0x1004


@pytest.fixture
def rinfo():
    return ThumbRewriteInfo(start_addr=0x2000, end_addr=0x2008, buf=0x9000, inst_lens=[12, 8, 4, 4])


def _word(lo, hi):
    return lo | (hi << 16)


@pytest.mark.parametrize(
    "inst, expected",
    [
        (0xBF08, T16Type.IT_T1),
        (0xBF00, T16Type.IGNORED),
        (0xD0FE, T16Type.B_T1),
        (0xDEFE, T16Type.IGNORED),
        (0xDFFE, T16Type.IGNORED),
        (0xE7FE, T16Type.B_T2),
        (0x4778, T16Type.BX_T1),
        (0x4478, T16Type.ADD_REG_T2),
        (0x4678, T16Type.MOV_REG_T1),
        (0xA001, T16Type.ADR_T1),
        (0x4801, T16Type.LDR_LIT_T1),
        (0xB108, T16Type.CBZ_T1),
        (0xB908, T16Type.CBNZ_T1),
        (0x2001, T16Type.IGNORED),
    ],
)
def test_get_type(inst, expected):
    assert get_type(inst) is expected


@pytest.mark.parametrize("inst", [0xD001, 0xE001, 0x4778, 0x4478, 0x4678, 0xA001, 0x4801, 0xB108, 0xB908, 0x2001])
def test_rewrite_length_matches_table(inst, rinfo):
    assert len(rewrite(inst, PC, rinfo)) * 2 == rewrite_len(inst)


def test_it_has_no_own_rewrite_length():
    assert rewrite_len(0xBF08) == 0


def test_ignored_is_copied_with_nop(rinfo):
    assert rewrite(0x2001, PC, rinfo) == [0x2001, 0xBF00]


def test_b_t2_absolute_target(rinfo):
    out = rewrite(0xE000, PC, rinfo)
    assert out[:2] == [0xF8DF, 0xF000]
    assert _word(out[2], out[3]) == PC | 1


def test_b_t1_keeps_condition(rinfo):
    inst = 0xD100
    out = rewrite(inst, PC, rinfo)
    assert out[0] == inst & 0xFF00
    assert out[1] == 0xE003
    assert _word(out[4], out[5]) == PC | 1


def test_b_t2_into_overwritten_range_is_fixed(rinfo):
    pc = rinfo.start_addr + 4
    out = rewrite(0xE7FE, pc, rinfo)  # branch to itself - 4 == start_addr
    assert _word(out[2], out[3]) == rinfo.buf | 1


def test_bx_pc_targets_arm_pc(rinfo):
    out = rewrite(0x4778, PC, rinfo)
    assert _word(out[2], out[3]) == PC


def test_add_and_mov_embed_pc(rinfo):
    add = rewrite(0x4478, PC, rinfo)
    mov = rewrite(0x4678, PC, rinfo)
    assert _word(add[6], add[7]) == PC
    assert _word(mov[4], mov[5]) == PC
    assert mov[0] == 0xF8DF


def test_adr_literal_address(rinfo):
    out = rewrite(0xA002, PC, rinfo)
    assert _word(out[2], out[3]) == align4(PC) + 2 * 4


def test_ldr_literal_address(rinfo):
    out = rewrite(0x4803, PC, rinfo)
    assert _word(out[2], out[3]) == align4(PC) + 3 * 4
    assert out[5] == 0xBF00


@pytest.mark.parametrize("inst", [0xA000, 0x4800])
def test_literal_in_overwritten_range_fails(inst, rinfo):
    with pytest.raises(RewriteError):
        rewrite(inst, rinfo.start_addr + 4, rinfo)


def test_cbz_into_overwritten_range_is_fixed(rinfo):
    pc = rinfo.start_addr
    out = rewrite(0xB108, pc, rinfo)  # CBZ r0, target pc + 2
    assert out[0] == 0xB108 & 0xFD07
    assert _word(out[4], out[5]) == (rinfo.buf + rinfo.inst_lens[0]) | 1


def test_parse_it_rejects_non_it():
    assert parse_it(0x2001, [0x2001], PC) is None


def test_parse_it_ite_orders_else_first():
    following = [0x2001, 0x2002]
    it = parse_it(0xBF0C, following, PC)  # ITE EQ
    assert it.insts_cnt == len(following)
    assert it.insts_else_cnt == 1
    assert it.insts == (following[1], following[0])
    assert it.pcs == (PC + 2 + 2, PC + 2)
    assert it.insts_len == 2 * len(following)


def test_parse_it_with_thumb32_instruction():
    following = [0xF8DF, 0xF000]
    it = parse_it(0xBF08, following, PC)  # IT EQ
    assert it.insts == tuple(following)
    assert it.insts_else_cnt == 0
    assert it.insts_len == 2 * len(following)


def test_parse_it_truncated():
    with pytest.raises(ValueError):
        parse_it(0xBF0C, [0x2001], PC)


def test_rewrite_it_else_uses_first_condition():
    it = parse_it(0xBF14, [0x2001, 0x2002], PC)  # ITE NE
    out = rewrite_it_else(12, it)
    assert get_bits(out[0], 11, 8) == it.firstcond
    assert get_bits(out[0], 7, 0) * 2 == 12
    assert out[1] == 0xBF00


def test_rewrite_it_then_offset():
    out = rewrite_it_then(16)
    assert out[0] & 0xF800 == 0xE000
    assert get_bits(out[0], 10, 0) * 2 == 16
    assert out[1] == 0xBF00