import pytest

from armreloc.a32 import (
    A32RewriteInfo,
    A32Type,
    absolute_jump,
    get_type,
    relative_jump,
    rewrite,
    rewrite_len,
)
from armreloc.bits import RewriteError, sign_extend


def far_info():
    return A32RewriteInfo(start_addr=0x100000, end_addr=0x100008, buf=0x900000, inst_lens=[4, 4])


@pytest.mark.parametrize(
    "inst, kind",
    [
        (0xEA000000, A32Type.B_A1),
        (0x0A000000, A32Type.B_A1),
        (0xE12FFF1F, A32Type.BX_A1),
        (0xEB000000, A32Type.BL_IMM_A1),
        (0xFA000000, A32Type.BLX_IMM_A2),
        (0xE08F0001, A32Type.ADD_REG_A1),
        (0xE08FF001, A32Type.ADD_REG_PC_A1),
        (0xE04F0001, A32Type.SUB_REG_A1),
        (0xE28F0004, A32Type.ADR_A1),
        (0xE24F0004, A32Type.ADR_A2),
        (0xE1A0000F, A32Type.MOV_REG_A1),
        (0xE1A0F00F, A32Type.MOV_REG_PC_A1),
        (0xE59F0004, A32Type.LDR_LIT_A1),
        (0xE59FF004, A32Type.LDR_LIT_PC_A1),
        (0xE5DF0004, A32Type.LDRB_LIT_A1),
        (0xE79F0001, A32Type.LDR_REG_A1),
        (0xE79FF001, A32Type.LDR_REG_PC_A1),
        (0xE1A00000, A32Type.IGNORED),
        (0xE12FFF1E, A32Type.IGNORED),
    ],
)
def test_get_type(inst, kind):
    assert get_type(inst) is kind


@pytest.mark.parametrize(
    "inst, pc",
    [
        (0xEA000000, 0x2008),
        (0x0A000000, 0x2008),
        (0xE12FFF1F, 0x2008),
        (0xEB000000, 0x2008),
        (0xFA000000, 0x2008),
        (0xE08F0001, 0x2008),
        (0xE08FF001, 0x2008),
        (0xE04F0001, 0x2008),
        (0xE28F0004, 0x2008),
        (0xE24F0004, 0x2008),
        (0xE1A0000F, 0x2008),
        (0xE1A0F00F, 0x2008),
        (0xE59F0004, 0x2008),
        (0xE59FF004, 0x2008),
        (0xE5DF0004, 0x2008),
        (0xE79F0001, 0x2008),
        (0xE79FF001, 0x2008),
        (0xE1A00000, 0x2008),
    ],
)
def test_rewrite_size_matches_rewrite_len(inst, pc):
    assert len(rewrite(inst, pc, far_info())) * 4 == rewrite_len(inst)


def test_rewrite_len_pinned_values():
    assert rewrite_len(0xE1A00000) == 4
    assert rewrite_len(0xEB000000) == 16
    assert rewrite_len(0xE59FF004) == 36


def test_ignored_passes_through():
    assert rewrite(0xE1A00000, 0x2008, far_info()) == [0xE1A00000]


def test_rewrite_b_always():
    assert rewrite(0xEA000000, 0x2008, far_info()) == [0xE59FF000, 0xEA000000, 0x2008]


def test_rewrite_b_conditional_keeps_condition():
    out = rewrite(0x0A000000, 0x2008, far_info())
    assert out == [0x059FF000, 0xEA000000, 0x2008]


def test_rewrite_bl_sets_link_register():
    out = rewrite(0xEB000000, 0x2008, far_info())
    assert out == [0xE28FE008, 0xE59FF000, 0xEA000000, 0x2008]


def test_rewrite_blx_switches_to_thumb():
    out = rewrite(0xFA000000, 0x2008, far_info())
    assert out[-1] == 0x2009
    assert out[0] == 0xE28FE008


def test_rewrite_b_into_overwritten_range_is_fixed():
    rinfo = A32RewriteInfo(start_addr=0x1000, end_addr=0x1008, buf=0x9000, inst_lens=[12, 4])
    # B with imm24 = -2 words from PC 0x1008 lands on 0x1000.
    out = rewrite(0xEAFFFFFE, 0x1008, rinfo)
    assert out[-1] == 0x9000


def test_fix_addr_skips_relocated_instructions():
    rinfo = A32RewriteInfo(start_addr=0x1000, end_addr=0x1008, buf=0x9000, inst_lens=[12, 4])
    assert rinfo.fix_addr(0x1004) == 0x9000 + 12
    assert rinfo.fix_addr(0x1008) == 0x1008
    assert rinfo.fix_addr(0x0FFC) == 0x0FFC


def test_needs_fix_boundaries():
    rinfo = A32RewriteInfo(start_addr=0x1000, end_addr=0x1008, buf=0x9000)
    assert rinfo.needs_fix(0x1000)
    assert rinfo.needs_fix(0x1007)
    assert not rinfo.needs_fix(0x1008)
    assert not rinfo.needs_fix(0x0FFF)


def test_rewrite_adr_a1():
    out = rewrite(0xE28F0004, 0x2008, far_info())
    assert out == [0xE59F0000, 0xEA000000, 0x2008 + 4]


def test_rewrite_adr_a2():
    out = rewrite(0xE24F0004, 0x2008, far_info())
    assert out[-1] == 0x2008 - 4


def test_rewrite_adr_inside_range_fails():
    rinfo = A32RewriteInfo(start_addr=0x2000, end_addr=0x2010, buf=0x9000, inst_lens=[4, 4])
    with pytest.raises(RewriteError):
        rewrite(0xE28F0004, 0x2008, rinfo)


def test_rewrite_ldr_literal():
    out = rewrite(0xE59F0004, 0x2008, far_info())
    assert out[4] == 0x2008 + 4
    assert out[5] == 0xE5900000


def test_rewrite_ldr_literal_inside_range_fails():
    rinfo = A32RewriteInfo(start_addr=0x2000, end_addr=0x2010, buf=0x9000, inst_lens=[4, 4])
    with pytest.raises(RewriteError):
        rewrite(0xE59F0004, 0x2008, rinfo)


def test_rewrite_ldr_literal_into_pc():
    out = rewrite(0xE59FF004, 0x2008, far_info())
    assert out[5] == 0x2008 + 4
    assert out[-1] == 0xE8BD8001


def test_rewrite_mov_pc_pc():
    assert rewrite(0xE1A0F00F, 0x2008, far_info()) == [0xE59FF000, 0xEA000000, 0x2008]


def test_rewrite_mov_reg_uses_scratch_and_ends_with_pc():
    out = rewrite(0xE1A0000F, 0x2008, far_info())
    assert out[-1] == 0x2008
    # r0 is the destination, so r1 is the scratch register.
    assert out[4] == (0xE1A0000F & 0x0FFFFFF0) | 0xE0000000 | 1


def test_rewrite_add_ends_with_pc_value():
    out = rewrite(0xE08F0001, 0x2008, far_info())
    assert out[-1] == 0x2008
    assert out[1] == 0xEA000005


def test_rewrite_ldr_reg_pc_places_pc_value():
    out = rewrite(0xE79FF001, 0x2008, far_info())
    assert out[5] == 0x2008


def test_absolute_jump():
    assert absolute_jump(0x12345678) == [0xE51FF004, 0x12345678]


@pytest.mark.parametrize("addr, pc", [(0x3000, 0x2008), (0x1000, 0x2008), (0x2008, 0x2008)])
def test_relative_jump_round_trip(addr, pc):
    (word,) = relative_jump(addr, pc)
    assert word >> 24 == 0xEA
    offset = sign_extend((word & 0x00FFFFFF) << 2, 26)
    assert (pc + offset) & 0xFFFFFFFF == addr


def test_relative_jump_decodes_as_branch():
    (word,) = relative_jump(0x3000, 0x2008)
    assert get_type(word) is A32Type.B_A1
    out = rewrite(word, 0x2008, far_info())
    assert out[-1] == 0x3000