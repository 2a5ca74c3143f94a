"""Classification and relocation of 32-bit Thumb instructions."""

from __future__ import annotations

import logging
from enum import IntEnum

from armreloc.bits import (
    MASK16,
    MASK32,
    RewriteError,
    align4,
    clear_bit0,
    get_bit,
    get_bits,
    set_bit0,
    sign_extend,
)
from armreloc.txx import ThumbRewriteInfo

_log = logging.getLogger(__name__)

NOP = 0xBF00


class T32Type(IntEnum):
    IGNORED = 0
    B_T3 = 1
    B_T4 = 2
    BL_IMM_T1 = 3
    BLX_IMM_T2 = 4
    ADR_T2 = 5
    ADR_T3 = 6
    LDR_LIT_T2 = 7
    LDR_LIT_PC_T2 = 8
    LDRB_LIT_T1 = 9
    LDRD_LIT_T1 = 10
    LDRH_LIT_T1 = 11
    LDRSB_LIT_T1 = 12
    LDRSH_LIT_T1 = 13
    PLD_LIT_T1 = 14
    PLI_LIT_T3 = 15
    TBB_T1 = 16
    TBH_T1 = 17
    VLDR_LIT_T1 = 18


_REWRITE_LEN = {
    T32Type.IGNORED: 4,
    T32Type.B_T3: 12,
    T32Type.B_T4: 8,
    T32Type.BL_IMM_T1: 12,
    T32Type.BLX_IMM_T2: 12,
    T32Type.ADR_T2: 12,
    T32Type.ADR_T3: 12,
    T32Type.LDR_LIT_T2: 16,
    T32Type.LDR_LIT_PC_T2: 24,
    T32Type.LDRB_LIT_T1: 16,
    T32Type.LDRD_LIT_T1: 16,
    T32Type.LDRH_LIT_T1: 16,
    T32Type.LDRSB_LIT_T1: 16,
    T32Type.LDRSH_LIT_T1: 16,
    T32Type.PLD_LIT_T1: 20,
    T32Type.PLI_LIT_T3: 20,
    T32Type.TBB_T1: 32,
    T32Type.TBH_T1: 32,
    T32Type.VLDR_LIT_T1: 24,
}

_BRANCHES = (T32Type.B_T3, T32Type.B_T4, T32Type.BL_IMM_T1, T32Type.BLX_IMM_T2)
_LOADS = (
    T32Type.LDR_LIT_T2,
    T32Type.LDR_LIT_PC_T2,
    T32Type.LDRB_LIT_T1,
    T32Type.LDRD_LIT_T1,
    T32Type.LDRH_LIT_T1,
    T32Type.LDRSB_LIT_T1,
    T32Type.LDRSH_LIT_T1,
)

# First halfword of "LDRxx Rt, [Rt]" for each literal load, before adding Rt.
_LOAD_FROM_REG = {
    T32Type.LDR_LIT_T2: 0xF8D0,
    T32Type.LDRB_LIT_T1: 0xF890,
    T32Type.LDRD_LIT_T1: 0xE9D0,
    T32Type.LDRH_LIT_T1: 0xF8B0,
    T32Type.LDRSB_LIT_T1: 0xF990,
    T32Type.LDRSH_LIT_T1: 0xF9B0,
}


def _classify(inst: int) -> T32Type:
    if (inst & 0xF800D000) == 0xF0008000 and (inst & 0x03800000) != 0x03800000:
        return T32Type.B_T3
    if (inst & 0xF800D000) == 0xF0009000:
        return T32Type.B_T4
    if (inst & 0xF800D000) == 0xF000D000:
        return T32Type.BL_IMM_T1
    if (inst & 0xF800D000) == 0xF000C000:
        return T32Type.BLX_IMM_T2
    if (inst & 0xFBFF8000) == 0xF2AF0000:
        return T32Type.ADR_T2
    if (inst & 0xFBFF8000) == 0xF20F0000:
        return T32Type.ADR_T3
    if (inst & 0xFF7F0000) == 0xF85F0000:
        return T32Type.LDR_LIT_PC_T2 if (inst & 0xF000) == 0xF000 else T32Type.LDR_LIT_T2
    if (inst & 0xFF7F0000) == 0xF81F0000 and (inst & 0xF000) != 0xF000:
        return T32Type.LDRB_LIT_T1
    if (inst & 0xFF7F0000) == 0xE95F0000:
        return T32Type.LDRD_LIT_T1
    if (inst & 0xFF7F0000) == 0xF83F0000 and (inst & 0xF000) != 0xF000:
        return T32Type.LDRH_LIT_T1
    if (inst & 0xFF7F0000) == 0xF91F0000 and (inst & 0xF000) != 0xF000:
        return T32Type.LDRSB_LIT_T1
    if (inst & 0xFF7F0000) == 0xF93F0000 and (inst & 0xF000) != 0xF000:
        return T32Type.LDRSH_LIT_T1
    if (inst & 0xFF7FF000) == 0xF81FF000:
        return T32Type.PLD_LIT_T1
    if (inst & 0xFF7FF000) == 0xF91FF000:
        return T32Type.PLI_LIT_T3
    if (inst & 0xFFF0FFF0) == 0xE8D0F000:
        return T32Type.TBB_T1
    if (inst & 0xFFF0FFF0) == 0xE8D0F010:
        return T32Type.TBH_T1
    if (inst & 0xFF3F0C00) == 0xED1F0800:
        return T32Type.VLDR_LIT_T1
    return T32Type.IGNORED


def get_type(high_inst: int, low_inst: int) -> T32Type:
    """Classify a 32-bit Thumb instruction given as its two halfwords."""
    return _classify(((high_inst & MASK16) << 16) | (low_inst & MASK16))


def rewrite_len(high_inst: int, low_inst: int) -> int:
    """Size in bytes of the relocated form of the instruction."""
    return _REWRITE_LEN[get_type(high_inst, low_inst)]


def _halves(value: int) -> list[int]:
    return [value & MASK16, (value >> 16) & MASK16]


def _offset_addr(base: int, offset: int, add: bool) -> int:
    return (base + offset if add else base - offset) & MASK32


def _rewrite_b(
    high: int, low: int, pc: int, kind: T32Type, rinfo: ThumbRewriteInfo
) -> list[int]:
    j1 = get_bit(low, 13)
    j2 = get_bit(low, 11)
    s = get_bit(high, 10)
    i1 = int(j1 == s)
    i2 = int(j2 == s)

    if kind is T32Type.B_T3:
        x = (s << 20) | (j2 << 19) | (j1 << 18) | ((high & 0x3F) << 12) | ((low & 0x7FF) << 1)
        addr = set_bit0((pc + sign_extend(x, 21)) & MASK32)
    elif kind in (T32Type.B_T4, T32Type.BL_IMM_T1):
        x = (s << 24) | (i1 << 23) | (i2 << 22) | ((high & 0x3FF) << 12) | ((low & 0x7FF) << 1)
        addr = set_bit0((pc + sign_extend(x, 25)) & MASK32)
    else:
        # BLX switches to ARM, so the base PC is word-aligned.
        x = (s << 24) | (i1 << 23) | (i2 << 22) | ((high & 0x3FF) << 12) | ((low & 0x7FE) << 1)
        addr = (align4(pc) + sign_extend(x, 25)) & MASK32
    addr = rinfo.fix_addr(addr)

    out: list[int] = []
    if kind is T32Type.B_T3:
        cond = get_bits(high, 9, 6)
        out += [0xD000 | (cond << 8), 0xE003]  # B<c> #0 ; B #6
    elif kind in (T32Type.BL_IMM_T1, T32Type.BLX_IMM_T2):
        out += [0xF20F, 0x0E09]  # ADD LR, PC, #9
    out += [0xF8DF, 0xF000]  # LDR.W PC, [PC]
    out += _halves(addr)
    return out


def _rewrite_adr(
    high: int, low: int, pc: int, kind: T32Type, rinfo: ThumbRewriteInfo
) -> list[int]:
    rt = get_bits(low, 11, 8)
    imm32 = (get_bit(high, 10) << 11) | (get_bits(low, 14, 12) << 8) | get_bits(low, 7, 0)
    addr = _offset_addr(align4(pc), imm32, kind is T32Type.ADR_T3)
    if rinfo.needs_fix(addr):
        raise RewriteError(f"t32 adr target {addr:#x} lies inside the overwritten range")
    return [
        0xF8DF,  # LDR.W Rt, [PC, #4]
        ((rt << 12) + 4) & MASK16,
        0xE002,  # B #4
        NOP,
        *_halves(addr),
    ]


def _rewrite_ldr(
    high: int, low: int, pc: int, kind: T32Type, rinfo: ThumbRewriteInfo
) -> list[int]:
    add = bool(get_bit(high, 7))
    rt = get_bits(low, 15, 12)
    rt2 = 0
    if kind is T32Type.LDRD_LIT_T1:
        rt2 = get_bits(low, 11, 8)
        addr = _offset_addr(align4(pc), get_bits(low, 7, 0) << 2, add)
    else:
        addr = _offset_addr(align4(pc), get_bits(low, 11, 0), add)
    if rinfo.needs_fix(addr):
        raise RewriteError(f"t32 literal {addr:#x} lies inside the overwritten range")

    if kind is T32Type.LDR_LIT_PC_T2:
        return [
            0xB403,  # PUSH {R0, R1}
            NOP,
            0xF8DF,  # LDR.W R0, [PC, #4]
            0x0004,
            0xE002,  # B #4
            NOP,
            *_halves(addr),
            0xF8D0,  # LDR.W R0, [R0]
            0x0000,
            0x9001,  # STR R0, [SP, #4]
            0xBD01,  # POP {R0, PC}
        ]

    second = ((rt << 12) + (rt2 << 8)) & MASK16
    return [
        0xF8DF,  # LDR.W Rt, [PC, #4]
        ((rt << 12) | 4) & MASK16,
        0xE002,  # B #4
        NOP,
        *_halves(addr),
        (_LOAD_FROM_REG[kind] + rt) & MASK16,  # LDRxx Rt, [Rt]
        second,
    ]


def _rewrite_pl(
    high: int, low: int, pc: int, kind: T32Type, rinfo: ThumbRewriteInfo
) -> list[int]:
    addr = _offset_addr(align4(pc), get_bits(low, 11, 0), bool(get_bit(high, 7)))
    addr = rinfo.fix_addr(addr)
    hint = 0xF890 if kind is T32Type.PLD_LIT_T1 else 0xF990  # PLD / PLI [R0]
    return [
        0xB401,  # PUSH {R0}
        NOP,
        0xF8DF,  # LDR.W R0, [PC, #8]
        0x0008,
        hint,
        0xF000,
        0xBC01,  # POP {R0}
        0xE001,  # B #2
        *_halves(addr),
    ]


def _rewrite_tb(
    high: int, low: int, pc: int, kind: T32Type, rinfo: ThumbRewriteInfo
) -> list[int]:
    # A table branch can only be relocated as the last overwritten instruction.
    if clear_bit0(pc - 4) + 4 != rinfo.end_addr:
        raise RewriteError("table branch is not the last overwritten instruction")

    rn = get_bits(high, 3, 0)
    rm = get_bits(low, 3, 0)
    rx = next(r for r in range(7, -1, -1) if r not in (rn, rm))
    ry = next(r for r in range(7, -1, -1) if r not in (rn, rm, rx))
    base = rx if rn == 0xF else rn

    if kind is T32Type.TBB_T1:
        table = [
            0xEB00 | base,  # ADD.W Ry, Rx|Rn, Rm
            (ry << 8) | rm,
            0x7800 | (ry << 3) | ry,  # LDRB Ry, [Ry]
            NOP,
        ]
    else:
        table = [
            0xEB00 | base,  # ADD.W Ry, Rx|Rn, Rm, LSL #1
            0x0040 | (ry << 8) | rm,
            0x8800 | (ry << 3) | ry,  # LDRH Ry, [Ry]
            NOP,
        ]
    return [
        0xB500 | (1 << rx) | (1 << ry),  # PUSH {Rx, Ry, LR}
        NOP,
        0xF8DF,  # LDR.W Rx, [PC, #20]
        (rx << 12) | 20,
        *table,
        0xEB00 | rx,  # ADD Rx, Rx, Ry, LSL #1
        0x0040 | (rx << 8) | ry,
        0x3001 | (rx << 8),  # ADD Rx, #1
        0x9002 | (rx << 8),  # STR Rx, [SP, #8]
        0xBD00 | (1 << rx) | (1 << ry),  # POP {Rx, Ry, PC}
        NOP,
        *_halves(pc),
    ]


def _rewrite_vldr(high: int, low: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    d = get_bit(high, 6)
    vd = get_bits(low, 15, 12)
    size = get_bits(low, 9, 8)
    imm8 = get_bits(low, 7, 0)
    imm32 = imm8 << 1 if (8 << size) == 16 else imm8 << 2
    addr = _offset_addr(align4(pc), imm32, bool(get_bit(high, 7)))
    if rinfo.needs_fix(addr):
        raise RewriteError(f"t32 vldr literal {addr:#x} lies inside the overwritten range")
    return [
        0xB401,  # PUSH {R0}
        NOP,
        0xF8DF,  # LDR.W R0, [PC, #4]
        0x0004,
        0xE002,  # B #4
        NOP,
        *_halves(addr),
        0xED90 | (d << 6),  # VLDR Sd|Dd, [R0]
        (0x800 | (vd << 12) | (size << 8)) & MASK16,
        0xBC01,  # POP {R0}
        NOP,
    ]


def rewrite(high_inst: int, low_inst: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    """Relocate a 32-bit Thumb instruction executed with PC value ``pc``.

    Returns the relocated halfwords. Raises RewriteError when the instruction
    cannot be relocated.
    """
    high = high_inst & MASK16
    low = low_inst & MASK16
    pc &= MASK32
    kind = get_type(high, low)
    _log.info("t32 rewrite: type %d, high inst %x, low inst %x", kind, high, low)

    if kind in _BRANCHES:
        return _rewrite_b(high, low, pc, kind, rinfo)
    if kind in (T32Type.ADR_T2, T32Type.ADR_T3):
        return _rewrite_adr(high, low, pc, kind, rinfo)
    if kind in _LOADS:
        return _rewrite_ldr(high, low, pc, kind, rinfo)
    if kind in (T32Type.PLD_LIT_T1, T32Type.PLI_LIT_T3):
        return _rewrite_pl(high, low, pc, kind, rinfo)
    if kind in (T32Type.TBB_T1, T32Type.TBH_T1):
        return _rewrite_tb(high, low, pc, kind, rinfo)
    if kind is T32Type.VLDR_LIT_T1:
        return _rewrite_vldr(high, low, pc, rinfo)
    return [high, low]


def absolute_jump(is_align4: bool, addr: int) -> list[int]:
    """``LDR.W PC, [PC]`` followed by ``addr``, padded with a NOP when unaligned."""
    prefix = [] if is_align4 else [NOP]
    return [*prefix, 0xF8DF, 0xF000, *_halves(addr & MASK32)]


def relative_jump(addr: int, pc: int) -> list[int]:
    """Encode ``B.W`` (T4) from PC value ``pc`` to ``addr``."""
    imm32 = (addr - pc) & MASK32
    s = get_bit(imm32, 24)
    i1 = get_bit(imm32, 23)
    i2 = get_bit(imm32, 22)
    imm10 = get_bits(imm32, 21, 12)
    imm11 = get_bits(imm32, 11, 1)
    j1 = (1 - i1) ^ s
    j2 = (1 - i2) ^ s
    return [
        0xF000 | (s << 10) | imm10,
        0x9000 | (j1 << 13) | (j2 << 11) | imm11,
    ]