"""Classification and relocation of A32 (ARM state) instructions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum

from armreloc.bits import (
    MASK32,
    RewriteError,
    align4,
    arm_expand_imm,
    get_bit,
    get_bits,
    set_bit0,
    sign_extend,
)

_log = logging.getLogger(__name__)

_B_ALWAYS_0 = 0xEA000000  # B #0
_COND_B_0 = 0x0A000000  # B<c> #0 before the condition is inserted


class A32Type(IntEnum):
    IGNORED = 0
    B_A1 = 1
    BX_A1 = 2
    BL_IMM_A1 = 3
    BLX_IMM_A2 = 4
    ADD_REG_A1 = 5
    ADD_REG_PC_A1 = 6
    SUB_REG_A1 = 7
    SUB_REG_PC_A1 = 8
    ADR_A1 = 9
    ADR_A2 = 10
    MOV_REG_A1 = 11
    MOV_REG_PC_A1 = 12
    LDR_LIT_A1 = 13
    LDR_LIT_PC_A1 = 14
    LDRB_LIT_A1 = 15
    LDRD_LIT_A1 = 16
    LDRH_LIT_A1 = 17
    LDRSB_LIT_A1 = 18
    LDRSH_LIT_A1 = 19
    LDR_REG_A1 = 20
    LDR_REG_PC_A1 = 21
    LDRB_REG_A1 = 22
    LDRD_REG_A1 = 23
    LDRH_REG_A1 = 24
    LDRSB_REG_A1 = 25
    LDRSH_REG_A1 = 26


_REWRITE_LEN = {
    A32Type.IGNORED: 4,
    A32Type.B_A1: 12,
    A32Type.BX_A1: 12,
    A32Type.BL_IMM_A1: 16,
    A32Type.BLX_IMM_A2: 16,
    A32Type.ADD_REG_A1: 32,
    A32Type.ADD_REG_PC_A1: 32,
    A32Type.SUB_REG_A1: 32,
    A32Type.SUB_REG_PC_A1: 32,
    A32Type.ADR_A1: 12,
    A32Type.ADR_A2: 12,
    A32Type.MOV_REG_A1: 32,
    A32Type.MOV_REG_PC_A1: 12,
    A32Type.LDR_LIT_A1: 24,
    A32Type.LDR_LIT_PC_A1: 36,
    A32Type.LDRB_LIT_A1: 24,
    A32Type.LDRD_LIT_A1: 24,
    A32Type.LDRH_LIT_A1: 24,
    A32Type.LDRSB_LIT_A1: 24,
    A32Type.LDRSH_LIT_A1: 24,
    A32Type.LDR_REG_A1: 32,
    A32Type.LDR_REG_PC_A1: 36,
    A32Type.LDRB_REG_A1: 32,
    A32Type.LDRD_REG_A1: 32,
    A32Type.LDRH_REG_A1: 32,
    A32Type.LDRSB_REG_A1: 32,
    A32Type.LDRSH_REG_A1: 32,
}

_BRANCHES = (A32Type.B_A1, A32Type.BX_A1, A32Type.BL_IMM_A1, A32Type.BLX_IMM_A2)
_ADD_SUB = (A32Type.ADD_REG_A1, A32Type.ADD_REG_PC_A1, A32Type.SUB_REG_A1, A32Type.SUB_REG_PC_A1)
_MOVS = (A32Type.MOV_REG_A1, A32Type.MOV_REG_PC_A1)
_LIT_LOADS = (
    A32Type.LDR_LIT_A1,
    A32Type.LDR_LIT_PC_A1,
    A32Type.LDRB_LIT_A1,
    A32Type.LDRD_LIT_A1,
    A32Type.LDRH_LIT_A1,
    A32Type.LDRSB_LIT_A1,
    A32Type.LDRSH_LIT_A1,
)
_REG_LOADS = (
    A32Type.LDR_REG_A1,
    A32Type.LDR_REG_PC_A1,
    A32Type.LDRB_REG_A1,
    A32Type.LDRD_REG_A1,
    A32Type.LDRH_REG_A1,
    A32Type.LDRSB_REG_A1,
    A32Type.LDRSH_REG_A1,
)

# "LDRxx Rt, [Rt]" for each literal load, before Rt is inserted.
_LOAD_FROM_REG = {
    A32Type.LDR_LIT_A1: 0xE5900000,
    A32Type.LDRB_LIT_A1: 0xE5D00000,
    A32Type.LDRD_LIT_A1: 0xE1C000D0,
    A32Type.LDRH_LIT_A1: 0xE1D000B0,
    A32Type.LDRSB_LIT_A1: 0xE1D000D0,
    A32Type.LDRSH_LIT_A1: 0xE1D000F0,
}


@dataclass
class A32RewriteInfo:
    """Where the overwritten A32 code lived and where its relocation goes.

    ``inst_lens`` holds, for each overwritten word, the size in bytes of its
    relocated code.
    """

    start_addr: int
    end_addr: int
    buf: int
    buf_offset: int = 0
    inst_lens: list[int] = field(default_factory=list)

    def needs_fix(self, addr: int) -> bool:
        """Whether ``addr`` points into the overwritten range."""
        return self.start_addr <= addr < self.end_addr

    def fix_addr(self, addr: int) -> int:
        """Redirect an address in the overwritten range to its relocated copy."""
        if not self.needs_fix(addr):
            return addr
        cursor = self.start_addr
        offset = 0
        for length in self.inst_lens:
            if cursor >= addr:
                break
            cursor += 4
            offset += length
        fixed = self.buf + offset
        _log.info("a32 rewrite: fix addr %x -> %x", addr, fixed)
        return fixed


def _unconditional(inst: int) -> bool:
    return (inst & 0xF0000000) == 0xF0000000


def _reg_operand_uses_pc(inst: int) -> bool:
    return (
        (inst & 0x0010F000) != 0x0010F000
        and (inst & 0x000F0000) != 0x000D0000
        and ((inst & 0x000F0000) == 0x000F0000 or (inst & 0x0000000F) == 0x0000000F)
    )


def _no_writeback_post(inst: int) -> bool:
    return (inst & 0x01200000) != 0x00200000


def get_type(inst: int) -> A32Type:
    """Classify an A32 instruction."""
    inst &= MASK32
    cond_ok = not _unconditional(inst)
    rd_is_pc = (inst & 0x0000F000) == 0x0000F000

    if (inst & 0x0F000000) == 0x0A000000 and cond_ok:
        return A32Type.B_A1
    if (inst & 0x0FFFFFFF) == 0x012FFF1F and cond_ok:
        return A32Type.BX_A1
    if (inst & 0x0F000000) == 0x0B000000 and cond_ok:
        return A32Type.BL_IMM_A1
    if (inst & 0xFE000000) == 0xFA000000:
        return A32Type.BLX_IMM_A2
    if (inst & 0x0FE00010) == 0x00800000 and cond_ok and _reg_operand_uses_pc(inst):
        return A32Type.ADD_REG_PC_A1 if rd_is_pc else A32Type.ADD_REG_A1
    if (inst & 0x0FE00010) == 0x00400000 and cond_ok and _reg_operand_uses_pc(inst):
        return A32Type.SUB_REG_PC_A1 if rd_is_pc else A32Type.SUB_REG_A1
    if (inst & 0x0FFF0000) == 0x028F0000 and cond_ok:
        return A32Type.ADR_A1
    if (inst & 0x0FFF0000) == 0x024F0000 and cond_ok:
        return A32Type.ADR_A2
    if (
        (inst & 0x0FEF001F) == 0x01A0000F
        and cond_ok
        and (inst & 0x0010F000) != 0x0010F000
        and not (rd_is_pc and (inst & 0x00000FF0) != 0)
    ):
        return A32Type.MOV_REG_PC_A1 if rd_is_pc else A32Type.MOV_REG_A1
    if (inst & 0x0F7F0000) == 0x051F0000 and cond_ok:
        return A32Type.LDR_LIT_PC_A1 if rd_is_pc else A32Type.LDR_LIT_A1
    if (inst & 0x0F7F0000) == 0x055F0000 and cond_ok:
        return A32Type.LDRB_LIT_A1
    if (inst & 0x0F7F00F0) == 0x014F00D0 and cond_ok:
        return A32Type.LDRD_LIT_A1
    if (inst & 0x0F7F00F0) == 0x015F00B0 and cond_ok:
        return A32Type.LDRH_LIT_A1
    if (inst & 0x0F7F00F0) == 0x015F00D0 and cond_ok:
        return A32Type.LDRSB_LIT_A1
    if (inst & 0x0F7F00F0) == 0x015F00F0 and cond_ok:
        return A32Type.LDRSH_LIT_A1
    if (inst & 0x0E5F0010) == 0x061F0000 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDR_REG_PC_A1 if rd_is_pc else A32Type.LDR_REG_A1
    if (inst & 0x0E5F0010) == 0x065F0000 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDRB_REG_A1
    if (inst & 0x0E5F0FF0) == 0x000F00D0 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDRD_REG_A1
    if (inst & 0x0E5F0FF0) == 0x001F00B0 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDRH_REG_A1
    if (inst & 0x0E5F0FF0) == 0x001F00D0 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDRSB_REG_A1
    if (inst & 0x0E5F0FF0) == 0x001F00F0 and cond_ok and _no_writeback_post(inst):
        return A32Type.LDRSH_REG_A1
    return A32Type.IGNORED


def rewrite_len(inst: int) -> int:
    """Size in bytes of the relocated form of ``inst``."""
    return _REWRITE_LEN[get_type(inst)]


def _scratch(start: int, *used: int) -> int:
    return next(r for r in range(start, -1, -1) if r not in used)


def _rewrite_b(inst: int, pc: int, kind: A32Type, rinfo: A32RewriteInfo) -> list[int]:
    cond = 0xE if kind is A32Type.BLX_IMM_A2 else get_bits(inst, 31, 28)

    if kind in (A32Type.B_A1, A32Type.BL_IMM_A1):
        imm32 = sign_extend(get_bits(inst, 23, 0) << 2, 26)
        addr = (pc + imm32) & MASK32
    elif kind is A32Type.BLX_IMM_A2:
        h = get_bit(inst, 24)
        imm32 = sign_extend((get_bits(inst, 23, 0) << 2) | (h << 1), 26)
        addr = set_bit0((pc + imm32) & MASK32)
    else:
        # BX PC: the PC is word-aligned, so the target stays in the ARM state.
        addr = pc
    addr = rinfo.fix_addr(addr)

    out = []
    if kind in (A32Type.BL_IMM_A1, A32Type.BLX_IMM_A2):
        out.append(0x028FE008 | (cond << 28))  # ADD<c> LR, PC, #8
    out += [0x059FF000 | (cond << 28), _B_ALWAYS_0, addr]  # LDR<c> PC, [PC, #0] ; B #0
    return out


def _rewrite_add_or_sub(inst: int, pc: int) -> list[int]:
    cond = get_bits(inst, 31, 28)
    rn = get_bits(inst, 19, 16)
    rm = get_bits(inst, 3, 0)
    rd = get_bits(inst, 15, 12)
    rx = _scratch(3, rn, rm, rd)

    if rd == 0xF:
        ry = _scratch(4, rn, rm, rd, rx)
        if rn == 0xF:
            op = (inst & 0x0FF00FFF) | 0xE0000000 | (ry << 12) | (rx << 16)
        else:
            op = (inst & 0x0FFF0FF0) | 0xE0000000 | (ry << 12) | rx
        return [
            _COND_B_0 | (cond << 28),  # B<c> #0
            0xEA000005,  # B #20
            0xE92D8000 | (1 << rx) | (1 << ry),  # PUSH {Rx, Ry, PC}
            0xE59F0008 | (rx << 12),  # LDR Rx, [PC, #8]
            op,  # ADD/SUB Ry, ...
            0xE58D0008 | (ry << 12),  # STR Ry, [SP, #8]
            0xE8BD8000 | (1 << rx) | (1 << ry),  # POP {Rx, Ry, PC}
            pc,
        ]

    if rn == 0xF:
        op = (inst & 0x0FF0FFFF) | 0xE0000000 | (rx << 16)
    else:
        op = (inst & 0x0FFFFFF0) | 0xE0000000 | rx
    return [
        _COND_B_0 | (cond << 28),  # B<c> #0
        0xEA000005,  # B #20
        0xE52D0004 | (rx << 12),  # PUSH {Rx}
        0xE59F0008 | (rx << 12),  # LDR Rx, [PC, #8]
        op,  # ADD/SUB{S} Rd, ...
        0xE49D0004 | (rx << 12),  # POP {Rx}
        _B_ALWAYS_0,
        pc,
    ]


def _rewrite_adr(inst: int, pc: int, kind: A32Type, rinfo: A32RewriteInfo) -> list[int]:
    cond = get_bits(inst, 31, 28)
    rd = get_bits(inst, 15, 12)
    imm32 = arm_expand_imm(get_bits(inst, 11, 0))
    if kind is A32Type.ADR_A1:
        addr = (align4(pc) + imm32) & MASK32
    else:
        addr = (align4(pc) - imm32) & MASK32
    if rinfo.needs_fix(addr):
        raise RewriteError(f"a32 adr target {addr:#x} lies inside the overwritten range")
    return [0x059F0000 | (cond << 28) | (rd << 12), _B_ALWAYS_0, addr]


def _rewrite_mov(inst: int, pc: int) -> list[int]:
    cond = get_bits(inst, 31, 28)
    rd = get_bits(inst, 15, 12)
    if rd == 0xF:
        return [0x059FF000 | (cond << 28), _B_ALWAYS_0, pc]  # LDR<c> PC, [PC, #0]
    rx = 1 if rd == 0 else 0
    return [
        _COND_B_0 | (cond << 28),  # B<c> #0
        0xEA000005,  # B #20
        0xE52D0004 | (rx << 12),  # PUSH {Rx}
        0xE59F0008 | (rx << 12),  # LDR Rx, [PC, #8]
        (inst & 0x0FFFFFF0) | 0xE0000000 | rx,  # MOV{S} Rd, Rx
        0xE49D0004 | (rx << 12),  # POP {Rx}
        _B_ALWAYS_0,
        pc,
    ]


def _rewrite_ldr_lit(inst: int, pc: int, kind: A32Type, rinfo: A32RewriteInfo) -> list[int]:
    cond = get_bits(inst, 31, 28)
    add = bool(get_bit(inst, 23))
    rt = get_bits(inst, 15, 12)

    if kind in (A32Type.LDR_LIT_A1, A32Type.LDR_LIT_PC_A1, A32Type.LDRB_LIT_A1):
        imm32 = get_bits(inst, 11, 0)
    else:
        imm32 = (get_bits(inst, 11, 8) << 4) + get_bits(inst, 3, 0)
    base = align4(pc)
    addr = (base + imm32 if add else base - imm32) & MASK32
    if rinfo.needs_fix(addr):
        raise RewriteError(f"a32 literal {addr:#x} lies inside the overwritten range")

    if kind is A32Type.LDR_LIT_PC_A1 and rt == 0xF:
        return [
            _COND_B_0 | (cond << 28),  # B<c> #0
            0xEA000006,  # B #24
            0xE92D0003,  # PUSH {R0, R1}
            0xE59F0000,  # LDR R0, [PC, #0]
            _B_ALWAYS_0,
            addr,
            0xE5900000,  # LDR R0, [R0]
            0xE58D0004,  # STR R0, [SP, #4]
            0xE8BD8001,  # POP {R0, PC}
        ]
    return [
        _COND_B_0 | (cond << 28),  # B<c> #0
        0xEA000003,  # B #12
        0xE59F0000 | (rt << 12),  # LDR Rt, [PC, #0]
        _B_ALWAYS_0,
        addr,
        _LOAD_FROM_REG[kind] | (rt << 16) | (rt << 12),  # LDRxx Rt, [Rt]
    ]


def _rewrite_ldr_reg(inst: int, pc: int, kind: A32Type) -> list[int]:
    cond = get_bits(inst, 31, 28)
    rt = get_bits(inst, 15, 12)
    rt2 = rt + 1
    rm = get_bits(inst, 3, 0)
    rx = _scratch(3, rt, rt2, rm)

    if kind is A32Type.LDR_REG_PC_A1 and rt == 0xF:
        ry = _scratch(4, rt, rt2, rm, rx)
        return [
            _COND_B_0 | (cond << 28),  # B<c> #0
            0xEA000006,  # B #24
            0xE92D8000 | (1 << rx) | (1 << ry),  # PUSH {Rx, Ry, PC}
            0xE59F0000 | (rx << 12),  # LDR Rx, [PC, #0]
            _B_ALWAYS_0,
            pc,
            (inst & 0x0FF00FFF) | 0xE0000000 | (rx << 16) | (ry << 12),  # LDRxx Ry, [Rx, Rm]
            0xE58D0008 | (ry << 12),  # STR Ry, [SP, #8]
            0xE8BD8000 | (1 << rx) | (1 << ry),  # POP {Rx, Ry, PC}
        ]
    return [
        _COND_B_0 | (cond << 28),  # B<c> #0
        0xEA000005,  # B #20
        0xE52D0004 | (rx << 12),  # PUSH {Rx}
        0xE59F0000 | (rx << 12),  # LDR Rx, [PC, #0]
        _B_ALWAYS_0,
        pc,
        (inst & 0x0FF0FFFF) | 0xE0000000 | (rx << 16),  # LDRxx Rt, [Rx, Rm]
        0xE49D0004 | (rx << 12),  # POP {Rx}
    ]


def rewrite(inst: int, pc: int, rinfo: A32RewriteInfo) -> list[int]:
    """Relocate ``inst`` executed with PC value ``pc``; return the new words.

    Raises RewriteError when the instruction reads data from the overwritten range.
    """
    inst &= MASK32
    pc &= MASK32
    kind = get_type(inst)
    _log.info("a32 rewrite: type %d, inst %x", kind, inst)

    # At most 8 bytes are overwritten in the ARM state, so PC itself never falls
    # inside the range and the register forms need no address fixing.
    if kind in _BRANCHES:
        return _rewrite_b(inst, pc, kind, rinfo)
    if kind in _ADD_SUB:
        return _rewrite_add_or_sub(inst, pc)
    if kind in (A32Type.ADR_A1, A32Type.ADR_A2):
        return _rewrite_adr(inst, pc, kind, rinfo)
    if kind in _MOVS:
        return _rewrite_mov(inst, pc)
    if kind in _LIT_LOADS:
        return _rewrite_ldr_lit(inst, pc, kind, rinfo)
    if kind in _REG_LOADS:
        return _rewrite_ldr_reg(inst, pc, kind)
    return [inst]


def absolute_jump(addr: int) -> list[int]:
    """``LDR PC, [PC, #-4]`` followed by ``addr``."""
    return [0xE51FF004, addr & MASK32]


def relative_jump(addr: int, pc: int) -> list[int]:
    """Encode ``B`` (A1) from PC value ``pc`` to ``addr``."""
    return [0xEA000000 | (((addr - pc) & 0x03FFFFFF) >> 2)]