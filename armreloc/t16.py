"""Classification and relocation of 16-bit Thumb instructions."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import IntEnum

from armreloc.bits import (
    MASK16,
    MASK32,
    align4,
    get_bit,
    get_bits,
    is_thumb32,
    set_bit0,
    sign_extend,
)
from armreloc.bits import RewriteError
from armreloc.txx import ThumbRewriteInfo

_log = logging.getLogger(__name__)

NOP = 0xBF00


class T16Type(IntEnum):
    IGNORED = 0
    IT_T1 = 1
    B_T1 = 2
    B_T2 = 3
    BX_T1 = 4
    ADD_REG_T2 = 5
    MOV_REG_T1 = 6
    ADR_T1 = 7
    LDR_LIT_T1 = 8
    CBZ_T1 = 9
    CBNZ_T1 = 10


_REWRITE_LEN = {
    T16Type.IGNORED: 4,
    T16Type.IT_T1: 0,
    T16Type.B_T1: 12,
    T16Type.B_T2: 8,
    T16Type.BX_T1: 8,
    T16Type.ADD_REG_T2: 16,
    T16Type.MOV_REG_T1: 12,
    T16Type.ADR_T1: 8,
    T16Type.LDR_LIT_T1: 12,
    T16Type.CBZ_T1: 12,
    T16Type.CBNZ_T1: 12,
}


def get_type(inst: int) -> T16Type:
    """Classify a 16-bit Thumb instruction."""
    if (inst & 0xFF00) == 0xBF00 and (inst & 0x000F) != 0 and (inst & 0x00F0) != 0x00F0:
        return T16Type.IT_T1
    if (inst & 0xF000) == 0xD000 and (inst & 0x0F00) not in (0x0F00, 0x0E00):
        return T16Type.B_T1
    if (inst & 0xF800) == 0xE000:
        return T16Type.B_T2
    if (inst & 0xFFF8) == 0x4778:
        return T16Type.BX_T1
    if (inst & 0xFF78) == 0x4478 and (inst & 0x0087) != 0x0085:
        return T16Type.ADD_REG_T2
    if (inst & 0xFF78) == 0x4678:
        return T16Type.MOV_REG_T1
    if (inst & 0xF800) == 0xA000:
        return T16Type.ADR_T1
    if (inst & 0xF800) == 0x4800:
        return T16Type.LDR_LIT_T1
    if (inst & 0xFD00) == 0xB100:
        return T16Type.CBZ_T1
    if (inst & 0xFD00) == 0xB900:
        return T16Type.CBNZ_T1
    return T16Type.IGNORED


def rewrite_len(inst: int) -> int:
    """Size in bytes of the relocated form of ``inst``."""
    return _REWRITE_LEN[get_type(inst)]


def _halves(value: int) -> list[int]:
    return [value & MASK16, (value >> 16) & MASK16]


def _rewrite_b(inst: int, pc: int, kind: T16Type, rinfo: ThumbRewriteInfo) -> list[int]:
    if kind is T16Type.B_T1:
        imm8 = get_bits(inst, 7, 0)
        addr = set_bit0((pc + sign_extend(imm8 << 1, 9)) & MASK32)
    elif kind is T16Type.B_T2:
        imm11 = get_bits(inst, 10, 0)
        addr = set_bit0((pc + sign_extend(imm11 << 1, 12)) & MASK32)
    else:
        # BX PC sits on a 4-byte boundary and switches to the ARM state.
        addr = pc
    addr = rinfo.fix_addr(addr)

    out = []
    if kind is T16Type.B_T1:
        out += [inst & 0xFF00, 0xE003]  # B<c> #0 ; B #6
    out += [0xF8DF, 0xF000]  # LDR.W PC, [PC]
    out += _halves(addr)
    return out


def _rewrite_add(inst: int, pc: int) -> list[int]:
    rd = (get_bit(inst, 7) << 3) | get_bits(inst, 2, 0)
    rx = 1 if rd == 0 else 0
    return [
        0xB400 | (1 << rx),  # PUSH {Rx}
        0x4802 | (rx << 8),  # LDR Rx, [PC, #8]
        (inst & 0xFF87) | (rx << 3),  # ADD Rd, Rx
        0xBC00 | (1 << rx),  # POP {Rx}
        0xE002,  # B #4
        NOP,
        *_halves(pc),
    ]


def _rewrite_mov(inst: int, pc: int) -> list[int]:
    d = (get_bit(inst, 7) << 3) | get_bits(inst, 2, 0)
    return [
        0xF8DF,  # LDR.W Rd, [PC, #4]
        ((d << 12) + 4) & MASK16,
        0xE002,  # B #4
        NOP,
        *_halves(pc),
    ]


def _literal_addr(inst: int, pc: int, rinfo: ThumbRewriteInfo) -> int:
    addr = (align4(pc) + (get_bits(inst, 7, 0) << 2)) & MASK32
    if rinfo.needs_fix(addr):
        raise RewriteError(f"t16 literal {addr:#x} lies inside the overwritten range")
    return addr


def _rewrite_adr(inst: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    rd = get_bits(inst, 10, 8)
    addr = _literal_addr(inst, pc, rinfo)
    return [0x4800 | (rd << 8), 0xE001, *_halves(addr)]  # LDR Rd, [PC] ; B #2


def _rewrite_ldr(inst: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    rt = get_bits(inst, 10, 8)
    addr = _literal_addr(inst, pc, rinfo)
    return [
        0x4800 | (rt << 8),  # LDR Rt, [PC]
        0xE001,  # B #2
        *_halves(addr),
        0x6800 | (rt << 3) | rt,  # LDR Rt, [Rt]
        NOP,
    ]


def _rewrite_cb(inst: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    imm32 = (get_bit(inst, 9) << 6) | (get_bits(inst, 7, 3) << 1)
    addr = rinfo.fix_addr(set_bit0((pc + imm32) & MASK32))
    return [
        inst & 0xFD07,  # CB(N)Z Rn, #0
        0xE003,  # B #6
        0xF8DF,  # LDR.W PC, [PC]
        0xF000,
        *_halves(addr),
    ]


def rewrite(inst: int, pc: int, rinfo: ThumbRewriteInfo) -> list[int]:
    """Relocate ``inst`` executed with PC value ``pc``; return the new halfwords.

    Raises RewriteError when the instruction reads data from the overwritten range.
    """
    kind = get_type(inst)
    pc &= MASK32
    _log.info("t16 rewrite: type %d, inst %x", kind, inst)

    if kind in (T16Type.B_T1, T16Type.B_T2, T16Type.BX_T1):
        return _rewrite_b(inst, pc, kind, rinfo)
    if kind is T16Type.ADD_REG_T2:
        return _rewrite_add(inst, pc)
    if kind is T16Type.MOV_REG_T1:
        return _rewrite_mov(inst, pc)
    if kind is T16Type.ADR_T1:
        return _rewrite_adr(inst, pc, rinfo)
    if kind is T16Type.LDR_LIT_T1:
        return _rewrite_ldr(inst, pc, rinfo)
    if kind in (T16Type.CBZ_T1, T16Type.CBNZ_T1):
        return _rewrite_cb(inst, pc, rinfo)
    return [inst, NOP]


@dataclass(frozen=True)
class ItBlock:
    """The instructions covered by an IT instruction, ELSE ones first, then THEN ones."""

    insts: tuple[int, ...]
    pcs: tuple[int, ...]
    insts_cnt: int
    insts_else_cnt: int
    firstcond: int

    @property
    def insts_len(self) -> int:
        """Total size in bytes of the instructions in the block."""
        return len(self.insts) * 2


def _it_insts_count(inst: int) -> int:
    if inst & 0x1:
        return 4
    if inst & 0x2:
        return 3
    if inst & 0x4:
        return 2
    return 1


def parse_it(inst: int, following: Sequence[int], pc: int) -> ItBlock | None:
    """Parse an IT instruction and the halfwords that follow it.

    ``pc`` is the PC value of the IT instruction itself (its address plus 4).
    Returns None if ``inst`` is not an IT instruction.
    """
    if get_type(inst) is not T16Type.IT_T1:
        return None
    _log.info("t16 rewrite: type IT, inst %x", inst)

    first_addr = pc - 4 + 2
    firstcond = get_bits(inst, 7, 4)
    count = _it_insts_count(inst)

    slots: list[tuple[tuple[int, ...], int]] = []
    pos = 0
    for _ in range(count):
        if pos >= len(following):
            raise ValueError("IT block is truncated")
        width = 2 if is_thumb32(following[pos]) else 1
        if pos + width > len(following):
            raise ValueError("IT block is truncated")
        slots.append((tuple(following[pos : pos + width]), pos * 2))
        pos += width

    is_then = [get_bit(inst, 4 - i) == (firstcond & 1) for i in range(count)]
    ordered = [slot for slot, then in zip(slots, is_then) if not then]
    else_cnt = len(ordered)
    ordered += [slot for slot, then in zip(slots, is_then) if then]

    return ItBlock(
        insts=tuple(hw for halfwords, _ in ordered for hw in halfwords),
        pcs=tuple(first_addr + offset + 4 for _, offset in ordered),
        insts_cnt=count,
        insts_else_cnt=else_cnt,
        firstcond=firstcond,
    )


def rewrite_it_else(imm9: int, it: ItBlock) -> list[int]:
    """Conditional branch that skips the ELSE part of a relocated IT block."""
    return [(0xD000 | (it.firstcond << 8) | (imm9 >> 1)) & MASK16, NOP]


def rewrite_it_then(imm12: int) -> list[int]:
    """Branch that skips the THEN part of a relocated IT block."""
    return [(0xE000 | (imm12 >> 1)) & MASK16, NOP]