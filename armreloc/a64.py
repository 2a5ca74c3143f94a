"""Classification and relocation of A64 (AArch64) instructions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum

from armreloc.bits import MASK32, RewriteError, get_bits, sign_extend

_log = logging.getLogger(__name__)

MASK64 = 0xFFFFFFFFFFFFFFFF

_LDR_X17_8 = 0x58000051  # LDR X17, #8
_B_12 = 0x14000003  # B #12
_BR_X17 = 0xD61F0220
_BLR_X17 = 0xD63F0220
_RET_X17 = 0xD65F0220


class A64Type(IntEnum):
    IGNORED = 0
    B = 1
    B_COND = 2
    BL = 3
    ADR = 4
    ADRP = 5
    LDR_LIT_32 = 6
    LDR_LIT_64 = 7
    LDRSW_LIT = 8
    PRFM_LIT = 9
    LDR_SIMD_LIT_32 = 10
    LDR_SIMD_LIT_64 = 11
    LDR_SIMD_LIT_128 = 12
    CBZ = 13
    CBNZ = 14
    TBZ = 15
    TBNZ = 16


_REWRITE_LEN = {
    A64Type.IGNORED: 4,
    A64Type.B: 20,
    A64Type.B_COND: 28,
    A64Type.BL: 20,
    A64Type.ADR: 16,
    A64Type.ADRP: 16,
    A64Type.LDR_LIT_32: 20,
    A64Type.LDR_LIT_64: 20,
    A64Type.LDRSW_LIT: 20,
    A64Type.PRFM_LIT: 28,
    A64Type.LDR_SIMD_LIT_32: 28,
    A64Type.LDR_SIMD_LIT_64: 28,
    A64Type.LDR_SIMD_LIT_128: 28,
    A64Type.CBZ: 24,
    A64Type.CBNZ: 24,
    A64Type.TBZ: 24,
    A64Type.TBNZ: 24,
}

# (mask, value, type), checked in order.
_PATTERNS = (
    (0xFC000000, 0x14000000, A64Type.B),
    (0xFF000010, 0x54000000, A64Type.B_COND),
    (0xFC000000, 0x94000000, A64Type.BL),
    (0x9F000000, 0x10000000, A64Type.ADR),
    (0x9F000000, 0x90000000, A64Type.ADRP),
    (0xFF000000, 0x18000000, A64Type.LDR_LIT_32),
    (0xFF000000, 0x58000000, A64Type.LDR_LIT_64),
    (0xFF000000, 0x98000000, A64Type.LDRSW_LIT),
    (0xFF000000, 0xD8000000, A64Type.PRFM_LIT),
    (0xFF000000, 0x1C000000, A64Type.LDR_SIMD_LIT_32),
    (0xFF000000, 0x5C000000, A64Type.LDR_SIMD_LIT_64),
    (0xFF000000, 0x9C000000, A64Type.LDR_SIMD_LIT_128),
    (0x7F000000, 0x34000000, A64Type.CBZ),
    (0x7F000000, 0x35000000, A64Type.CBNZ),
    (0x7F000000, 0x36000000, A64Type.TBZ),
    (0x7F000000, 0x37000000, A64Type.TBNZ),
)

_LOADS = (
    A64Type.LDR_LIT_32,
    A64Type.LDR_LIT_64,
    A64Type.LDRSW_LIT,
    A64Type.PRFM_LIT,
    A64Type.LDR_SIMD_LIT_32,
    A64Type.LDR_SIMD_LIT_64,
    A64Type.LDR_SIMD_LIT_128,
)

# "LDRxx Rt, [Xt]" for the integer literal loads, before the registers are inserted.
_GPR_LOAD = {
    A64Type.LDR_LIT_32: 0xB9400000,
    A64Type.LDR_LIT_64: 0xF9400000,
    A64Type.LDRSW_LIT: 0xB9800000,
}

# "OP Rt, [X17]" for the other literal loads, before Rt is inserted.
_X17_LOAD = {
    A64Type.PRFM_LIT: 0xF9800220,
    A64Type.LDR_SIMD_LIT_32: 0xBD400220,
    A64Type.LDR_SIMD_LIT_64: 0xFD400220,
    A64Type.LDR_SIMD_LIT_128: 0x3DC00220,
}


@dataclass
class A64RewriteInfo:
    """Where the overwritten A64 code lived and where its relocation goes.

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
        _log.info("a64 rewrite: fix addr %x -> %x", addr, fixed)
        return fixed


def get_type(inst: int) -> A64Type:
    """Classify an A64 instruction."""
    inst &= MASK32
    for mask, value, kind in _PATTERNS:
        if inst & mask == value:
            return kind
    return A64Type.IGNORED


def rewrite_len(inst: int) -> int:
    """Size in bytes of the relocated form of ``inst``."""
    return _REWRITE_LEN[get_type(inst)]


def _halves(addr: int) -> list[int]:
    return [addr & MASK32, (addr >> 32) & MASK32]


def _rewrite_b(inst: int, pc: int, kind: A64Type, rinfo: A64RewriteInfo) -> list[int]:
    if kind is A64Type.B_COND:
        offset = sign_extend(get_bits(inst, 23, 5) << 2, 21, 64)
    else:
        offset = sign_extend(get_bits(inst, 25, 0) << 2, 28, 64)
    addr = rinfo.fix_addr((pc + offset) & MASK64)

    out: list[int] = []
    if kind is A64Type.B_COND:
        out += [(inst & 0xFF00001F) | 0x40, 0x14000006]  # B.<cond> #8 ; B #24
    out += [_LDR_X17_8, _B_12, *_halves(addr)]
    out.append(_BLR_X17 if kind is A64Type.BL else _BR_X17)
    return out


def _rewrite_adr(inst: int, pc: int, kind: A64Type, rinfo: A64RewriteInfo) -> list[int]:
    xd = get_bits(inst, 4, 0)
    immlo = get_bits(inst, 30, 29)
    immhi = get_bits(inst, 23, 5)
    if kind is A64Type.ADR:
        addr = pc + sign_extend((immhi << 2) | immlo, 21, 64)
    else:
        addr = (pc & 0xFFFFFFFFFFFFF000) + sign_extend((immhi << 14) | (immlo << 12), 33, 64)
    addr &= MASK64
    if rinfo.needs_fix(addr):
        raise RewriteError(f"a64 adr target {addr:#x} lies inside the overwritten range")
    return [0x58000040 | xd, _B_12, *_halves(addr)]  # LDR Xd, #8 ; B #12


def _rewrite_ldr(inst: int, pc: int, kind: A64Type, rinfo: A64RewriteInfo) -> list[int]:
    rt = get_bits(inst, 4, 0)
    offset = sign_extend(get_bits(inst, 23, 5) << 2, 21, 64)
    addr = (pc + offset) & MASK64

    if rinfo.needs_fix(addr):
        if kind is not A64Type.PRFM_LIT:
            raise RewriteError(f"a64 literal {addr:#x} lies inside the overwritten range")
        addr = rinfo.fix_addr(addr)

    if kind in _GPR_LOAD:
        return [
            0x58000060 | rt,  # LDR Xt, #12
            _GPR_LOAD[kind] | rt | (rt << 5),  # LDRxx Rt, [Xt]
            _B_12,
            *_halves(addr),
        ]
    return [
        0xA93F47F0,  # STP X16, X17, [SP, -0x10]
        0x58000091,  # LDR X17, #16
        _X17_LOAD[kind] | rt,  # OP Rt, [X17]
        0xF85F83F1,  # LDR X17, [SP, -0x8]
        _B_12,
        *_halves(addr),
    ]


def _rewrite_cb(inst: int, pc: int, rinfo: A64RewriteInfo) -> list[int]:
    offset = sign_extend(get_bits(inst, 23, 5) << 2, 21, 64)
    addr = rinfo.fix_addr((pc + offset) & MASK64)
    return [
        (inst & 0xFF00001F) | 0x40,  # CB(N)Z Rt, #8
        0x14000005,  # B #20
        _LDR_X17_8,
        _BR_X17,
        *_halves(addr),
    ]


def _rewrite_tb(inst: int, pc: int, rinfo: A64RewriteInfo) -> list[int]:
    offset = sign_extend(get_bits(inst, 18, 5) << 2, 16, 64)
    addr = rinfo.fix_addr((pc + offset) & MASK64)
    return [
        (inst & 0xFFF8001F) | 0x40,  # TB(N)Z Rt, #<imm>, #8
        0x14000005,  # B #20
        _LDR_X17_8,
        _BR_X17,
        *_halves(addr),
    ]


def rewrite(inst: int, pc: int, rinfo: A64RewriteInfo) -> list[int]:
    """Relocate ``inst`` located at ``pc``; return the new words.

    Raises RewriteError when the instruction reads data from the overwritten range.
    """
    inst &= MASK32
    pc &= MASK64
    kind = get_type(inst)
    _log.info("a64 rewrite: type %d, inst %x", kind, inst)

    if kind in (A64Type.B, A64Type.B_COND, A64Type.BL):
        return _rewrite_b(inst, pc, kind, rinfo)
    if kind in (A64Type.ADR, A64Type.ADRP):
        return _rewrite_adr(inst, pc, kind, rinfo)
    if kind in _LOADS:
        return _rewrite_ldr(inst, pc, kind, rinfo)
    if kind in (A64Type.CBZ, A64Type.CBNZ):
        return _rewrite_cb(inst, pc, rinfo)
    if kind in (A64Type.TBZ, A64Type.TBNZ):
        return _rewrite_tb(inst, pc, rinfo)
    return [inst]


def absolute_jump_with_br(addr: int) -> list[int]:
    """``LDR X17, #8 ; BR X17`` followed by the 64-bit ``addr``."""
    return [_LDR_X17_8, _BR_X17, *_halves(addr & MASK64)]


def absolute_jump_with_ret(addr: int) -> list[int]:
    """``LDR X17, #8 ; RET X17`` followed by ``addr``; RET is not subject to BTI."""
    return [_LDR_X17_8, _RET_X17, *_halves(addr & MASK64)]


def relative_jump(addr: int, pc: int) -> list[int]:
    """Encode ``B`` from ``pc`` to ``addr``."""
    return [0x14000000 | (((addr - pc) & 0x0FFFFFFF) >> 2)]