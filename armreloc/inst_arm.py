"""Installing and removing an inline hook on A32 or Thumb code."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from armreloc import a32, t16, t32
from armreloc.bits import (
    HookError,
    SymbolSizeError,
    TrampolineMismatchError,
    clear_bit0,
    is_thumb,
    is_thumb32,
    set_bit0,
)
from armreloc.memory import Memory
from armreloc.txx import ThumbRewriteInfo

_log = logging.getLogger(__name__)

ARM_BACKUP_LEN = 8
THUMB_BACKUP_LEN_ALIGNED = 8
THUMB_BACKUP_LEN_UNALIGNED = 10

# An IT block covers at most four instructions of at most four bytes each.
_IT_MAX_HALFWORDS = 8


def _pack16(halfwords: list[int]) -> bytes:
    return b"".join((h & 0xFFFF).to_bytes(2, "little") for h in halfwords)


def _pack32(words: list[int]) -> bytes:
    return b"".join((w & 0xFFFFFFFF).to_bytes(4, "little") for w in words)


def _read_following(memory: Memory, addr: int) -> list[int]:
    """Read the halfwords after an IT instruction, stopping at unmapped memory."""
    out: list[int] = []
    for index in range(_IT_MAX_HALFWORDS):
        try:
            out.append(memory.read_u16(addr + index * 2))
        except HookError:
            break
    return out


def _parse_it_at(memory: Memory, addr: int, inst: int, pc: int) -> t16.ItBlock | None:
    if t16.get_type(inst) is not t16.T16Type.IT_T1:
        return None
    return t16.parse_it(inst, _read_following(memory, addr + 2), pc)


@dataclass(frozen=True)
class ArmHook:
    """An installed hook: the overwritten bytes and the jump that replaced them."""

    target_addr: int
    thumb: bool
    new_addr: int
    enter_addr: int
    backup: bytes
    trampo: bytes

    @property
    def orig_addr(self) -> int:
        """Address to call to run the original function (Thumb bit set for Thumb code)."""
        return set_bit0(self.enter_addr) if self.thumb else self.enter_addr

    def unhook(self, memory: Memory) -> None:
        """Restore the original instructions at the target.

        Raises TrampolineMismatchError if the target no longer holds our jump.
        """
        current = memory.read(self.target_addr, len(self.trampo))
        if current != self.trampo:
            raise TrampolineMismatchError(
                f"code at {self.target_addr:#x} no longer matches the trampoline"
            )
        memory.write(self.target_addr, self.backup)
        _log.info("%s: unhook OK. target %x", "thumb" if self.thumb else "a32", self.target_addr)


def thumb_rewrite_info(
    memory: Memory, target_addr: int, backup_len: int, enter_addr: int
) -> ThumbRewriteInfo:
    """Describe the Thumb code to be overwritten and the size of each relocated piece."""
    target_addr = clear_bit0(target_addr)
    inst_lens: list[int] = []
    offset = 0
    pc = target_addr + 4
    covered = 0

    while covered < backup_len:
        inst = memory.read_u16(target_addr + offset)
        it = _parse_it_at(memory, target_addr + offset, inst, pc)
        if it is not None:
            step = 2 + it.insts_len
            block_len = 4 + 4  # IT-else branch + IT-then branch
            block_entries: list[int] = []
            pos = 0
            for _ in range(it.insts_cnt):
                hw = it.insts[pos]
                if is_thumb32(hw):
                    block_len += t32.rewrite_len(hw, it.insts[pos + 1])
                    block_entries += [0, 0]
                    pos += 2
                else:
                    block_len += t16.rewrite_len(hw)
                    block_entries.append(0)
                    pos += 1
            inst_lens += [block_len, *block_entries]
        else:
            if is_thumb32(inst):
                low = memory.read_u16(target_addr + offset + 2)
                inst_lens += [t32.rewrite_len(inst, low), 0]
                step = 4
            else:
                inst_lens.append(t16.rewrite_len(inst))
                step = 2
        covered += step
        offset += step
        pc += step

    return ThumbRewriteInfo(
        start_addr=target_addr,
        end_addr=target_addr + covered,
        buf=enter_addr,
        inst_lens=inst_lens,
    )


def rewrite_thumb(memory: Memory, target_addr: int, backup_len: int, enter_addr: int) -> list[int]:
    """Relocate the first ``backup_len`` bytes of Thumb code into ``enter_addr``.

    The relocated code ends with a jump back to the rest of the original
    function. The halfwords are written to memory and returned. Raises
    RewriteError when an instruction cannot be relocated.
    """
    target_addr = clear_bit0(target_addr)
    rinfo = thumb_rewrite_info(memory, target_addr, backup_len, enter_addr)

    out: list[int] = []
    offset = 0
    pc = target_addr + 4
    covered = 0

    def emit(halfwords: list[int]) -> int:
        out.extend(halfwords)
        size = len(halfwords) * 2
        rinfo.buf_offset += size
        return size

    while covered < backup_len:
        inst = memory.read_u16(target_addr + offset)
        it = _parse_it_at(memory, target_addr + offset, inst, pc)
        if it is not None:
            step = 2 + it.insts_len
            else_pos = len(out)
            emit([0, 0])  # placeholder: B<c> ; NOP
            else_len = 4
            then_len = 0
            then_pos = else_pos
            pos = 0
            for index in range(it.insts_cnt):
                if index == it.insts_else_cnt:
                    then_pos = len(out)
                    emit([0, 0])  # placeholder: B ; NOP
                    out[else_pos : else_pos + 2] = t16.rewrite_it_else(else_len, it)

                hw = it.insts[pos]
                if is_thumb32(hw):
                    size = emit(t32.rewrite(hw, it.insts[pos + 1], it.pcs[index], rinfo))
                    pos += 2
                else:
                    size = emit(t16.rewrite(hw, it.pcs[index], rinfo))
                    pos += 1

                if index < it.insts_else_cnt:
                    else_len += size
                else:
                    then_len += size

                if index == it.insts_cnt - 1:
                    out[then_pos : then_pos + 2] = t16.rewrite_it_then(then_len)
        else:
            _log.info("thumb rewrite: offset %d, pc %x", rinfo.buf_offset, pc)
            if is_thumb32(inst):
                low = memory.read_u16(target_addr + offset + 2)
                emit(t32.rewrite(inst, low, pc, rinfo))
                step = 4
            else:
                emit(t16.rewrite(inst, pc, rinfo))
                step = 2
        covered += step
        offset += step
        pc += step

    _log.info("thumb rewrite: len %d to %d", covered, rinfo.buf_offset)
    emit(t32.absolute_jump(True, set_bit0(target_addr + covered)))

    memory.write(enter_addr, _pack16(out))
    return out


def rewrite_arm(memory: Memory, target_addr: int, backup_len: int, enter_addr: int) -> list[int]:
    """Relocate the first ``backup_len`` bytes of A32 code into ``enter_addr``.

    The relocated code ends with a jump back to the rest of the original
    function. The words are written to memory and returned. Raises
    RewriteError when an instruction cannot be relocated.
    """
    words_in = [memory.read_u32(target_addr + i) for i in range(0, backup_len, 4)]
    rinfo = a32.A32RewriteInfo(
        start_addr=target_addr,
        end_addr=target_addr + backup_len,
        buf=enter_addr,
        inst_lens=[a32.rewrite_len(w) for w in words_in],
    )

    out: list[int] = []
    for index, inst in enumerate(words_in):
        relocated = a32.rewrite(inst, target_addr + 8 + index * 4, rinfo)
        out += relocated
        rinfo.buf_offset += len(relocated) * 4
    out += a32.absolute_jump(target_addr + backup_len)

    memory.write(enter_addr, _pack32(out))
    return out


def _hook_thumb(
    memory: Memory, target_addr: int, symbol_size: int, new_addr: int, enter_addr: int
) -> ArmHook:
    target_addr = clear_bit0(target_addr)
    is_align4 = target_addr % 4 == 0
    backup_len = THUMB_BACKUP_LEN_ALIGNED if is_align4 else THUMB_BACKUP_LEN_UNALIGNED
    if symbol_size < backup_len:
        raise SymbolSizeError(f"symbol of {symbol_size} bytes is shorter than {backup_len}")

    backup = memory.read(target_addr, backup_len)
    rewrite_thumb(memory, target_addr, backup_len, enter_addr)

    trampo = _pack16(t32.absolute_jump(is_align4, new_addr))
    memory.write(target_addr, trampo)
    _log.info(
        "thumb: hook OK. target %x -> new %x -> enter %x", target_addr, new_addr, enter_addr
    )
    return ArmHook(
        target_addr=target_addr,
        thumb=True,
        new_addr=new_addr,
        enter_addr=enter_addr,
        backup=backup,
        trampo=trampo,
    )


def _hook_arm(
    memory: Memory, target_addr: int, symbol_size: int, new_addr: int, enter_addr: int
) -> ArmHook:
    if symbol_size < ARM_BACKUP_LEN:
        raise SymbolSizeError(f"symbol of {symbol_size} bytes is shorter than {ARM_BACKUP_LEN}")

    backup = memory.read(target_addr, ARM_BACKUP_LEN)
    rewrite_arm(memory, target_addr, ARM_BACKUP_LEN, enter_addr)

    trampo = _pack32(a32.absolute_jump(new_addr))
    memory.write(target_addr, trampo)
    _log.info(
        "a32: hook OK. target %x -> new %x -> enter %x -> remaining %x",
        target_addr,
        new_addr,
        enter_addr,
        target_addr + ARM_BACKUP_LEN,
    )
    return ArmHook(
        target_addr=target_addr,
        thumb=False,
        new_addr=new_addr,
        enter_addr=enter_addr,
        backup=backup,
        trampo=trampo,
    )


def hook(memory: Memory, target_addr: int, symbol_size: int, new_addr: int, enter_addr: int) -> ArmHook:
    """Redirect the function at ``target_addr`` to ``new_addr``.

    A target with bit 0 set is Thumb code, otherwise A32. The original
    instructions are relocated to ``enter_addr``. Raises SymbolSizeError if the
    symbol cannot hold the jump and RewriteError if an instruction cannot be
    relocated; the target is left untouched in both cases.
    """
    if is_thumb(target_addr):
        return _hook_thumb(memory, target_addr, symbol_size, new_addr, enter_addr)
    return _hook_arm(memory, target_addr, symbol_size, new_addr, enter_addr)