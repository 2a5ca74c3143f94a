"""Installing and removing an inline hook on A64 code."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from armreloc import a64
from armreloc.bits import SymbolSizeError, TrampolineMismatchError
from armreloc.memory import Memory

_log = logging.getLogger(__name__)

BACKUP_LEN = 16


def _pack(words: list[int]) -> bytes:
    return b"".join(w.to_bytes(4, "little") for w in words)


@dataclass(frozen=True)
class A64Hook:
    """An installed hook: the overwritten bytes and the jump that replaced them."""

    target_addr: int
    new_addr: int
    enter_addr: int
    backup: bytes
    trampo: bytes

    @property
    def orig_addr(self) -> int:
        """Address to call to run the original function."""
        return self.enter_addr

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
        _log.info("a64: unhook OK. target %x", self.target_addr)


def rewrite_enter(memory: Memory, target_addr: int, backup_len: int, enter_addr: int) -> list[int]:
    """Relocate the first ``backup_len`` bytes at ``target_addr`` into ``enter_addr``.

    The relocated code ends with a jump back to the rest of the original
    function. The words are written to memory and returned.
    """
    words_in = [memory.read_u32(target_addr + i) for i in range(0, backup_len, 4)]
    rinfo = a64.A64RewriteInfo(
        start_addr=target_addr,
        end_addr=target_addr + backup_len,
        buf=enter_addr,
        inst_lens=[a64.rewrite_len(w) for w in words_in],
    )

    out: list[int] = []
    for index, inst in enumerate(words_in):
        relocated = a64.rewrite(inst, target_addr + index * 4, rinfo)
        out += relocated
        rinfo.buf_offset += len(relocated) * 4
    out += a64.absolute_jump_with_ret(target_addr + backup_len)

    memory.write(enter_addr, _pack(out))
    return out


def hook(memory: Memory, target_addr: int, symbol_size: int, new_addr: int, enter_addr: int) -> A64Hook:
    """Redirect the function at ``target_addr`` to ``new_addr``.

    The original instructions are relocated to ``enter_addr``. Raises
    SymbolSizeError if the symbol cannot hold the jump and RewriteError if an
    instruction cannot be relocated; the target is left untouched in both cases.
    """
    if symbol_size < BACKUP_LEN:
        raise SymbolSizeError(f"symbol of {symbol_size} bytes is shorter than {BACKUP_LEN}")

    backup = memory.read(target_addr, BACKUP_LEN)
    rewrite_enter(memory, target_addr, BACKUP_LEN, enter_addr)

    trampo = _pack(a64.absolute_jump_with_br(new_addr))
    memory.write(target_addr, trampo)

    _log.info(
        "a64: hook OK. target %x -> new %x -> enter %x -> remaining %x",
        target_addr,
        new_addr,
        enter_addr,
        target_addr + BACKUP_LEN,
    )
    return A64Hook(
        target_addr=target_addr,
        new_addr=new_addr,
        enter_addr=enter_addr,
        backup=backup,
        trampo=trampo,
    )