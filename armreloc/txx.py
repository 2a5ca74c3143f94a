"""Relocation state shared by the 16-bit and 32-bit Thumb rewriters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from armreloc.bits import clear_bit0, is_thumb, set_bit0

_log = logging.getLogger(__name__)


@dataclass
class ThumbRewriteInfo:
    """Where the overwritten Thumb code lived and where its relocation goes.

    ``inst_lens`` holds one entry per halfword of the overwritten range: the size
    in bytes of the relocated code that starts at that halfword (0 for the second
    half of a 32-bit instruction or an instruction inside an IT block).
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
        thumb = is_thumb(addr)
        plain = clear_bit0(addr) if thumb else addr

        if not self.needs_fix(plain):
            return addr

        cursor = self.start_addr
        offset = 0
        for length in self.inst_lens:
            if cursor >= plain:
                break
            cursor += 2
            offset += length
        fixed = self.buf + offset
        if thumb:
            fixed = set_bit0(fixed)
        _log.info("txx rewrite: fix addr %x -> %x", plain, fixed)
        return fixed