"""A sparse, byte-addressed model of process memory."""

from __future__ import annotations

from collections.abc import Mapping

from armreloc.bits import HookError


class Memory:
    """Byte-addressed memory; reading an address never written raises HookError."""

    def __init__(self, regions: Mapping[int, bytes] | None = None) -> None:
        self._bytes: dict[int, int] = {}
        for addr, data in (regions or {}).items():
            self.write(addr, data)

    def read(self, addr: int, size: int) -> bytes:
        """Return ``size`` bytes starting at ``addr``."""
        if size < 0:
            raise ValueError(f"negative read size {size}")
        try:
            return bytes(self._bytes[a] for a in range(addr, addr + size))
        except KeyError as exc:
            raise HookError(f"read of unmapped address {exc.args[0]:#x}") from None

    def write(self, addr: int, data: bytes) -> None:
        """Store ``data`` at ``addr``, mapping the bytes if needed."""
        if addr < 0:
            raise ValueError(f"negative address {addr:#x}")
        payload = bytes(data)
        self._bytes.update(zip(range(addr, addr + len(payload)), payload))

    def read_u16(self, addr: int) -> int:
        """Read a little-endian halfword."""
        return int.from_bytes(self.read(addr, 2), "little")

    def read_u32(self, addr: int) -> int:
        """Read a little-endian word."""
        return int.from_bytes(self.read(addr, 4), "little")