"""Bit-field helpers and the exceptions shared by the instruction rewriters."""

MASK16 = 0xFFFF
MASK32 = 0xFFFFFFFF


class HookError(Exception):
    """Base class for every failure while hooking or unhooking."""


class RewriteError(HookError):
    """An instruction could not be relocated into the enter buffer."""


class SymbolSizeError(HookError):
    """The target symbol is too short to hold the overwriting jump."""


class TrampolineMismatchError(HookError):
    """The code at the target no longer matches the installed trampoline."""


def get_bits(value: int, high: int, low: int) -> int:
    """Return bits ``high`` down to ``low`` (inclusive) of ``value``."""
    if high < low:
        raise ValueError(f"high bit {high} is below low bit {low}")
    return (value >> low) & ((1 << (high - low + 1)) - 1)


def get_bit(value: int, n: int) -> int:
    """Return bit ``n`` of ``value``."""
    return (value >> n) & 1


def sign_extend(value: int, bits: int, width: int = 32) -> int:
    """Sign-extend the low ``bits`` bits of ``value`` to an unsigned ``width``-bit value."""
    if not 0 < bits <= width:
        raise ValueError(f"cannot extend {bits} bits to {width} bits")
    value &= (1 << bits) - 1
    if get_bit(value, bits - 1):
        value |= ((1 << width) - 1) ^ ((1 << bits) - 1)
    return value


def align4(addr: int) -> int:
    """Round ``addr`` down to a multiple of four."""
    return addr & ~3


def set_bit0(addr: int) -> int:
    """Mark ``addr`` as a Thumb address."""
    return addr | 1


def clear_bit0(addr: int) -> int:
    """Strip the Thumb bit from ``addr``."""
    return addr & ~1


def is_thumb(addr: int) -> bool:
    """Whether ``addr`` carries the Thumb bit."""
    return bool(addr & 1)


def is_thumb32(halfword: int) -> bool:
    """Whether ``halfword`` is the first half of a 32-bit Thumb instruction."""
    return (halfword & 0xF800) in (0xE800, 0xF000, 0xF800)


def arm_expand_imm(imm12: int) -> int:
    """Expand an A32 modified immediate: imm8 rotated right by twice the rotation field."""
    unrotated = imm12 & 0xFF
    rotation = 2 * get_bits(imm12, 11, 8)
    return ((unrotated >> rotation) | (unrotated << (32 - rotation))) & MASK32