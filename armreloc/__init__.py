"""Relocation of A32, Thumb and A64 instructions and inline hooks on a simulated memory."""

__version__ = "0.1.0"

__all__ = ["bits", "memory", "txx", "t16", "t32", "a32", "a64", "inst_arm", "inst_arm64"]