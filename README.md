# armreloc

`armreloc` relocates machine instructions so that an inline hook can be placed on a
function. It handles 32-bit ARM (A32), Thumb (16-bit and 32-bit instructions, IT
blocks included) and AArch64 (A64).

An inline hook overwrites the first bytes of a function with a jump to a
replacement. The overwritten instructions still have to run, so they are copied
into an "enter" area. Many of them are PC-relative: branches, literal loads,
`ADR`/`ADRP`, compare-and-branch, table branches and more. `armreloc` rewrites
each of them into an equivalent sequence that works at its new address, then
appends an absolute jump back to the rest of the original function.

All work is done on a simulated address space, `armreloc.memory.Memory`.

## Installation

```
pip install armreloc
```

The package has no dependencies outside the standard library.

## Modules

- `armreloc.bits`: bit-field helpers (`get_bits`, `get_bit`, `sign_extend`,
  `align4`, `set_bit0`, `clear_bit0`, `is_thumb`, `is_thumb32`, `arm_expand_imm`)
  and the exceptions `HookError`, `RewriteError`, `SymbolSizeError` and
  `TrampolineMismatchError`.
- `armreloc.memory`: `Memory`, a sparse byte-addressed memory with `read`,
  `write`, and little-endian `read_u16` / `read_u32`. It can be built from a
  mapping of addresses to byte strings. Reading a byte that was never written
  raises `HookError`.
- `armreloc.txx`: `ThumbRewriteInfo`, which describes the overwritten Thumb range
  and the enter buffer. `needs_fix` tells whether an address lies in the range,
  and `fix_addr` maps such an address to its relocated copy, keeping the Thumb bit.
- `armreloc.t16`: `T16Type`, `get_type`, `rewrite_len` and `rewrite` for 16-bit
  Thumb instructions. `parse_it` returns an `ItBlock`, with ELSE instructions first
  and then THEN instructions. `rewrite_it_else` and `rewrite_it_then` build the
  branches that select between them.
- `armreloc.t32`: `T32Type`, `get_type`, `rewrite_len` and `rewrite` for 32-bit
  Thumb instructions, plus `absolute_jump(is_align4, addr)` (`LDR.W PC, [PC]`, with
  a leading NOP when unaligned) and `relative_jump(addr, pc)` (`B.W`).
- `armreloc.a32`: `A32Type`, `A32RewriteInfo`, `get_type`, `rewrite_len`,
  `rewrite`, `absolute_jump` (`LDR PC, [PC, #-4]`) and `relative_jump` (`B`).
- `armreloc.a64`: `A64Type`, `A64RewriteInfo`, `get_type`, `rewrite_len`,
  `rewrite`, `absolute_jump_with_br`, `absolute_jump_with_ret` (the jump back
  uses `RET X17` so that it is not subject to BTI) and `relative_jump`.
- `armreloc.inst_arm`: `hook` installs a hook on A32 code, or on Thumb code when
  bit 0 of the target address is set, and returns an `ArmHook`. The lower-level
  `thumb_rewrite_info`, `rewrite_thumb` and `rewrite_arm` build the enter area.
- `armreloc.inst_arm64`: `hook` installs a hook on A64 code and returns an
  `A64Hook`. The lower-level `rewrite_enter` builds the enter area.

The rewriters return lists of integers: halfwords for Thumb, words for A32 and
A64. The `hook` and `rewrite_*` functions also write their output into the
`Memory`.

## Example

```python
from armreloc.memory import Memory
from armreloc import inst_arm64

mem = Memory()
target = 0x1000
# b #8 ; nop ; nop ; nop ; ret
for offset, word in enumerate([0x14000002, 0xD503201F, 0xD503201F, 0xD503201F, 0xD65F03C0]):
    mem.write(target + 4 * offset, word.to_bytes(4, "little"))

hooked = inst_arm64.hook(mem, target, symbol_size=20, new_addr=0x9000, enter_addr=0x5000)
# The first 16 bytes at 0x1000 now hold "LDR X17, #8 ; BR X17 ; .quad 0x9000".
# The relocated original code is at hooked.orig_addr (0x5000). The branch that
# pointed inside the overwritten range now points to its relocated copy.

hooked.unhook(mem)  # puts hooked.backup back at the target
```

A single instruction can be relocated on its own:

```python
from armreloc import a64

info = a64.A64RewriteInfo(start_addr=0x1000, end_addr=0x1010, buf=0x5000)
words = a64.rewrite(0x94000100, 0x2000, info)  # BL to 0x2400, as LDR/B/.quad/BLR X17
```

## Hook sizes

- A64: 16 bytes are overwritten with an absolute `BR X17` jump.
- A32: 8 bytes are overwritten with `LDR PC, [PC, #-4]`.
- Thumb: 8 bytes when the target is 4-byte aligned, 10 otherwise, with
  `LDR.W PC, [PC]`. The `orig_addr` of a Thumb `ArmHook` has bit 0 set.

The symbol must be at least this long, or `SymbolSizeError` is raised.

## Errors

All errors are subclasses of `HookError`:

- `SymbolSizeError`: the symbol is too short to be overwritten.
- `RewriteError`: an instruction cannot be relocated. This happens, for example,
  when a literal load or `ADR` refers to the overwritten range, or when a Thumb
  table branch (`TBB`/`TBH`) is not the last overwritten instruction. `hook` raises
  it before writing anything to memory.
- `TrampolineMismatchError`: `unhook` found that the patched bytes no longer
  match the jump that was installed.

## What the package does not do

- It does not patch a running process. It only works on `Memory` objects.
- It does not look up symbols or their sizes. The caller passes `target_addr` and
  `symbol_size`.
- It does not allocate or free memory for the enter area. The caller chooses
  `enter_addr`.
- `hook` always uses the absolute-jump form. `relative_jump` builds a short branch,
  but no function places one through a nearby stub.

## Running the tests

```
pip install "armreloc[test]"
pytest
```