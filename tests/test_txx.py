import pytest

from armreloc.txx import ThumbRewriteInfo


@pytest.fixture
def rinfo():
    return ThumbRewriteInfo(start_addr=0x2000, end_addr=0x2008, buf=0x9000, inst_lens=[12, 0, 8, 4])


def test_needs_fix_boundaries(rinfo):
    assert rinfo.needs_fix(rinfo.start_addr)
    assert rinfo.needs_fix(rinfo.end_addr - 2)
    assert not rinfo.needs_fix(rinfo.end_addr)
    assert not rinfo.needs_fix(rinfo.start_addr - 2)


def test_fix_addr_outside_range_unchanged(rinfo):
    assert rinfo.fix_addr(0x3000) == 0x3000
    assert rinfo.fix_addr(0x3001) == 0x3001


def test_fix_addr_at_start_is_buffer(rinfo):
    assert rinfo.fix_addr(rinfo.start_addr) == rinfo.buf


def test_fix_addr_keeps_thumb_bit(rinfo):
    assert rinfo.fix_addr(rinfo.start_addr | 1) == rinfo.buf | 1


def test_fix_addr_sums_previous_lengths(rinfo):
    lens = rinfo.inst_lens
    assert rinfo.fix_addr(rinfo.start_addr + 2) == rinfo.buf + lens[0]
    assert rinfo.fix_addr(rinfo.start_addr + 4) == rinfo.buf + lens[0] + lens[1]
    assert rinfo.fix_addr(rinfo.start_addr + 6) == rinfo.buf + sum(lens[:3])


def test_fix_addr_thumb_mid_range(rinfo):
    fixed = rinfo.fix_addr((rinfo.start_addr + 4) | 1)
    assert fixed == (rinfo.buf + rinfo.inst_lens[0] + rinfo.inst_lens[1]) | 1


def test_default_offset_and_lengths():
    info = ThumbRewriteInfo(start_addr=0, end_addr=4, buf=0x100)
    assert info.buf_offset == 0
    assert info.fix_addr(2) == info.buf