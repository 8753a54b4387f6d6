import struct

import pytest

from riverkv.block import KeyNotFoundError
from riverkv.mmap_file import MmapBlock, MmapFile


def _entry(key: bytes, value: bytes) -> bytes:
    return struct.pack("<I", len(key)) + key + struct.pack("<I", len(value)) + value


def _write_block(path, entries, tail=b""):
    payload = b"\x00" * 8 + b"".join(_entry(k, v) for k, v in entries) + tail
    path.write_bytes(payload)
    return payload


@pytest.fixture
def sample_file(tmp_path):
    path = tmp_path / "sample.bin"
    content = bytes(range(32))
    path.write_bytes(content)
    return path, content


def test_read_slices(sample_file):
    path, content = sample_file
    with MmapFile(path) as mapped:
        assert mapped.read(0, 4) == content[:4]
        assert mapped.read(10, 5) == content[10:15]
        assert mapped.size() == len(content)
        assert mapped.data() == content


def test_read_past_end_is_truncated(sample_file):
    path, content = sample_file
    with MmapFile(path) as mapped:
        assert mapped.read(len(content) - 2, 10) == content[-2:]


@pytest.mark.parametrize("offset", [-1, 32, 100])
def test_read_out_of_bounds(sample_file, offset):
    path, _ = sample_file
    with MmapFile(path) as mapped:
        with pytest.raises(IndexError):
            mapped.read(offset, 1)


def test_read_negative_length(sample_file):
    path, _ = sample_file
    with MmapFile(path) as mapped:
        with pytest.raises(ValueError):
            mapped.read(0, -1)


def test_closed_file_rejects_reads(sample_file):
    path, _ = sample_file
    mapped = MmapFile(path)
    mapped.close()
    mapped.close()
    with pytest.raises(ValueError, match="file is closed"):
        mapped.read(0, 1)
    with pytest.raises(ValueError, match="file is closed"):
        mapped.data()


def test_empty_file(tmp_path):
    path = tmp_path / "empty.bin"
    path.write_bytes(b"")
    with MmapFile(path) as mapped:
        assert mapped.size() == 0
        assert mapped.data() == b""
        with pytest.raises(IndexError):
            mapped.read(0, 1)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        MmapFile(tmp_path / "absent.bin")


def test_block_lookup(tmp_path):
    path = tmp_path / "block.blk"
    entries = [(b"banana", b"yellow"), (b"apple", b"red"), (b"cherry", b"dark red")]
    payload = _write_block(path, entries)
    with MmapBlock(path) as block:
        for key, value in entries:
            assert block.get(key) == value
        assert block.size() == len(payload)
        assert block.min_key() == b"apple"
        assert block.max_key() == b"cherry"


def test_block_missing_key(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [(b"k", b"v")])
    with MmapBlock(path) as block:
        with pytest.raises(KeyNotFoundError):
            block.get(b"other")


def test_block_empty_value(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [(b"empty", b""), (b"full", b"data")])
    with MmapBlock(path) as block:
        assert block.get(b"empty") == b""
        assert block.get(b"full") == b"data"


def test_block_later_entry_wins(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [(b"dup", b"first"), (b"dup", b"second")])
    with MmapBlock(path) as block:
        assert block.get(b"dup") == b"second"


def test_block_truncated_key_is_ignored(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [(b"good", b"value")], tail=struct.pack("<I", 50) + b"short")
    with MmapBlock(path) as block:
        assert block.get(b"good") == b"value"
        assert block.max_key() == b"good"


def test_block_without_entries(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [])
    with MmapBlock(path) as block:
        assert block.min_key() == b""
        assert block.max_key() == b""
        with pytest.raises(KeyNotFoundError):
            block.get(b"x")


def test_block_too_small(tmp_path):
    path = tmp_path / "tiny.blk"
    path.write_bytes(b"\x00" * 4)
    with pytest.raises(ValueError, match="too small"):
        MmapBlock(path)


def test_block_value_length_missing(tmp_path):
    path = tmp_path / "block.blk"
    path.write_bytes(b"\x00" * 8 + struct.pack("<I", 3) + b"key")
    with MmapBlock(path) as block:
        with pytest.raises(ValueError):
            block.get(b"key")


def test_block_closed(tmp_path):
    path = tmp_path / "block.blk"
    _write_block(path, [(b"k", b"v")])
    block = MmapBlock(path)
    block.close()
    with pytest.raises(ValueError):
        block.get(b"k")