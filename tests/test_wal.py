import pytest

from riverkv.wal import WAL, OpType, WALEntry, WALError, _crc32c


def _wal_files(directory):
    return sorted(p for p in directory.iterdir() if p.suffix == ".wal")


def test_create_and_close_makes_one_log_file(tmp_path):
    wal = WAL(tmp_path)
    wal.close()
    files = _wal_files(tmp_path)
    assert len(files) == 1
    assert files[0] == wal.path


def test_crc32c_check_value():
    assert _crc32c(b"123456789") == 0xE3069283


def test_put_and_delete_round_trip(tmp_path):
    with WAL(tmp_path) as wal:
        wal.append_put(b"k1", b"v1")
        wal.append_delete(b"k1")
        wal.append_put(b"k2", b"")
        entries = list(wal.replay())
    assert [(e.op_type, e.key, e.value) for e in entries] == [
        (OpType.PUT, b"k1", b"v1"),
        (OpType.DELETE, b"k1", None),
        (OpType.PUT, b"k2", b""),
    ]
    stamps = [e.timestamp for e in entries]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 3


def test_replay_skips_entries_up_to_timestamp(tmp_path):
    with WAL(tmp_path) as wal:
        wal.append_put(b"a", b"1")
        wal.append_put(b"b", b"2")
        wal.append_put(b"c", b"3")
        first, second, _ = list(wal.replay(0))
        later = list(wal.replay(second.timestamp))
        after_first = list(wal.replay(first.timestamp))
    assert [e.key for e in later] == [b"c"]
    assert [e.key for e in after_first] == [b"b", b"c"]


def test_reopen_appends_to_latest_file(tmp_path):
    with WAL(tmp_path) as wal:
        wal.append_put(b"x", b"1")
    with WAL(tmp_path) as wal:
        wal.append_put(b"y", b"2")
        keys = [e.key for e in wal.replay()]
    assert keys == [b"x", b"y"]
    assert len(_wal_files(tmp_path)) == 1


def test_rotation_creates_new_files_and_replays_in_order(tmp_path):
    with WAL(tmp_path, max_size=1) as wal:
        for i in range(4):
            wal.append_put(f"key-{i}".encode(), f"value-{i}".encode())
        entries = list(wal.replay())
    assert len(_wal_files(tmp_path)) == 4
    assert [e.key for e in entries] == [f"key-{i}".encode() for i in range(4)]


def test_corrupted_entry_raises(tmp_path):
    with WAL(tmp_path) as wal:
        wal.append_put(b"key", b"value")
        path = wal.path
    raw = bytearray(path.read_bytes())
    raw[-1] ^= 0xFF
    path.write_bytes(bytes(raw))
    with WAL(tmp_path) as wal:
        with pytest.raises(WALError, match="CRC mismatch"):
            list(wal.replay())


def test_truncated_entry_raises(tmp_path):
    with WAL(tmp_path) as wal:
        wal.append_put(b"key", b"value")
        path = wal.path
    path.write_bytes(path.read_bytes()[:-3])
    with WAL(tmp_path) as wal:
        with pytest.raises(WALError):
            list(wal.replay())


def test_append_after_close_raises(tmp_path):
    wal = WAL(tmp_path)
    wal.close()
    with pytest.raises(WALError, match="closed"):
        wal.append_put(b"k", b"v")


def test_replay_after_close_still_reads(tmp_path):
    wal = WAL(tmp_path)
    wal.append_put(b"k", b"v")
    wal.close()
    entries = list(wal.replay())
    assert entries == [WALEntry(entries[0].timestamp, OpType.PUT, b"k", b"v")]


def test_non_wal_files_are_ignored(tmp_path):
    (tmp_path / "notes.txt").write_text("ignored")
    (tmp_path / "abc.wal").write_bytes(b"garbage")
    with WAL(tmp_path) as wal:
        wal.append_put(b"k", b"v")
        keys = [e.key for e in wal.replay()]
    assert keys == [b"k"]