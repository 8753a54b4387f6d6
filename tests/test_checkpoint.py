import time

from riverkv.checkpoint import Checkpoint, CheckpointData


def test_save_and_load(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    mem_table = {
        b"key1": b"value1",
        b"key2": b"value2",
        b"key3": b"value3",
    }
    mem_table_size = (
        len("key1") + len("value1") + len("key2") + len("value2") + len("key3") + len("value3")
    )
    timestamp = time.time_ns()

    checkpoint.save(mem_table, mem_table_size, timestamp)

    loaded = Checkpoint(tmp_path).load()
    assert loaded.mem_table_size == mem_table_size
    assert loaded.last_wal_timestamp == timestamp
    assert loaded.mem_table == mem_table
    assert loaded.timestamp > 0


def test_file_location_and_no_temp_left(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.save({b"k": b"v"}, 2, 7)
    assert checkpoint.path == tmp_path / "checkpoint" / "checkpoint.json"
    assert checkpoint.path.exists()
    assert not (tmp_path / "checkpoint" / "checkpoint.json.tmp").exists()


def test_values_stored_as_base64(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.save({b"k": b"value1"}, 7, 1)
    assert '"k": "dmFsdWUx"' in checkpoint.path.read_text()


def test_missing_file_gives_empty_table(tmp_path):
    loaded = Checkpoint(tmp_path).load()
    assert loaded == CheckpointData()


def test_corrupt_file_gives_empty_table(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.path.write_text("{not json")
    assert checkpoint.load() == CheckpointData()


def test_bad_base64_gives_empty_table(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.path.write_text('{"mem_table": {"k": "***"}, "mem_table_size": 3}')
    assert checkpoint.load() == CheckpointData()


def test_null_mem_table_loads_as_empty(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.path.write_text(
        '{"timestamp": 5, "last_wal_timestamp": 9, "mem_table": null, "mem_table_size": 0}'
    )
    loaded = checkpoint.load()
    assert loaded.mem_table == {}
    assert loaded.last_wal_timestamp == 9
    assert loaded.timestamp == 5


def test_last_wal_timestamp_tracks_save_and_load(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    assert checkpoint.last_wal_timestamp() == 0
    checkpoint.save({}, 0, 42)
    assert checkpoint.last_wal_timestamp() == 42
    other = Checkpoint(tmp_path)
    assert other.last_wal_timestamp() == 0
    other.load()
    assert other.last_wal_timestamp() == 42


def test_binary_keys_and_values_round_trip(tmp_path):
    table = {b"\xff\x00key": b"\x00\x01\xfe", b"plain": b""}
    checkpoint = Checkpoint(tmp_path)
    checkpoint.save(table, 10, 3)
    assert Checkpoint(tmp_path).load().mem_table == table


def test_save_overwrites_previous(tmp_path):
    checkpoint = Checkpoint(tmp_path)
    checkpoint.save({b"a": b"1"}, 2, 1)
    checkpoint.save({b"b": b"2"}, 2, 2)
    loaded = checkpoint.load()
    assert loaded.mem_table == {b"b": b"2"}
    assert loaded.last_wal_timestamp == 2